"""Tests for the worker loop."""

from __future__ import annotations

import io
import json

import pytest

from osarunner.worker.__main__ import parse_args
from osarunner.worker.loop import execute_command, run_worker


def run(stdin_text: str, **kwargs) -> tuple[int, list[dict], list[dict]]:
    """Run the worker over ``stdin_text`` and decode both response streams."""
    stdout, stderr = io.StringIO(), io.StringIO()
    code = run_worker(io.StringIO(stdin_text), stdout, stderr, **kwargs)
    return code, _frames(stdout), _frames(stderr)


def _frames(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines()]


class TestExecuteCommand:
    def test_success_returns_stdout(self) -> None:
        result = execute_command("echo hello")
        assert result.ok is True
        assert result.text == "hello\n"

    def test_failure_returns_stderr(self) -> None:
        result = execute_command("echo broken >&2; exit 4")
        assert result.ok is False
        assert result.text == "broken\n"

    def test_failure_without_stderr(self) -> None:
        result = execute_command("exit 2")
        assert result.ok is False
        assert "status 2" in result.text

    def test_timeout(self) -> None:
        result = execute_command("sleep 2", timeout=0.1)
        assert result.ok is False
        assert "timed out" in result.text

    def test_missing_shell(self) -> None:
        result = execute_command("echo hi", shell="/nonexistent/shell")
        assert result.ok is False
        assert "Failed to run command" in result.text

    def test_output_line_endings_preserved(self) -> None:
        assert execute_command("printf 'a\\r\\nb\\n'").text == "a\r\nb\n"

    def test_does_not_read_worker_stdin(self) -> None:
        assert execute_command("cat").text == ""


class TestRunWorker:
    def test_one_response_per_command(self) -> None:
        code, out, err = run("echo a\necho b >&2; false\necho c\n")
        assert code == 0
        assert [r["text"] for r in out] == ["a\n", "c\n"]
        assert [r["text"] for r in err] == ["b\n"]

    def test_exit_token_stops_reading(self) -> None:
        code, out, err = run("echo before\nexit\necho after\n")
        assert code == 0
        assert [r["text"] for r in out] == ["before\n"]
        assert err == []

    def test_end_of_input_exits_cleanly(self) -> None:
        code, out, _ = run("echo only")
        assert code == 0
        assert out[0]["text"] == "only\n"

    def test_blank_lines_are_skipped(self) -> None:
        _, out, err = run("\n   \necho x\n\n")
        assert len(out) == 1
        assert err == []

    def test_heredoc_frame_is_one_command(self) -> None:
        frame = "cat <<'EOF'\nsay \"hi\"\nexit\nEOF\necho next\n"
        _, out, _ = run(frame)
        assert [r["text"] for r in out] == ['say "hi"\nexit\n', "next\n"]

    def test_carriage_returns_in_heredoc_body(self) -> None:
        _, out, _ = run("cat <<'EOF'\nsay \"a\"\r\nsay \"b\"\nEOF\n")
        assert out[0]["text"] == 'say "a"\r\nsay "b"\n'

    def test_malformed_command_does_not_stop_worker(self) -> None:
        _, out, err = run("if then (((\necho still here\n")
        assert len(err) == 1
        assert out[0]["text"] == "still here\n"

    def test_unterminated_heredoc(self) -> None:
        code, out, err = run("cat <<'EOF'\nno end")
        assert code == 0
        assert out == []
        assert "Unterminated" in err[0]["text"]

    def test_token_is_echoed(self) -> None:
        _, out, err = run("#@id t1\necho one\n#@id t2\nexit 1\necho untagged\n")
        assert out[0] == {"id": "t1", "text": "one\n"}
        assert err[0]["id"] == "t2"
        assert out[1]["id"] is None

    def test_timeout_reported_on_error_stream(self) -> None:
        _, out, err = run("sleep 2\necho after\n", timeout=0.1)
        assert "timed out" in err[0]["text"]
        assert out[0]["text"] == "after\n"


class TestWorkerArgs:
    def test_defaults(self) -> None:
        args = parse_args([])
        assert args.shell == "/bin/sh"
        assert args.timeout is None
        assert args.verbose is False

    def test_custom(self) -> None:
        args = parse_args(["--shell", "/bin/bash", "--timeout", "3", "-v"])
        assert args.shell == "/bin/bash"
        assert args.timeout == pytest.approx(3.0)
        assert args.verbose is True
