"""The worker loop run inside the helper process.

Reads commands from stdin, runs each one through the shell and writes
exactly one response frame per command: the command's stdout on the
output stream when it succeeds, its error text on the error stream
when it does not. Commands run strictly one after another so responses
come back in the order commands arrived.
"""

from __future__ import annotations

import logging
import subprocess
from typing import TextIO

from pydantic import BaseModel, ConfigDict

from osarunner.domain.models import WorkerResponse
from osarunner.pipeline.framing import (
    EXIT_TOKEN,
    FramingError,
    parse_token_header,
    read_command,
)

logger = logging.getLogger(__name__)


class CommandResult(BaseModel):
    """Outcome of running one command."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    text: str


def execute_command(command: str, shell: str = "/bin/sh", timeout: float | None = None) -> CommandResult:
    """Run a shell command and capture either its output or its error."""
    try:
        completed = subprocess.run(
            command,
            shell=True,
            executable=shell,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return CommandResult(ok=False, text=f"Command timed out after {timeout}s")
    except OSError as e:
        return CommandResult(ok=False, text=f"Failed to run command: {e}")

    # Decoded by hand: text mode would fold \r\n into \n
    stdout = completed.stdout.decode("utf-8", errors="replace")
    stderr = completed.stderr.decode("utf-8", errors="replace")
    if completed.returncode != 0:
        text = stderr or f"Command exited with status {completed.returncode}"
        return CommandResult(ok=False, text=text)
    if stderr:
        logger.debug("Command wrote to stderr despite succeeding: %s", stderr[:200])
    return CommandResult(ok=True, text=stdout)


def run_worker(
    stdin: TextIO,
    stdout: TextIO,
    stderr: TextIO,
    shell: str = "/bin/sh",
    timeout: float | None = None,
) -> int:
    """Serve commands from ``stdin`` until ``exit`` or end of input.

    Returns:
        The process exit code, always 0.
    """
    lines = iter(stdin.readline, "")
    token: str | None = None

    for line in lines:
        stripped = line.rstrip("\r\n")
        if stripped.strip() == EXIT_TOKEN:
            logger.info("Received termination token, exiting")
            return 0
        if not stripped.strip():
            continue

        header = parse_token_header(stripped)
        if header is not None:
            token = header
            continue

        try:
            command = read_command(stripped, lines)
        except FramingError as e:
            _write_response(stderr, token, str(e))
            return 0

        result = execute_command(command, shell=shell, timeout=timeout)
        _write_response(stdout if result.ok else stderr, token, result.text)
        token = None

    logger.info("Input closed, exiting")
    return 0


def _write_response(stream: TextIO, token: str | None, text: str) -> None:
    stream.write(WorkerResponse(id=token, text=text).model_dump_json() + "\n")
    stream.flush()
