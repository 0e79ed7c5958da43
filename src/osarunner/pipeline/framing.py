"""Command framing shared by the pipeline and the worker.

A script is wrapped in a shell here-document that feeds it to the
automation interpreter, so quotes and newlines in the script need no
escaping::

    osascript <<'OSARUNNER_EOF'
    display dialog "It's done"
    OSARUNNER_EOF

The worker reads its input line by line. A line that opens a
here-document continues until the delimiter line; any other line is a
command on its own. An optional ``#@id <token>`` header line tags the
next command, and the line ``exit`` stops the worker.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterator, Sequence

from osarunner.pipeline.base import InvalidCommandError

EXIT_TOKEN = "exit"
TOKEN_HEADER = "#@id "
DEFAULT_DELIMITER = "OSARUNNER_EOF"

# ``<<WORD``, ``<<'WORD'``, ``<<"WORD"`` and ``<<-WORD``; not ``<<<``
_HEREDOC_RE = re.compile(
    r"(?<![<\w])<<(-?)[ \t]*(['\"]?)([A-Za-z_][A-Za-z0-9_]*)\2(?=[\s|;&)>]|$)"
)
_DELIMITER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class FramingError(ValueError):
    """Raised when worker input does not form a complete command."""


def join_script(script: str | Sequence[str] | None) -> str:
    """Turn a script or a sequence of script fragments into one text.

    Raises:
        InvalidCommandError: If the script is None, empty or blank.
    """
    if script is None:
        raise InvalidCommandError("Script must not be None")
    if isinstance(script, str):
        text = script
    else:
        fragments = list(script)
        for fragment in fragments:
            if not isinstance(fragment, str):
                raise InvalidCommandError(
                    f"Script fragments must be strings, got {type(fragment).__name__}"
                )
        text = "\n".join(fragments)
    if not text.strip():
        raise InvalidCommandError("Script must not be empty")
    return text


def validate_delimiter(delimiter: str) -> str:
    """Raise ValueError unless ``delimiter`` is a plain shell word."""
    if not isinstance(delimiter, str) or not _DELIMITER_RE.match(delimiter):
        raise ValueError(f"Invalid here-document delimiter: {delimiter!r}")
    return delimiter


def choose_delimiter(payload: str, base: str = DEFAULT_DELIMITER) -> str:
    """Pick a here-document delimiter that no payload line collides with."""
    validate_delimiter(base)
    lines = {line.strip() for line in payload.splitlines()}
    delimiter = base
    while delimiter in lines:
        delimiter = f"{base}_{uuid.uuid4().hex[:8].upper()}"
    return delimiter


def frame_script(payload: str, interpreter: str, delimiter: str = DEFAULT_DELIMITER) -> str:
    """Wrap a script in a here-document piped into the interpreter.

    The line break closing the last payload line doubles as the one
    before the delimiter, so a payload ending in ``\n`` gains no blank line.
    """
    if payload.endswith("\n"):
        payload = payload[:-1]
    delimiter = choose_delimiter(payload, delimiter)
    return f"{interpreter} <<'{delimiter}'\n{payload}\n{delimiter}\n"


def heredoc_delimiter(line: str) -> tuple[str, bool] | None:
    """Return ``(delimiter, strip_tabs)`` if the line opens a here-document."""
    match = _HEREDOC_RE.search(line)
    if match is None:
        return None
    return match.group(3), match.group(1) == "-"


def read_command(first_line: str, lines: Iterator[str]) -> str:
    """Read one complete command starting at ``first_line``.

    Lines are consumed from ``lines`` only while a here-document is
    open. The returned command has no trailing newline. Body lines lose
    only their line feed, so carriage returns in a script survive.

    Raises:
        FramingError: If input ends before the here-document delimiter.
    """
    first_line = first_line.rstrip("\r\n")
    opened = heredoc_delimiter(first_line)
    if opened is None:
        return first_line

    delimiter, strip_tabs = opened
    body = [first_line]
    for line in lines:
        line = line.removesuffix("\n")
        body.append(line)
        candidate = line.lstrip("\t") if strip_tabs else line
        if candidate == delimiter:
            return "\n".join(body)
    raise FramingError(f"Unterminated here-document (missing {delimiter!r})")


def split_commands(text: str) -> list[str]:
    """Split text into the commands the worker would see, skipping blank lines."""
    lines = iter(text.split("\n"))
    commands = []
    for line in lines:
        if not line.strip():
            continue
        commands.append(read_command(line, lines))
    return commands


def validate_raw_command(command_text: str | None) -> str:
    """Check that pre-formatted text is exactly one worker command.

    Returns:
        The command terminated with a single newline.

    Raises:
        InvalidCommandError: If the text is empty, is the termination
            token, or would be read as zero or several commands.
    """
    if command_text is None or not command_text.strip():
        raise InvalidCommandError("Command must not be empty")
    try:
        commands = split_commands(command_text)
    except FramingError as e:
        raise InvalidCommandError(str(e), command=command_text) from e
    if len(commands) != 1:
        raise InvalidCommandError(
            f"Raw command must form exactly one worker command, got {len(commands)}",
            command=command_text,
        )
    command = commands[0]
    if command.strip() == EXIT_TOKEN:
        raise InvalidCommandError("Raw command must not be the termination token", command=command_text)
    if command.startswith(TOKEN_HEADER):
        raise InvalidCommandError("Raw command must not be a token header", command=command_text)
    return command + "\n"


def encode_frame(command: str, token: str | None = None) -> bytes:
    """Encode a command for the worker's stdin, prefixed with its token header."""
    if not command.endswith("\n"):
        command += "\n"
    if token is not None:
        command = f"{TOKEN_HEADER}{token}\n{command}"
    return command.encode("utf-8")


def parse_token_header(line: str) -> str | None:
    """Return the token if ``line`` is a ``#@id`` header, else None."""
    if not line.startswith(TOKEN_HEADER):
        return None
    return line[len(TOKEN_HEADER):].strip() or None
