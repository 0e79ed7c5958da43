"""Abstract base class and error types for script executors.

All executors conform to this interface, so callers can swap the
in-process command pipeline for the HTTP client talking to a remote
endpoint without changing any other code.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Sequence

logger = logging.getLogger(__name__)


class ScriptExecutor(ABC):
    """Abstract interface for running automation scripts.

    Example usage::

        async with CommandPipeline() as pipeline:
            output = await pipeline.submit([
                'display dialog "Hello"',
                'say "Hello"',
            ])
    """

    @abstractmethod
    async def start(self) -> None:
        """Bring the executor up so it accepts submissions.

        Raises:
            PipelineError: If the executor cannot be started.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Shut the executor down.

        Safe to call multiple times. After closing, submissions fail
        with PipelineNotRunning.
        """
        ...

    @abstractmethod
    def submit(self, script: str | Sequence[str]) -> Awaitable[str]:
        """Submit an automation script for execution.

        Args:
            script: Script text, or an ordered sequence of script
                    fragments that are joined with newlines.

        Returns:
            An awaitable resolving to the raw output text.

        Raises:
            PipelineNotRunning: Immediately, if the executor is not running.
            InvalidCommandError: Immediately, if the script is empty.
        """
        ...

    @abstractmethod
    def submit_raw(self, command_text: str) -> Awaitable[str]:
        """Submit a pre-formatted shell command, bypassing script framing."""
        ...

    async def __aenter__(self) -> ScriptExecutor:
        await self.start()
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        await self.close()


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    error_code = "pipeline_error"

    def __init__(self, message: str, command: str | None = None) -> None:
        super().__init__(message)
        self.command = command


class PipelineNotRunning(PipelineError):
    """Raised when submitting to a pipeline with no running worker."""

    error_code = "not_running"


class InvalidCommandError(PipelineError, ValueError):
    """Raised when command text is rejected before reaching the worker."""

    error_code = "invalid_command"


class WorkerExecutionError(PipelineError):
    """The worker ran the command and reported a failure."""

    error_code = "execution_failed"

    @property
    def error_text(self) -> str:
        return str(self)


class WorkerTerminated(PipelineError):
    """The worker went away while the request was still pending."""

    error_code = "worker_terminated"

    def __init__(
        self,
        message: str,
        command: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message, command=command)
        self.exit_code = exit_code


class WorkerRestarted(WorkerTerminated):
    """The pipeline was restarted while the request was in flight."""

    error_code = "worker_restarted"


class WorkerSpawnError(PipelineError):
    """The worker process could not be started."""

    error_code = "spawn_failed"


ERRORS_BY_CODE: dict[str, type[PipelineError]] = {
    cls.error_code: cls
    for cls in (
        PipelineError,
        PipelineNotRunning,
        InvalidCommandError,
        WorkerExecutionError,
        WorkerTerminated,
        WorkerRestarted,
        WorkerSpawnError,
    )
}


def error_from_code(code: str, message: str, command: str | None = None) -> PipelineError:
    """Rebuild a typed pipeline error from its wire representation."""
    cls = ERRORS_BY_CODE.get(code, PipelineError)
    if cls is PipelineError and code != PipelineError.error_code:
        logger.debug("Unknown pipeline error code %r", code)
    return cls(message, command=command)
