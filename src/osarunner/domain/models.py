"""Core domain models for the osarunner system.

These models represent the data flowing between callers, the command
pipeline and the worker process: worker lifecycle state, the policies
that govern correlation and restarts, the response frames written by
the worker, and the pending requests awaiting those frames.
"""

from __future__ import annotations

import asyncio
import enum
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class WorkerState(str, enum.Enum):
    """Lifecycle state of the worker process held by a pipeline."""

    RUNNING = "running"
    TERMINATED = "terminated"


class CorrelationMode(str, enum.Enum):
    """How worker responses are matched back to requests."""

    FIFO = "fifo"  # Oldest in-flight request takes the next response
    TOKEN = "token"  # Responses echo a per-command token


class RestartPolicy(str, enum.Enum):
    """What happens to in-flight requests when the worker is restarted."""

    REJECT_IN_FLIGHT = "reject-in-flight"
    SILENTLY_DROP = "silently-drop"


class ResponseChannel(str, enum.Enum):
    """Stream a worker response arrived on."""

    OUTPUT = "stdout"
    ERROR = "stderr"


# ---------------------------------------------------------------------------
# Wire Models
# ---------------------------------------------------------------------------


class WorkerResponse(BaseModel):
    """A single response frame written by the worker, one JSON object per line.

    The channel it arrives on (stdout or stderr) tells success from
    failure; the frame itself only carries the text and, in token mode,
    the correlation token of the command it answers.
    """

    model_config = ConfigDict(frozen=True)

    id: str | None = Field(default=None, description="Correlation token echoed from the command")
    text: str = Field(default="", description="Raw output or error text")


# ---------------------------------------------------------------------------
# Pipeline Models
# ---------------------------------------------------------------------------


class PendingRequest(BaseModel):
    """An outstanding caller request awaiting a worker response.

    The future is the caller's handle on the eventual result. Resolving
    and rejecting are no-ops once the future is done, so a caller that
    cancelled its future still leaves the request in place to absorb the
    response meant for it.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    command: str = Field(description="Command text exactly as written to the worker")
    frame: bytes = Field(default=b"", description="Encoded bytes written to the worker stdin")
    future: asyncio.Future = Field(description="Caller's eventual result")
    token: str | None = Field(default=None, description="Correlation token in token mode")
    submitted_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_abandoned(self) -> bool:
        return self.future.done()

    def resolve(self, text: str) -> bool:
        if self.future.done():
            return False
        self.future.set_result(text)
        return True

    def reject(self, error: BaseException) -> bool:
        if self.future.done():
            return False
        self.future.set_exception(error)
        return True
