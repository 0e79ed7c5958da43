"""Domain models for osarunner.

Public API:
    WorkerState, CorrelationMode, RestartPolicy, ResponseChannel
    WorkerResponse, PendingRequest
"""

from osarunner.domain.models import (
    CorrelationMode,
    PendingRequest,
    ResponseChannel,
    RestartPolicy,
    WorkerResponse,
    WorkerState,
)

__all__ = [
    "CorrelationMode",
    "PendingRequest",
    "ResponseChannel",
    "RestartPolicy",
    "WorkerResponse",
    "WorkerState",
]
