"""Command pipeline module for osarunner.

Owns the long-lived worker process, frames submitted scripts for it and
hands each worker response back to the caller that submitted the
matching script.

Public API:
    ScriptExecutor -- Abstract base class
    CommandPipeline -- Local pipeline driving the worker subprocess
    PipelineError and its subclasses
"""

from osarunner.pipeline.base import (
    InvalidCommandError,
    PipelineError,
    PipelineNotRunning,
    ScriptExecutor,
    WorkerExecutionError,
    WorkerRestarted,
    WorkerSpawnError,
    WorkerTerminated,
)

__all__ = [
    "CommandPipeline",
    "InvalidCommandError",
    "PipelineError",
    "PipelineNotRunning",
    "ScriptExecutor",
    "WorkerExecutionError",
    "WorkerRestarted",
    "WorkerSpawnError",
    "WorkerTerminated",
]


def __getattr__(name: str) -> type:
    """Lazy import so the worker can load framing without the pipeline."""
    if name == "CommandPipeline":
        from osarunner.pipeline.pipeline import CommandPipeline
        return CommandPipeline
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
