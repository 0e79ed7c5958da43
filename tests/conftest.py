"""Shared test fixtures for the osarunner test suite.

Pipelines under test run the real worker process with ordinary Unix
tools standing in for the automation interpreter: ``sh`` executes the
script, ``cat`` echoes it back unchanged and ``sed`` rewrites it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from osarunner.domain.models import WorkerState
from osarunner.pipeline.pipeline import CommandPipeline


# ---------------------------------------------------------------------------
# Pipeline Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_pipeline() -> Callable[..., CommandPipeline]:
    """Factory for pipelines with short timeouts, defaulting to ``sh``."""

    def factory(interpreter: str = "sh", **kwargs) -> CommandPipeline:
        kwargs.setdefault("close_timeout", 5.0)
        return CommandPipeline(interpreter=interpreter, **kwargs)

    return factory


async def _wait_until(predicate: Callable[[], object], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("Condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_until() -> Callable[..., object]:
    """Poll a predicate until it is truthy or fail the test."""
    return _wait_until


# ---------------------------------------------------------------------------
# Mock Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_pipeline() -> MagicMock:
    """A running CommandPipeline stand-in with async submission methods."""
    mock = MagicMock(spec=CommandPipeline)
    mock.state = WorkerState.RUNNING
    mock.is_running = True
    mock.pending_count = 0
    mock.submit = AsyncMock(return_value="HELLO\n")
    mock.submit_raw = AsyncMock(return_value="raw\n")
    mock.restart = AsyncMock()
    mock.start = AsyncMock()
    mock.close = AsyncMock()
    return mock
