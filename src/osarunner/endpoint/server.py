"""FastAPI HTTP server in front of a command pipeline.

Receives scripts via HTTP, runs them through the persistent pipeline
and returns the worker's output. Pipeline errors are returned as JSON
bodies carrying the error code, so the HTTP client can re-raise the
same error types.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from osarunner.config.settings import PipelineConfig, Settings, load_settings
from osarunner.pipeline.base import (
    InvalidCommandError,
    PipelineError,
    PipelineNotRunning,
    WorkerExecutionError,
    WorkerSpawnError,
    WorkerTerminated,
)
from osarunner.pipeline.pipeline import CommandPipeline

logger = logging.getLogger(__name__)


class ScriptRequest(BaseModel):
    script: str | None = Field(default=None, description="Script text")
    lines: list[str] | None = Field(default=None, description="Script fragments joined with newlines")


class RawCommandRequest(BaseModel):
    command: str = Field(description="Pre-formatted shell command")


class ScriptResponse(BaseModel):
    status: str = "ok"
    output: str


class EndpointStatus(BaseModel):
    status: str = "ok"
    worker_state: str
    pending: int = 0


# Pipeline error type to HTTP status
STATUS_CODES: dict[type[PipelineError], int] = {
    InvalidCommandError: 422,
    PipelineNotRunning: 503,
    WorkerTerminated: 503,
    WorkerSpawnError: 503,
    WorkerExecutionError: 502,
}


def status_for(error: PipelineError) -> int:
    for cls in type(error).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 500


def create_app(
    pipeline: CommandPipeline | None = None,
    config: PipelineConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        p = app.state.pipeline
        if p is None:
            p = CommandPipeline.from_config(config or PipelineConfig())
            app.state.pipeline = p
        await p.start()
        logger.info("Endpoint started")
        yield
        await p.close()
        logger.info("Endpoint stopped")

    app = FastAPI(
        title="osarunner Endpoint",
        description="HTTP endpoint for the persistent automation script pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.pipeline = pipeline

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
        logger.info("%s %s failed: %s", request.method, request.url.path, exc.error_code)
        return JSONResponse(
            status_code=status_for(exc),
            content={"error": exc.error_code, "message": str(exc), "command": exc.command},
        )

    @app.get("/health")
    async def health_check() -> EndpointStatus:
        p = app.state.pipeline
        if p is None:
            return EndpointStatus(status="starting", worker_state="terminated")
        return EndpointStatus(
            status="ok" if p.is_running else "degraded",
            worker_state=p.state.value,
            pending=p.pending_count,
        )

    @app.post("/scripts")
    async def run_script(request: ScriptRequest) -> ScriptResponse:
        p: CommandPipeline = app.state.pipeline
        script = request.lines if request.lines is not None else request.script
        output = await p.submit(script)
        return ScriptResponse(output=output)

    @app.post("/raw")
    async def run_raw(request: RawCommandRequest) -> ScriptResponse:
        p: CommandPipeline = app.state.pipeline
        output = await p.submit_raw(request.command)
        return ScriptResponse(output=output)

    @app.post("/restart")
    async def restart_worker() -> EndpointStatus:
        p: CommandPipeline = app.state.pipeline
        await p.restart()
        return EndpointStatus(worker_state=p.state.value, pending=p.pending_count)

    return app


def serve(settings: Settings) -> None:
    """Run the endpoint with uvicorn on the configured host and port."""
    app = create_app(config=settings.pipeline)
    logger.info("Serving on %s:%d", settings.endpoint.host, settings.endpoint.port)
    uvicorn.run(app, host=settings.endpoint.host, port=settings.endpoint.port)


def main(config_path: str | None = None) -> None:
    """Entry point for running the endpoint server standalone."""
    from osarunner.utils.logging import setup_logging

    settings = load_settings(config_path)
    setup_logging(settings.logging)
    serve(settings)


if __name__ == "__main__":
    main()
