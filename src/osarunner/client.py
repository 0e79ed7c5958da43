"""HTTP script executor.

Sends scripts to a remote osarunner endpoint and re-raises the
endpoint's pipeline errors as the matching local error types.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx

from osarunner.pipeline.base import (
    PipelineError,
    PipelineNotRunning,
    ScriptExecutor,
    error_from_code,
)
from osarunner.pipeline.framing import join_script, validate_raw_command

logger = logging.getLogger(__name__)


class HttpScriptClient(ScriptExecutor):
    """Runs scripts through the HTTP endpoint of a remote pipeline."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8765",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Create the HTTP client and verify endpoint connectivity."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )
        try:
            resp = await self._client.get("/health")
            resp.raise_for_status()
            logger.info("Connected to endpoint at %s", self._base_url)
        except httpx.HTTPError as e:
            await self._client.aclose()
            self._client = None
            raise PipelineNotRunning(f"Failed to connect to endpoint: {e}") from e

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Disconnected from endpoint")

    def submit(self, script: str | Sequence[str]):
        """POST a script to /scripts; the returned coroutine yields its output."""
        self._require_client()
        text = join_script(script)
        return self._post("/scripts", {"script": text})

    def submit_raw(self, command_text: str):
        """POST a pre-formatted command to /raw."""
        self._require_client()
        validate_raw_command(command_text)
        return self._post("/raw", {"command": command_text})

    async def restart(self) -> None:
        """Ask the endpoint to restart its worker."""
        self._require_client()
        await self._request("/restart", None)

    def _require_client(self) -> None:
        if self._client is None:
            raise PipelineNotRunning("Not connected to endpoint")

    async def _post(self, path: str, payload: dict) -> str:
        resp = await self._request(path, payload)
        return resp.json()["output"]

    async def _request(self, path: str, payload: dict | None) -> httpx.Response:
        if self._client is None:
            raise PipelineNotRunning("Not connected to endpoint")
        try:
            resp = await self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            raise PipelineError(f"HTTP request to {path} failed: {e}") from e
        if resp.is_error:
            raise _error_from_response(resp)
        return resp


def _error_from_response(resp: httpx.Response) -> PipelineError:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and "error" in body:
        return error_from_code(body["error"], body.get("message", ""), body.get("command"))
    return PipelineError(f"Endpoint returned HTTP {resp.status_code}: {resp.text[:200]}")
