"""Persistent command pipeline in front of a single worker process.

The pipeline spawns ``python -m osarunner.worker``, frames each
submitted script as a shell here-document, writes it to the worker's
stdin and resolves the caller's future with the response the worker
writes back on stdout (success) or stderr (failure).

Responses carry no identifier in FIFO mode, so the pipeline keeps at
most one command in flight and the oldest pending request always takes
the next response. In token mode every command is tagged and the
worker echoes the tag, which lets the dispatcher write ahead.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import uuid
from collections import deque
from collections.abc import Sequence

from pydantic import ValidationError

from osarunner.domain.models import (
    CorrelationMode,
    PendingRequest,
    ResponseChannel,
    RestartPolicy,
    WorkerResponse,
    WorkerState,
)
from osarunner.pipeline.base import (
    InvalidCommandError,
    PipelineNotRunning,
    ScriptExecutor,
    WorkerExecutionError,
    WorkerRestarted,
    WorkerSpawnError,
    WorkerTerminated,
)
from osarunner.pipeline.framing import (
    DEFAULT_DELIMITER,
    EXIT_TOKEN,
    encode_frame,
    frame_script,
    join_script,
    validate_delimiter,
    validate_raw_command,
)

logger = logging.getLogger(__name__)

DEFAULT_STREAM_LIMIT = 16 * 1024 * 1024


def build_worker_command(shell: str = "/bin/sh", command_timeout: float | None = None) -> list[str]:
    """Command line that starts the bundled worker loop."""
    command = [sys.executable, "-m", "osarunner.worker", "--shell", shell]
    if command_timeout is not None:
        command += ["--timeout", str(command_timeout)]
    return command


class CommandPipeline(ScriptExecutor):
    """Serializes scripts to one worker process and correlates its responses.

    ``submit`` and ``submit_raw`` are plain methods returning an
    ``asyncio.Future``: they fail synchronously when the pipeline is not
    running or the text is invalid, and the future settles once the
    worker answers. They must be called from the event loop the
    pipeline was started on.
    """

    def __init__(
        self,
        interpreter: str = "osascript",
        *,
        shell: str = "/bin/sh",
        correlation: CorrelationMode = CorrelationMode.FIFO,
        restart_policy: RestartPolicy = RestartPolicy.REJECT_IN_FLIGHT,
        delimiter: str = DEFAULT_DELIMITER,
        command_timeout: float | None = None,
        close_timeout: float = 5.0,
        stream_limit: int = DEFAULT_STREAM_LIMIT,
        worker_command: Sequence[str] | None = None,
    ) -> None:
        self._interpreter = interpreter
        self._correlation = CorrelationMode(correlation)
        self._restart_policy = RestartPolicy(restart_policy)
        self._delimiter = validate_delimiter(delimiter)
        self._close_timeout = close_timeout
        self._stream_limit = stream_limit
        self._worker_command = list(worker_command or build_worker_command(shell, command_timeout))

        self._state = WorkerState.TERMINATED
        self._process: asyncio.subprocess.Process | None = None
        self._outbox: deque[PendingRequest] = deque()
        self._wakeup = asyncio.Event()
        self._in_flight: deque[PendingRequest] = deque()
        self._by_token: dict[str, PendingRequest] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._dispatch_task: asyncio.Task[None] | None = None
        self._reader_tasks: list[asyncio.Task[None]] = []
        self._exit_task: asyncio.Task[None] | None = None
        self._discarded: dict[asyncio.subprocess.Process, asyncio.Task[None]] = {}
        # start, restart and close each run to completion before the next begins
        self._lifecycle = asyncio.Lock()

    @classmethod
    def from_config(cls, config) -> CommandPipeline:
        """Build a pipeline from a ``PipelineConfig``."""
        return cls(
            interpreter=config.interpreter,
            shell=config.shell,
            correlation=config.correlation,
            restart_policy=config.restart_policy,
            delimiter=config.delimiter,
            command_timeout=config.command_timeout,
            close_timeout=config.close_timeout,
            stream_limit=config.stream_limit,
        )

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is WorkerState.RUNNING

    @property
    def pending_count(self) -> int:
        """Requests submitted but not yet answered, queued or in flight."""
        return len(self._outbox) + len(self._in_flight) + len(self._by_token)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the worker process. No-op if it is already running."""
        async with self._lifecycle:
            if self._process is not None:
                return
            await self._spawn()

    async def restart(self) -> None:
        """Discard the current worker and spawn a fresh one.

        The old worker is not signalled: its stdin is closed and it is
        reaped in the background. Commands already written to it are
        rejected with WorkerRestarted or left unresolved, depending on
        the restart policy. Commands not yet written move to the new
        worker.
        """
        async with self._lifecycle:
            await self._restart()

    async def _restart(self) -> None:
        old = self._process
        if old is not None:
            self._detach()
            orphaned = self._take_in_flight()
            if self._restart_policy is RestartPolicy.REJECT_IN_FLIGHT:
                for request in orphaned:
                    request.reject(WorkerRestarted(
                        "Worker restarted before responding", command=request.command,
                    ))
            elif orphaned:
                logger.warning(
                    "Restart dropped %d in-flight request(s); they will never resolve",
                    len(orphaned),
                )
            self._close_stdin(old)
            self._discarded[old] = asyncio.create_task(self._reap(old))
            logger.info("Discarded worker pid=%d", old.pid)
        try:
            await self._spawn()
        except WorkerSpawnError as e:
            self._reject_outbox(WorkerTerminated(str(e)))
            raise

    async def close(self) -> None:
        """Send the termination token and wait for the worker to exit.

        Responses to commands already written are still delivered;
        anything queued but unwritten is rejected. Idempotent.
        """
        async with self._lifecycle:
            await self._close()

    async def _close(self) -> None:
        process = self._process
        if process is None:
            await self._reap_discarded()
            return
        self._state = WorkerState.TERMINATED
        self._process = None
        await self._cancel_dispatcher()
        self._reject_outbox(WorkerTerminated("Pipeline closed before the command was sent"))

        try:
            process.stdin.write(f"{EXIT_TOKEN}\n".encode())
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug("Worker stdin already closed: %s", e)
        self._close_stdin(process)

        exit_task = self._exit_task
        if exit_task is not None:
            done, _ = await asyncio.wait({exit_task}, timeout=self._close_timeout)
            if not done:
                logger.warning(
                    "Worker pid=%d did not exit within %.1fs, killing it",
                    process.pid, self._close_timeout,
                )
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await exit_task
        await self._reap_discarded()
        logger.info("Pipeline closed")

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, script: str | Sequence[str]) -> asyncio.Future[str]:
        """Frame a script for the interpreter and queue it for the worker."""
        self._require_running()
        payload = join_script(script)
        logger.debug("Submitting script:\n%s", payload)
        return self._enqueue(frame_script(payload, self._interpreter, self._delimiter))

    def submit_raw(self, command_text: str) -> asyncio.Future[str]:
        """Queue a pre-formatted shell command without interpreter framing."""
        self._require_running()
        return self._enqueue(validate_raw_command(command_text))

    def _require_running(self) -> None:
        if self._process is None or self._state is not WorkerState.RUNNING:
            raise PipelineNotRunning("Pipeline is not running")

    def _enqueue(self, command: str) -> asyncio.Future[str]:
        loop = asyncio.get_running_loop()
        token = uuid.uuid4().hex if self._correlation is CorrelationMode.TOKEN else None
        try:
            frame = encode_frame(command, token)
        except UnicodeEncodeError as e:
            raise InvalidCommandError(
                f"Command cannot be encoded as UTF-8: {e.reason}", command=command,
            ) from e
        request = PendingRequest(command=command, frame=frame, future=loop.create_future(), token=token)
        self._outbox.append(request)
        self._wakeup.set()
        return request.future

    # ------------------------------------------------------------------
    # Worker I/O
    # ------------------------------------------------------------------

    async def _spawn(self) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *self._worker_command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self._stream_limit,
            )
        except OSError as e:
            self._state = WorkerState.TERMINATED
            raise WorkerSpawnError(f"Failed to start worker {self._worker_command[0]}: {e}") from e

        self._process = process
        self._state = WorkerState.RUNNING
        self._idle.set()
        self._reader_tasks = [
            asyncio.create_task(self._read_channel(process.stdout, ResponseChannel.OUTPUT)),
            asyncio.create_task(self._read_channel(process.stderr, ResponseChannel.ERROR)),
        ]
        self._exit_task = asyncio.create_task(self._watch_exit(process, list(self._reader_tasks)))
        self._dispatch_task = asyncio.create_task(self._dispatch_loop(process))
        logger.info("Started worker pid=%d (%s correlation)", process.pid, self._correlation.value)

    async def _dispatch_loop(self, process: asyncio.subprocess.Process) -> None:
        """Write queued commands to the worker, one in flight in FIFO mode."""
        fifo = self._correlation is CorrelationMode.FIFO
        while True:
            if fifo:
                await self._idle.wait()
            while not self._outbox:
                self._wakeup.clear()
                await self._wakeup.wait()
            # No await between taking a request and tracking it as in flight
            request = self._outbox.popleft()
            if request.is_abandoned:
                logger.debug("Skipping cancelled request before dispatch")
                continue
            if fifo:
                self._idle.clear()
                self._in_flight.append(request)
            else:
                self._by_token[request.token] = request
            try:
                process.stdin.write(request.frame)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                logger.error("Failed to write to worker: %s", e)
                self._forget(request)
                request.reject(WorkerTerminated(
                    f"Worker stdin closed: {e}", command=request.command,
                ))
            except Exception as e:
                logger.exception("Failed to dispatch command")
                self._forget(request)
                request.reject(WorkerExecutionError(
                    f"Failed to send command to worker: {e}", command=request.command,
                ))

    async def _read_channel(self, stream: asyncio.StreamReader, channel: ResponseChannel) -> None:
        while True:
            try:
                line = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                line = e.partial
            except asyncio.LimitOverrunError as e:
                logger.error("Worker %s line exceeded %d bytes", channel.value, self._stream_limit)
                await self._skip_line(stream, e.consumed)
                self._fail_unreadable(f"Worker response exceeded {self._stream_limit} bytes")
                continue
            if not line:
                return
            self._handle_response(channel, line.decode("utf-8", errors="replace"))

    async def _skip_line(self, stream: asyncio.StreamReader, consumed: int) -> None:
        """Drop the rest of a line that overran the stream limit."""
        while True:
            await stream.readexactly(consumed)
            try:
                await stream.readuntil(b"\n")
                return
            except asyncio.IncompleteReadError:
                return
            except asyncio.LimitOverrunError as e:
                consumed = e.consumed

    def _handle_response(self, channel: ResponseChannel, line: str) -> None:
        """Correlate one line read from the worker with a pending request."""
        line = line.rstrip("\r\n")
        if not line.strip():
            return
        try:
            response = WorkerResponse.model_validate_json(line)
        except ValidationError:
            logger.debug("Worker %s (non-protocol): %s", channel.value, line[:500])
            return

        request = self._pop_request(response)
        if request is None:
            logger.warning(
                "Discarding unmatched worker %s response: %s",
                channel.value, response.text[:200],
            )
            return

        if channel is ResponseChannel.OUTPUT:
            logger.debug("Worker stdout: %s", response.text[:500])
            delivered = request.resolve(response.text)
        else:
            logger.debug("Worker stderr: %s", response.text[:500])
            delivered = request.reject(WorkerExecutionError(response.text, command=request.command))
        if not delivered:
            logger.debug("Response arrived for an abandoned request")

    def _pop_request(self, response: WorkerResponse) -> PendingRequest | None:
        if self._correlation is CorrelationMode.FIFO:
            if not self._in_flight:
                return None
            request = self._in_flight.popleft()
            if not self._in_flight:
                self._idle.set()
            return request
        if response.id is None:
            return None
        return self._by_token.pop(response.id, None)

    def _fail_unreadable(self, message: str) -> None:
        """Reject the request(s) an unreadable response could belong to.

        In FIFO mode that is the oldest in-flight request. In token mode
        the token is lost with the line, so every written request fails.
        """
        if self._correlation is CorrelationMode.FIFO:
            if not self._in_flight:
                return
            request = self._in_flight.popleft()
            if not self._in_flight:
                self._idle.set()
            request.reject(WorkerExecutionError(message, command=request.command))
            return
        for request in self._take_in_flight():
            request.reject(WorkerExecutionError(message, command=request.command))

    def _forget(self, request: PendingRequest) -> None:
        if request.token is not None:
            self._by_token.pop(request.token, None)
        elif request in self._in_flight:
            self._in_flight.remove(request)
            if not self._in_flight:
                self._idle.set()

    async def _watch_exit(
        self,
        process: asyncio.subprocess.Process,
        readers: list[asyncio.Task[None]],
    ) -> None:
        """Reject everything still pending once the worker has exited."""
        await asyncio.gather(*readers, return_exceptions=True)
        returncode = await process.wait()
        crashed = self._process is process
        if crashed:
            logger.error("Worker pid=%d exited unexpectedly (code %s)", process.pid, returncode)
            self._state = WorkerState.TERMINATED
            self._process = None
            await self._cancel_dispatcher()
        else:
            logger.info("Worker pid=%d exited (code %s)", process.pid, returncode)

        error = WorkerTerminated(
            f"Worker exited with code {returncode} before responding", exit_code=returncode,
        )
        for request in self._take_in_flight():
            request.reject(WorkerTerminated(str(error), command=request.command, exit_code=returncode))
        if crashed:
            self._reject_outbox(error)

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        self._discarded.pop(process, None)
        logger.debug("Reaped discarded worker pid=%d (code %s)", process.pid, returncode)

    async def _reap_discarded(self) -> None:
        """Give workers discarded by restart() time to finish, then kill them."""
        if not self._discarded:
            return
        _, still_running = await asyncio.wait(
            set(self._discarded.values()), timeout=self._close_timeout,
        )
        for process in list(self._discarded):
            try:
                process.kill()
            except ProcessLookupError:
                pass
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _detach(self) -> None:
        """Stop all tasks bound to the current worker without touching requests."""
        for task in (self._dispatch_task, self._exit_task, *self._reader_tasks):
            if task is not None:
                task.cancel()
        self._dispatch_task = None
        self._exit_task = None
        self._reader_tasks = []
        self._process = None
        self._state = WorkerState.TERMINATED

    async def _cancel_dispatcher(self) -> None:
        task = self._dispatch_task
        self._dispatch_task = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _take_in_flight(self) -> list[PendingRequest]:
        requests = list(self._in_flight) + list(self._by_token.values())
        self._in_flight.clear()
        self._by_token.clear()
        self._idle.set()
        return requests

    def _reject_outbox(self, error: WorkerTerminated) -> None:
        while self._outbox:
            request = self._outbox.popleft()
            request.reject(WorkerTerminated(str(error), command=request.command, exit_code=error.exit_code))

    def _close_stdin(self, process: asyncio.subprocess.Process) -> None:
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
