"""
Executes tunnel plans: one ffmpeg process, or one upstream request for direct proxies, per operation.

Every operation follows ``idle -> starting -> streaming -> completed | failed | timed_out -> closed``.
Deadline expiry and external cancellation are merged into a single watchdog that drives the
KillTimer (SIGTERM, grace period, SIGKILL). ``close`` is the only cleanup path; it is idempotent
and every exit path ends in it.
"""

import asyncio
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from mediagrab.configs import settings
from mediagrab.const import METADATA_TAGS, SUPPORTED_RESPONSE_HEADERS
from mediagrab.processing.plan import DirectProxyPlan, TunnelPlan
from mediagrab.stream.ffmpeg_args import build_command, build_ffmpeg_args, is_remote
from mediagrab.stream.temp_files import TempFileManager
from mediagrab.utils.http_utils import DownloadError, Streamer, create_httpx_client, fetch_content_length

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


class RunnerState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"


TERMINAL_STATES = frozenset({RunnerState.COMPLETED, RunnerState.FAILED, RunnerState.TIMED_OUT, RunnerState.CLOSED})


class ExecutionError(Exception):
    """Base exception for plan execution failures."""


class InvalidPlanError(ExecutionError):
    """The plan was rejected before anything was spawned."""


class UpstreamStatusError(ExecutionError):
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(message)


class KillPhase(str, Enum):
    ARMED = "armed"
    GRACEFUL = "graceful"
    FORCED = "forced"
    EXITED = "exited"


class KillTimer:
    """
    Terminates one process: SIGTERM, then SIGKILL if it is still alive after ``grace_period``.

    ``terminate`` may be awaited from several places; the sequence runs once.
    """

    def __init__(self, process: asyncio.subprocess.Process, grace_period: float):
        self.process = process
        self.grace_period = grace_period
        self.phase = KillPhase.ARMED
        self._task: Optional[asyncio.Task] = None

    async def terminate(self) -> KillPhase:
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())
        return await asyncio.shield(self._task)

    async def _run(self) -> KillPhase:
        if self.process.returncode is not None:
            self.phase = KillPhase.EXITED
            return self.phase

        self.phase = KillPhase.GRACEFUL
        try:
            self.process.terminate()
        except ProcessLookupError:
            await self.process.wait()
            return self.phase

        try:
            await asyncio.wait_for(self.process.wait(), self.grace_period)
            return self.phase
        except asyncio.TimeoutError:
            logger.warning(f"Process {self.process.pid} ignored SIGTERM for {self.grace_period}s, killing it")

        self.phase = KillPhase.FORCED
        try:
            self.process.kill()
        except ProcessLookupError:
            pass
        await self.process.wait()
        return self.phase


@dataclass
class ProcessHandle:
    operation_id: str
    plan: TunnelPlan
    deadline: float
    state: RunnerState = RunnerState.IDLE
    terminal_state: Optional[RunnerState] = None
    sources: List[str] = field(default_factory=list)
    process: Optional[asyncio.subprocess.Process] = None
    output_pipe: Optional[asyncio.StreamReader] = None
    streamer: Optional[Streamer] = None
    kill_timer: Optional[KillTimer] = None
    temp_file_path: Optional[str] = None
    status_code: int = 200
    headers: Dict[str, str] = field(default_factory=dict)
    error: Optional[BaseException] = None
    bytes_written: int = 0
    consumed: bool = False
    watchdog_fired: bool = False
    close_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    startup_task: Optional[asyncio.Task] = None
    watchdog: Optional[asyncio.Task] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def kill_phase(self) -> Optional[KillPhase]:
        return self.kill_timer.phase if self.kill_timer else None


@dataclass(frozen=True)
class ExecutionOutcome:
    operation_id: str
    state: RunnerState
    bytes_written: int
    error: Optional[BaseException] = None
    kill_phase: Optional[KillPhase] = None


class OperationRegistry:
    """In-flight operations keyed by operation id."""

    def __init__(self):
        self._handles: Dict[str, ProcessHandle] = {}
        self._lock = threading.Lock()

    def add(self, handle: ProcessHandle) -> None:
        with self._lock:
            self._handles[handle.operation_id] = handle

    def remove(self, operation_id: str) -> Optional[ProcessHandle]:
        with self._lock:
            return self._handles.pop(operation_id, None)

    def get(self, operation_id: str) -> Optional[ProcessHandle]:
        with self._lock:
            return self._handles.get(operation_id)

    def handles(self) -> List[ProcessHandle]:
        with self._lock:
            return list(self._handles.values())

    def __contains__(self, operation_id: str) -> bool:
        with self._lock:
            return operation_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


def _has_line_break(value: str) -> bool:
    return "\r" in value or "\n" in value


def validate_plan(plan) -> None:
    """
    Reject plans that must not be executed.

    Raises:
        InvalidPlanError: If the plan is not a tunnel plan, has no usable inputs,
            carries unsafe headers or embeds metadata outside the allow-list.
    """
    if not isinstance(plan, TunnelPlan):
        raise InvalidPlanError(f"{plan.kind.value} plans are not executable")
    if not plan.inputs:
        raise InvalidPlanError("Plan has no inputs")

    for plan_input in plan.inputs:
        if not plan_input.url:
            raise InvalidPlanError("Plan input has an empty URL")
        scheme = urlparse(plan_input.url).scheme
        if scheme not in ("http", "https") and not (os.path.isabs(plan_input.url) and os.path.isfile(plan_input.url)):
            raise InvalidPlanError(f"Unsupported input location: {plan_input.url}")
        for name, value in plan_input.headers.items():
            if not name or _has_line_break(name) or _has_line_break(str(value)):
                raise InvalidPlanError(f"Invalid upstream header: {name!r}")

    unknown_tags = set(plan.metadata_tags) - METADATA_TAGS
    if unknown_tags:
        raise InvalidPlanError(f"Unsupported metadata tags: {', '.join(sorted(unknown_tags))}")
    if plan.is_processing and plan.output_format is None:
        raise InvalidPlanError(f"{plan.kind.value} plan has no output format")


class ProcessRunner:
    def __init__(
        self,
        temp_files: Optional[TempFileManager] = None,
        registry: Optional[OperationRegistry] = None,
        client_factory: Callable[[], httpx.AsyncClient] = create_httpx_client,
        ffmpeg_path: Optional[str] = None,
        grace_period: Optional[float] = None,
        default_timeout: Optional[float] = None,
        processing_priority: Optional[int] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.temp_files = temp_files
        self.registry = registry if registry is not None else OperationRegistry()
        self.client_factory = client_factory
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        self.grace_period = settings.kill_grace_period if grace_period is None else grace_period
        self.default_timeout = settings.stream_timeout if default_timeout is None else default_timeout
        self.processing_priority = (
            settings.processing_priority if processing_priority is None else processing_priority
        )
        self.chunk_size = chunk_size

    # lifecycle

    def create_handle(self, plan: TunnelPlan, timeout: Optional[float] = None) -> ProcessHandle:
        timeout = self.default_timeout if timeout is None else timeout
        handle = ProcessHandle(
            operation_id=uuid.uuid4().hex,
            plan=plan,
            deadline=asyncio.get_running_loop().time() + timeout,
        )
        self.registry.add(handle)
        return handle

    def _finish(self, handle: ProcessHandle, state: RunnerState, error: Optional[BaseException] = None) -> None:
        """Record the terminal state; the first terminal event wins."""
        if handle.is_terminal:
            return
        handle.state = state
        handle.terminal_state = state
        handle.error = error
        if state == RunnerState.COMPLETED:
            logger.info(
                f"Operation {handle.operation_id} ({handle.plan.kind.value}) completed, "
                f"{handle.bytes_written} bytes"
            )
        else:
            logger.warning(f"Operation {handle.operation_id} ({handle.plan.kind.value}) {state.value}: {error}")

    async def start(
        self,
        handle: ProcessHandle,
        cancel_signal: Optional[asyncio.Event] = None,
        range_header: Optional[str] = None,
    ) -> None:
        """
        Validate the plan, arm the deadline watchdog and launch the producer.

        On any failure the handle is closed before the exception propagates.

        Raises:
            InvalidPlanError: If the plan was rejected; nothing was spawned.
            UpstreamStatusError: If the origin answered a direct proxy request with an error status.
            ExecutionError: If ffmpeg could not be spawned or the operation was interrupted while starting.
        """
        if handle.state != RunnerState.IDLE:
            raise ExecutionError(f"Operation {handle.operation_id} was already started")
        handle.state = RunnerState.STARTING

        try:
            validate_plan(handle.plan)
        except InvalidPlanError as e:
            self._finish(handle, RunnerState.FAILED, e)
            await self.close(handle)
            raise

        handle.watchdog = asyncio.create_task(self._watch(handle, cancel_signal))
        handle.startup_task = asyncio.ensure_future(self._launch(handle, range_header))
        try:
            await handle.startup_task
        except asyncio.CancelledError:
            interrupted = handle.watchdog_fired
            if not interrupted:
                self._finish(handle, RunnerState.FAILED, ExecutionError("Cancelled while starting"))
            await self.close(handle)
            if interrupted:
                raise ExecutionError(f"Operation {handle.operation_id} {handle.terminal_state.value} while starting")
            raise
        except DownloadError as e:
            error = UpstreamStatusError(e.status_code, e.message)
            self._finish(handle, RunnerState.FAILED, error)
            await self.close(handle)
            raise error from e
        except Exception as e:
            self._finish(handle, RunnerState.FAILED, e)
            await self.close(handle)
            if isinstance(e, ExecutionError):
                raise
            raise ExecutionError(str(e)) from e

        if handle.is_terminal:
            await self.close(handle)
            raise ExecutionError(f"Operation {handle.operation_id} {handle.terminal_state.value} while starting")
        handle.state = RunnerState.STREAMING

    async def open(
        self,
        plan: TunnelPlan,
        cancel_signal: Optional[asyncio.Event] = None,
        range_header: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ProcessHandle:
        """Create and start a handle; the caller must consume it with ``stream`` or ``close`` it."""
        handle = self.create_handle(plan, timeout)
        await self.start(handle, cancel_signal, range_header)
        return handle

    async def _launch(self, handle: ProcessHandle, range_header: Optional[str]) -> None:
        if isinstance(handle.plan, DirectProxyPlan):
            await self._start_proxy(handle, range_header)
        else:
            await self._start_process(handle)

    async def _start_proxy(self, handle: ProcessHandle, range_header: Optional[str]) -> None:
        plan_input = handle.plan.inputs[0]
        handle.sources = [plan_input.url]
        headers = dict(plan_input.headers)
        if range_header:
            headers["range"] = range_header

        handle.streamer = Streamer(self.client_factory())
        await handle.streamer.create_streaming_response(plan_input.url, headers)
        response = handle.streamer.response
        handle.status_code = response.status_code
        handle.headers = {
            name: response.headers[name] for name in SUPPORTED_RESPONSE_HEADERS if name in response.headers
        }

    async def _start_process(self, handle: ProcessHandle) -> None:
        plan = handle.plan
        handle.sources = [plan_input.url for plan_input in plan.inputs]

        if plan.prefetch and self.temp_files is not None:
            plan_input = plan.inputs[0]
            try:
                handle.temp_file_path = await self.temp_files.acquire(plan_input.url, plan_input.headers)
                handle.sources = [handle.temp_file_path]
            except DownloadError as e:
                logger.warning(f"Pre-download of {plan_input.url} failed ({e.message}), streaming from origin")

        command = build_command(build_ffmpeg_args(plan, handle.sources), self.ffmpeg_path, self.processing_priority)
        logger.debug(f"Operation {handle.operation_id} spawning {command[0]} ({plan.kind.value})")
        try:
            handle.process = await self._spawn(command)
        except OSError as e:
            raise ExecutionError(f"Failed to spawn {command[0]}: {e}") from e
        handle.output_pipe = handle.process.stdout
        handle.kill_timer = KillTimer(handle.process, self.grace_period)

    async def _spawn(self, command: List[str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )

    async def _watch(self, handle: ProcessHandle, cancel_signal: Optional[asyncio.Event]) -> None:
        """Wait for the deadline or the cancel signal, whichever comes first, then interrupt."""
        remaining = max(0.0, handle.deadline - asyncio.get_running_loop().time())
        try:
            if cancel_signal is None:
                await asyncio.sleep(remaining)
                state, error = RunnerState.TIMED_OUT, ExecutionError("Deadline exceeded")
            else:
                try:
                    await asyncio.wait_for(cancel_signal.wait(), remaining)
                    state, error = RunnerState.FAILED, ExecutionError("Cancelled")
                except asyncio.TimeoutError:
                    state, error = RunnerState.TIMED_OUT, ExecutionError("Deadline exceeded")
        except asyncio.CancelledError:
            return

        if handle.is_terminal:
            return
        started = handle.state == RunnerState.STREAMING
        handle.watchdog_fired = True
        self._finish(handle, state, error)
        await self._interrupt(handle)

        # nobody is reading yet, so no stream() will reach its finally; a held lock means a close is underway
        if started and not handle.consumed and not handle.close_lock.locked():
            await self.close(handle)

    async def _interrupt(self, handle: ProcessHandle) -> None:
        """Stop the producer so that whoever is reading sees end of stream."""
        if handle.startup_task is not None and not handle.startup_task.done():
            handle.startup_task.cancel()
        if handle.kill_timer is not None:
            await handle.kill_timer.terminate()
        if handle.streamer is not None and handle.streamer.response is not None:
            await handle.streamer.response.aclose()

    async def stream(self, handle: ProcessHandle):
        """
        Yield the produced bytes in order. A handle can be streamed once; the handle is closed
        when the generator finishes, fails or is closed by the consumer.
        """
        if handle.consumed:
            raise ExecutionError(f"Operation {handle.operation_id} was already consumed")
        handle.consumed = True
        if handle.state != RunnerState.STREAMING:
            await self.close(handle)
            raise ExecutionError(f"Operation {handle.operation_id} is {handle.state.value}, not streaming")

        try:
            if handle.streamer is not None:
                async for chunk in handle.streamer.stream_content():
                    handle.bytes_written += len(chunk)
                    yield chunk
                self._finish(handle, RunnerState.COMPLETED)
            else:
                while True:
                    chunk = await handle.output_pipe.read(self.chunk_size)
                    if not chunk:
                        break
                    handle.bytes_written += len(chunk)
                    yield chunk
                returncode = await handle.process.wait()
                if returncode == 0:
                    self._finish(handle, RunnerState.COMPLETED)
                else:
                    self._finish(handle, RunnerState.FAILED, ExecutionError(f"ffmpeg exited with code {returncode}"))
        except GeneratorExit:
            self._finish(handle, RunnerState.FAILED, ExecutionError("Client disconnected"))
            raise
        except asyncio.CancelledError:
            self._finish(handle, RunnerState.FAILED, ExecutionError("Cancelled"))
            raise
        except Exception as e:
            if handle.watchdog_fired:
                # the watchdog closed the producer under us
                logger.debug(f"Operation {handle.operation_id} producer closed after interrupt: {e!r}")
            else:
                self._finish(handle, RunnerState.FAILED, e)
                raise
        finally:
            await self.close(handle)

    async def close(self, handle: ProcessHandle) -> None:
        """Release everything the operation owns. Safe to call from any path, any number of times."""
        async with handle.close_lock:
            if handle.state == RunnerState.CLOSED:
                return
            self._finish(handle, RunnerState.FAILED, ExecutionError("Closed before completion"))

            try:
                watchdog = handle.watchdog
                if watchdog is not None and watchdog is not asyncio.current_task():
                    if not handle.watchdog_fired:
                        watchdog.cancel()
                    try:
                        await watchdog
                    except asyncio.CancelledError:
                        pass

                if handle.startup_task is not None and not handle.startup_task.done():
                    handle.startup_task.cancel()

                if handle.kill_timer is not None:
                    await handle.kill_timer.terminate()

                if handle.streamer is not None:
                    try:
                        await handle.streamer.close()
                    except httpx.HTTPError as e:
                        logger.debug(f"Error closing upstream for {handle.operation_id}: {e}")

                if handle.temp_file_path is not None and self.temp_files is not None:
                    await self.temp_files.release(handle.temp_file_path)
            finally:
                self.registry.remove(handle.operation_id)
                handle.state = RunnerState.CLOSED
                logger.debug(f"Operation {handle.operation_id} closed ({handle.terminal_state.value})")

    def outcome(self, handle: ProcessHandle) -> ExecutionOutcome:
        return ExecutionOutcome(
            operation_id=handle.operation_id,
            state=handle.terminal_state or handle.state,
            bytes_written=handle.bytes_written,
            error=handle.error,
            kill_phase=handle.kill_phase,
        )

    async def execute(
        self,
        plan: TunnelPlan,
        sink: Callable[[bytes], Awaitable[None]],
        cancel_signal: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
        range_header: Optional[str] = None,
    ) -> ExecutionOutcome:
        """
        Run ``plan`` to a terminal outcome, writing every produced chunk to ``sink``.

        Failures are reported in the returned outcome. A sink that raises is treated as a
        client disconnect.
        """
        handle = self.create_handle(plan, timeout)
        try:
            await self.start(handle, cancel_signal, range_header)
        except ExecutionError:
            return self.outcome(handle)

        chunks = self.stream(handle)
        try:
            async for chunk in chunks:
                await sink(chunk)
        except Exception as e:
            self._finish(handle, RunnerState.FAILED, e)
        finally:
            await chunks.aclose()
            await self.close(handle)
        return self.outcome(handle)

    async def estimate_length(self, plan: TunnelPlan, sources: Optional[List[str]] = None) -> Optional[int]:
        """
        Advisory output size: source size times the plan's multiplier, or None if a source size is unknown.

        ``sources`` are the locations actually fed to ffmpeg (a downloaded copy replaces its URL).
        """
        sources = sources or [plan_input.url for plan_input in plan.inputs]
        total = 0
        async with self.client_factory() as client:
            for plan_input, source in zip(plan.inputs, sources):
                if is_remote(source):
                    length = await fetch_content_length(client, source, plan_input.headers)
                else:
                    length = os.path.getsize(source) if os.path.isfile(source) else None
                if length is None:
                    return None
                total += length
        return int(total * plan.estimated_size_multiplier)

    async def shutdown(self) -> None:
        """Cancel every in-flight operation."""
        handles = self.registry.handles()
        for handle in handles:
            self._finish(handle, RunnerState.FAILED, ExecutionError("Shutting down"))
        await asyncio.gather(*(self._interrupt(handle) for handle in handles), return_exceptions=True)
        await asyncio.gather(*(self.close(handle) for handle in handles), return_exceptions=True)
        if handles:
            logger.info(f"Cancelled {len(handles)} in-flight operation(s)")
