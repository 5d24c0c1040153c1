"""Supervisor for the engine proxy subprocess.

Spawns the engine with its config document on stdin, decodes the JSON log
records it writes to stdout, and passes its stderr straight through. The
"Started HTTP server." record marks readiness: the listening address is
published to MiddlewareParams and the pending ``start()`` resolves with the
port.

An engine that exits without being asked to is respawned from the unmodified
config, except for exit code 78 (invalid configuration), which is reported
once and leaves the supervisor in the failed state.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Callable, Coroutine, Sequence
from datetime import datetime, timezone
from typing import Any, BinaryIO
from urllib.parse import urlsplit

from sidecar.config import render_document
from sidecar.errors import (
    AlreadyRunningError,
    EngineError,
    FatalConfigurationError,
    NotRunningError,
    ReadinessParseError,
    RestartLimitError,
    StartupError,
    UnexpectedCrash,
)
from sidecar.gate import StartupGate
from sidecar.levels import LevelFilter, python_level, startup_filter
from sidecar.logstream import MAX_BUFFER, READ_CHUNK, iter_events
from sidecar.models import (
    EngineConfig,
    EngineLogLevel,
    LogRecord,
    MiddlewareParams,
    OutputError,
    SupervisorState,
    SupervisorStatus,
)

logger = logging.getLogger(__name__)
proxy_logger = logging.getLogger("sidecar.engine.proxy")

READY_MESSAGE = "Started HTTP server."
INVALID_CONFIG_EXIT_CODE = 78
DEFAULT_FILTER_GRACE = 1.0
DEFAULT_STOP_TIMEOUT = 5.0
# How long to keep reading buffered output after the process has exited
DRAIN_TIMEOUT = 1.0

RecordCallback = Callable[[LogRecord], Coroutine[Any, Any, None]]
ErrorCallback = Callable[[EngineError], None]


async def log_record(record: LogRecord) -> None:
    """Default record sink: re-emit engine records on the proxy logger."""
    fields = dict(record.fields)
    message = fields.pop("msg", "")
    level = fields.pop("level", None)
    if fields:
        proxy_logger.log(python_level(level), "%s %s", message, json.dumps(fields, sort_keys=True))
    else:
        proxy_logger.log(python_level(level), "%s", message)


def parse_port(address: Any) -> int | None:
    """Extract the port from a ``host:port`` address, or None."""
    if not isinstance(address, str) or not address:
        return None
    try:
        port = urlsplit(f"http://{address}").port
    except ValueError:
        return None
    return port or None


class _Child:
    """One engine process and the state that dies with it."""

    def __init__(self, process: asyncio.subprocess.Process, level_filter: LevelFilter | None) -> None:
        self.process = process
        self.level_filter = level_filter
        self.ready = False
        self.exited: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        self.readers: list[asyncio.Task] = []
        self.filter_timer: asyncio.TimerHandle | None = None

    def lift_filter(self) -> None:
        self.filter_timer = None
        self.level_filter = None


class ChildSupervisor:
    """Runs one engine process at a time and keeps it alive."""

    def __init__(
        self,
        command: Sequence[str],
        config: EngineConfig,
        params: MiddlewareParams,
        *,
        startup_timeout: float = 1.0,
        filter_grace: float = DEFAULT_FILTER_GRACE,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        restart_delay: float = 0.0,
        max_restarts: int | None = None,
        on_record: RecordCallback | None = None,
        on_error: ErrorCallback | None = None,
        stderr_sink: BinaryIO | None = None,
    ) -> None:
        self.command = list(command)
        self.config = config
        self.params = params
        self.startup_timeout = startup_timeout
        self.filter_grace = filter_grace
        self.stop_timeout = stop_timeout
        self.restart_delay = restart_delay
        self.max_restarts = max_restarts
        self.on_record = on_record or log_record
        self.on_error = on_error
        self.stderr_sink = stderr_sink
        self.restarts: int = 0
        # Crashes since the engine last became ready
        self._crash_streak = 0
        self.started_at: datetime | None = None
        self._state = SupervisorState.NOT_STARTED
        self._error: EngineError | None = None
        self._child: _Child | None = None
        self._gate: StartupGate | None = None
        # Serializes spawning with stop() so a respawn can't outlive a stop
        self._lock = asyncio.Lock()
        # Strong references to background tasks
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state.is_active

    @property
    def pid(self) -> int | None:
        if self._child is None or self._child.process.returncode is not None:
            return None
        return self._child.process.pid

    @property
    def requested_level(self) -> str | None:
        return self.config.logging.level if self.config.logging else None

    def status(self) -> SupervisorStatus:
        return SupervisorStatus(
            state=self._state,
            pid=self.pid,
            uri=self.params.uri,
            restarts=self.restarts,
            started_at=self.started_at,
            error=str(self._error) if self._error else None,
        )

    # -------------------------------------------------------------------
    # Start / stop
    # -------------------------------------------------------------------

    async def start(self) -> int:
        """Spawn the engine and wait until it reports its listening port."""
        if self._state.is_active or self._state is SupervisorState.STOPPING:
            raise AlreadyRunningError()

        self._state = SupervisorState.STARTING
        self._error = None
        self.restarts = 0
        self._crash_streak = 0
        gate = StartupGate(self.startup_timeout, on_timeout=self._abort_startup)
        gate.arm()
        self._gate = gate

        try:
            async with self._lock:
                await self._spawn()
        except OSError as e:
            gate.cancel()
            self._gate = None
            self._state = SupervisorState.STOPPED
            raise StartupError(f"Failed to start engine {self.command[0]}: {e}") from e

        try:
            port = await gate.wait()
        except BaseException:
            await self._shutdown(force=True)
            raise
        finally:
            if self._gate is gate:
                self._gate = None

        logger.info("Engine ready on port %d", port)
        return port

    async def stop(self) -> None:
        """Terminate the engine and wait for it to exit."""
        if not self._state.is_active:
            raise NotRunningError()
        logger.info("Stopping engine")
        await self._shutdown(force=False)
        logger.info("Engine stopped")

    async def _shutdown(self, force: bool) -> None:
        if self._state is not SupervisorState.FAILED:
            self._state = SupervisorState.STOPPING

        if self._gate is not None:
            self._gate.fail(StartupError("Engine was stopped before it became ready"))

        # Waits out an in-flight respawn, which then sees STOPPING
        async with self._lock:
            child = self._child

        if child is not None:
            await self._terminate(child, force)

        self.params.uri = ""
        if self._state is SupervisorState.STOPPING:
            self._state = SupervisorState.STOPPED

    async def _terminate(self, child: _Child, force: bool) -> None:
        proc = child.process
        if proc.returncode is None:
            try:
                if force:
                    proc.kill()
                else:
                    proc.terminate()
            except ProcessLookupError:
                pass

        try:
            await asyncio.wait_for(asyncio.shield(child.exited), timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("Engine (pid %d) did not exit after SIGTERM, killing", proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await child.exited

    def _abort_startup(self) -> None:
        """Startup timed out: kill the engine outright."""
        if self._state is not SupervisorState.FAILED:
            self._state = SupervisorState.STOPPING
        child = self._child
        if child is not None and child.process.returncode is None:
            try:
                child.process.kill()
            except ProcessLookupError:
                pass

    # -------------------------------------------------------------------
    # Spawning
    # -------------------------------------------------------------------

    async def _spawn(self) -> None:
        """Launch a new engine process. Caller holds ``self._lock``."""
        level_filter = startup_filter(self.requested_level)
        if level_filter is not None:
            # Readiness is only logged at info, so start there and filter locally
            document = render_document(self.config, level=EngineLogLevel.INFO.value)
        else:
            document = render_document(self.config)

        process = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=MAX_BUFFER,
        )
        child = _Child(process, level_filter)
        self._child = child
        self.started_at = datetime.now(timezone.utc)
        logger.info("Engine process started (pid %d)", process.pid)

        child.readers = [
            self._create_task(self._read_loop(child)),
            self._create_task(self._pump_stderr(child)),
        ]
        self._create_task(self._watch(child))

        await self._write(child, document)

    def _create_task(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _write(self, child: _Child, document: bytes) -> None:
        """Deliver a config document to the engine's stdin."""
        stdin = child.process.stdin
        if stdin is None or stdin.is_closing():
            return
        try:
            stdin.write(document)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            # The exit watcher deals with the dead process
            logger.debug("Engine stdin closed before config was delivered: %s", e)

    # -------------------------------------------------------------------
    # Output handling
    # -------------------------------------------------------------------

    async def _read_loop(self, child: _Child) -> None:
        """Decode engine stdout into records and dispatch them."""
        assert child.process.stdout is not None

        try:
            async for event in iter_events(child.process.stdout):
                if isinstance(event, OutputError):
                    # Non-JSON output, pass it on untouched
                    raw = event.raw if event.raw.endswith("\n") else event.raw + "\n"
                    self._write_stderr(raw.encode("utf-8"))
                    continue
                await self._handle_record(child, event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Engine log reader failed")

    async def _pump_stderr(self, child: _Child) -> None:
        """Copy engine stderr to our own stderr."""
        assert child.process.stderr is not None
        try:
            while True:
                chunk = await child.process.stderr.read(READ_CHUNK)
                if not chunk:
                    break
                self._write_stderr(chunk)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Engine stderr passthrough failed")

    def _write_stderr(self, data: bytes) -> None:
        sink = self.stderr_sink or sys.stderr.buffer
        sink.write(data)
        sink.flush()

    async def _handle_record(self, child: _Child, record: LogRecord) -> None:
        if (
            record.msg == READY_MESSAGE
            and not child.ready
            and child is self._child
            and self._state is SupervisorState.STARTING
        ):
            await self._on_ready(child, record)

        if child.level_filter is not None and not child.level_filter.allows(record.level):
            return
        try:
            await self.on_record(record)
        except Exception:
            logger.exception("Engine record callback failed")

    async def _on_ready(self, child: _Child, record: LogRecord) -> None:
        child.ready = True
        address = record.address
        port = parse_port(address)
        if port is None:
            error = ReadinessParseError(address)
            logger.error("%s", error)
            if self._gate is not None:
                self._gate.fail(error)
            return

        self.params.uri = f"http://{address}"
        self._state = SupervisorState.RUNNING
        self._crash_streak = 0
        logger.info("Engine listening at %s", self.params.uri)
        if self._gate is not None:
            self._gate.resolve(port)

        if child.level_filter is not None:
            # Push the real level, then give the engine time to apply it
            # before letting info records through again
            await self._write(child, render_document(self.config))
            loop = asyncio.get_running_loop()
            child.filter_timer = loop.call_later(self.filter_grace, child.lift_filter)

    # -------------------------------------------------------------------
    # Exit handling
    # -------------------------------------------------------------------

    async def _watch(self, child: _Child) -> None:
        """Wait for the engine to exit, then stop or respawn."""
        returncode = await child.process.wait()

        # Let the readers finish what the process wrote before exiting
        _, pending = await asyncio.wait(child.readers, timeout=DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()
        if child.filter_timer is not None:
            child.filter_timer.cancel()
            child.filter_timer = None

        # Nothing may route to a dead engine
        if child is self._child:
            self.params.uri = ""
        child.exited.set_result(returncode)

        try:
            await self._handle_exit(child, returncode)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Engine exit handling failed")

    async def _handle_exit(self, child: _Child, returncode: int) -> None:
        if child is not self._child or self._state in (
            SupervisorState.STOPPING,
            SupervisorState.STOPPED,
            SupervisorState.FAILED,
        ):
            logger.info("Engine process exited (pid %d, code %s)", child.process.pid, returncode)
            return

        if returncode == INVALID_CONFIG_EXIT_CODE:
            self._fail(FatalConfigurationError(returncode))
            return

        crash = UnexpectedCrash(returncode)
        logger.error("%s", crash)
        self._state = SupervisorState.CRASHED
        self._error = crash

        if self.max_restarts is not None and self._crash_streak >= self.max_restarts:
            self._fail(RestartLimitError(self._crash_streak))
            return

        if self.restart_delay:
            await asyncio.sleep(self.restart_delay)

        async with self._lock:
            if self._state is not SupervisorState.CRASHED:
                return  # stop() got here first
            self.restarts += 1
            self._crash_streak += 1
            self._state = SupervisorState.STARTING
            logger.info("Respawning engine (restart %d)", self.restarts)
            try:
                await self._spawn()
            except OSError as e:
                self._fail(StartupError(f"Failed to respawn engine: {e}"))

    def _fail(self, error: EngineError) -> None:
        """Enter the terminal failed state and report ``error`` once."""
        self._state = SupervisorState.FAILED
        self._error = error
        self.params.uri = ""
        logger.error("%s", error)
        if self._gate is not None:
            self._gate.fail(error)
        if self.on_error is not None:
            try:
                self.on_error(error)
            except Exception:
                logger.exception("Engine error callback failed")
