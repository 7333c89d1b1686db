"""Spawn-to-exit supervision of the OS process behind one dev server."""

from __future__ import annotations

import asyncio
import codecs
import errno
import os
import signal
import subprocess
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any, TypeAlias

from devpreview.constants import DEV_SERVER_ENV
from devpreview.dev.logging import DevLogComponent, get_logger
from devpreview.dev.process_control import force_signal, signal_process_tree
from devpreview.errors import ProcessSpawnError, SpawnTimeoutError
from devpreview.models import (
    DevServerConfig,
    DevServerInstance,
    DevServerStatus,
    LogType,
    ManagerSettings,
    ProjectType,
)
from devpreview.utils import resolve_executable

logger = get_logger(DevLogComponent.SUPERVISOR)

ReadyPredicate: TypeAlias = Callable[[str], bool]
ReadyPredicateFactory: TypeAlias = Callable[[DevServerConfig], ReadyPredicate]
LogSink: TypeAlias = Callable[[str, LogType, str], None]

_CHUNK_SIZE = 64 * 1024
# Grandchildren may hold the pipes open after the leader has exited.
_DRAIN_TIMEOUT = 1.0

READY_MARKERS: tuple[str, ...] = (
    "ready",
    "compiled",
    "server started",
    "development server",
    "local:",
)


def marker_ready_predicate(config: DevServerConfig) -> ReadyPredicate:
    """Case-insensitive match on the bound port or a common "server is up" phrase."""
    markers = (f":{config.port}", *READY_MARKERS)

    def is_ready(text: str) -> bool:
        lowered = text.lower()
        return any(marker in lowered for marker in markers)

    return is_ready


# === Error classification ===


class ErrorCategory(str, Enum):
    """Known failure modes recognised in dev server output."""

    ADDRESS_IN_USE = "address_in_use"
    COMMAND_NOT_FOUND = "command_not_found"
    PERMISSION_DENIED = "permission_denied"
    MISSING_SCRIPT = "missing_script"


def classify_output(text: str) -> ErrorCategory | None:
    """Map stderr (or process error) text to a known failure mode, if any."""
    lowered = text.lower()
    if (
        "eaddrinuse" in lowered
        or "address already in use" in lowered
        or ("port" in lowered and "already" in lowered)
    ):
        return ErrorCategory.ADDRESS_IN_USE
    if "missing script" in lowered:
        return ErrorCategory.MISSING_SCRIPT
    if "command not found" in lowered or "not found" in lowered:
        return ErrorCategory.COMMAND_NOT_FOUND
    if "permission denied" in lowered:
        return ErrorCategory.PERMISSION_DENIED
    return None


def describe_category(category: ErrorCategory, *, port: int, command: str) -> str:
    """Human-readable system log line for a classified failure."""
    if category is ErrorCategory.ADDRESS_IN_USE:
        return (
            f"❌ Port {port} is already in use! "
            "Try starting the preview again; a different port will be picked."
        )
    if category is ErrorCategory.COMMAND_NOT_FOUND:
        return f'❌ Command "{command}" not found. Make sure dependencies are installed.'
    if category is ErrorCategory.PERMISSION_DENIED:
        return "❌ Permission denied. Check file permissions."
    return "❌ Script not found in package.json. Check the scripts section."


def spawn_error_hint(error: OSError, command: str) -> str | None:
    """Hint for an OS-level spawn failure (ENOENT/EACCES/EMFILE class)."""
    if error.errno == errno.ENOENT:
        return f'💡 Command "{command}" not found. Ensure it is installed and in PATH.'
    if error.errno == errno.EACCES:
        return "💡 Permission denied. Check file permissions or try running with appropriate permissions."
    if error.errno in (errno.EMFILE, errno.ENFILE):
        return "💡 Too many open files. Try closing other applications or restarting."
    return None


def _exit_hint(code: int) -> str | None:
    if code == 1:
        return "💡 Exit code 1 usually indicates a runtime error. Check the logs above for details."
    if code == 127:
        return "💡 Exit code 127 means command not found. Make sure the command is available in PATH."
    return None


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


class ProcessSupervisor:
    """Owns the lifecycle of exactly one dev server process.

    Output is pushed into the manager's log buffers through `log`, and `on_exit`
    is invoked once the process has exited (expected or not).
    """

    def __init__(
        self,
        instance: DevServerInstance,
        *,
        settings: ManagerSettings,
        log: LogSink,
        on_exit: Callable[[ProcessSupervisor], None],
        ready_predicate: ReadyPredicate | None = None,
    ):
        self.instance: DevServerInstance = instance
        self.settings: ManagerSettings = settings
        self.ready: bool = False
        self.exit_code: int | None = None
        self.exit_signal: str | None = None
        self._log_sink: LogSink = log
        self._on_exit: Callable[[ProcessSupervisor], None] = on_exit
        self._is_ready: ReadyPredicate = ready_predicate or marker_ready_predicate(
            instance.config
        )
        self._command: str = ""
        self._process: asyncio.subprocess.Process | None = None
        self._watcher: asyncio.Task[None] | None = None
        self._warning_handle: asyncio.TimerHandle | None = None
        self._exited: asyncio.Event = asyncio.Event()

    @property
    def project_id(self) -> str:
        return self.instance.project_id

    @property
    def has_exited(self) -> bool:
        return self._exited.is_set()

    def _log(self, log_type: LogType, message: str) -> None:
        self._log_sink(self.project_id, log_type, message)

    def _spawn_kwargs(self) -> dict[str, Any]:
        # New session/process group so the whole tree can be signalled at once.
        if os.name == "nt":
            return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}  # type: ignore[attr-defined]
        return {"start_new_session": True}

    async def start(self, cwd: Path, command: str, args: list[str]) -> None:
        """Spawn the process and return once the OS has confirmed it exists.

        Raises:
            SpawnTimeoutError: If spawning did not complete within the spawn window
            ProcessSpawnError: If the OS refused to create the process
        """
        config = self.instance.config
        self._command = command
        display = " ".join([command, *args])

        logger.info(
            f"Starting dev server for {self.project_id}: {display} (cwd={cwd}, port={config.port})"
        )
        self._log(
            LogType.SYSTEM,
            f"Starting {config.framework_name or 'development'} server on port {config.port}...",
        )
        self._log(LogType.SYSTEM, f"Command: {display}")
        self._log(LogType.SYSTEM, f"Working directory: {cwd}")
        self._log(LogType.SYSTEM, f"Arguments: [{', '.join(repr(a) for a in args)}]")

        env = {**os.environ, **DEV_SERVER_ENV, "PORT": str(config.port)}
        spawn = asyncio.ensure_future(
            asyncio.create_subprocess_exec(
                resolve_executable(command),
                *args,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **self._spawn_kwargs(),
            )
        )
        try:
            # The spawn outlives a timeout so a late child can still be killed.
            self._process = await asyncio.wait_for(
                asyncio.shield(spawn), timeout=self.settings.spawn_timeout
            )
        except asyncio.TimeoutError as e:
            spawn.add_done_callback(self._kill_late_spawn)
            error = SpawnTimeoutError(display, self.settings.spawn_timeout)
            self._fail(str(error))
            raise error from e
        except OSError as e:
            hint = spawn_error_hint(e, command)
            message = e.strerror or str(e)
            logger.error(f"Dev server process error for {self.project_id}: {e}")
            self._log(LogType.SYSTEM, f"❌ Process error: {message}")
            if hint:
                self._log(LogType.SYSTEM, hint)
            category = classify_output(message)
            if category is not None:
                self._log(
                    LogType.SYSTEM,
                    describe_category(category, port=config.port, command=command),
                )
            self._fail(message)
            raise ProcessSpawnError(message, errno=e.errno, hint=hint) from e

        pid = self._process.pid
        self.instance.pid = pid
        self._log(LogType.SYSTEM, f"✅ Process spawned successfully (PID: {pid})")
        logger.info(f"Dev server process spawned for {self.project_id} (pid {pid})")

        loop = asyncio.get_running_loop()
        self._warning_handle = loop.call_later(
            self.settings.ready_warning_delay, self._warn_slow_start
        )
        self._watcher = asyncio.create_task(self._watch(self._process))

        # Static servers print nothing worth scanning, so give them a moment instead.
        if config.project_type is ProjectType.STATIC:
            await asyncio.sleep(self.settings.static_settle_delay)
            if not self.has_exited:
                self._log(LogType.SYSTEM, "✅ Static server initialization complete!")

    def _kill_late_spawn(self, spawn: asyncio.Future[asyncio.subprocess.Process]) -> None:
        if spawn.cancelled() or spawn.exception() is not None:
            return
        process = spawn.result()
        logger.warning(
            f"Dev server for {self.project_id} spawned after the timeout (pid {process.pid}), killing it"
        )
        if not signal_process_tree(process.pid, force_signal()) and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    def _fail(self, message: str) -> None:
        self.instance.status = DevServerStatus.ERROR
        self.instance.error = message

    def _warn_slow_start(self) -> None:
        self._warning_handle = None
        if self.ready or self.has_exited:
            return
        self._log(LogType.SYSTEM, "Server is taking longer than expected to start...")
        logger.warning(
            f"Dev server for {self.project_id} is slow to start (port {self.instance.config.port})"
        )

    def _cancel_warning(self) -> None:
        if self._warning_handle is not None:
            self._warning_handle.cancel()
            self._warning_handle = None

    # === Output handling ===

    async def _pump(self, stream: asyncio.StreamReader, log_type: LogType) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(_CHUNK_SIZE)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    self._handle_output(log_type, tail)
                return
            text = decoder.decode(data)
            if text:
                self._handle_output(log_type, text)

    def _handle_output(self, log_type: LogType, text: str) -> None:
        self._log(log_type, text)
        if log_type is LogType.STDOUT:
            self._check_ready(text)
        else:
            self._check_errors(text)

    def _check_ready(self, text: str) -> None:
        if self.ready or not self._is_ready(text):
            return
        self.ready = True
        self._cancel_warning()
        self._log(LogType.SYSTEM, "✅ Server appears to be ready!")
        logger.info(f"Dev server ready for {self.project_id} on port {self.instance.config.port}")

    def _check_errors(self, text: str) -> None:
        logger.warning(f"Dev server stderr for {self.project_id}: {text.strip()}")
        category = classify_output(text)
        if category is None:
            return
        self._log(
            LogType.SYSTEM,
            describe_category(
                category, port=self.instance.config.port, command=self._command
            ),
        )
        logger.error(f"Dev server for {self.project_id} reported {category.value}")

    # === Exit handling ===

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None and process.stderr is not None, (
            "stdout and stderr must not be None"
        )
        readers = [
            asyncio.create_task(self._pump(process.stdout, LogType.STDOUT)),
            asyncio.create_task(self._pump(process.stderr, LogType.STDERR)),
        ]
        try:
            returncode = await process.wait()
            _, pending = await asyncio.wait(readers, timeout=_DRAIN_TIMEOUT)
        except asyncio.CancelledError:
            for task in readers:
                task.cancel()
            raise
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._handle_exit(returncode)

    def _handle_exit(self, returncode: int) -> None:
        self._cancel_warning()
        instance = self.instance

        if returncode < 0:
            self.exit_signal = _signal_name(-returncode)
        else:
            self.exit_code = returncode
        logger.info(
            f"Dev server process for {self.project_id} exited "
            f"(code={self.exit_code}, signal={self.exit_signal}, ready={self.ready})"
        )

        if returncode == 0:
            self._log(LogType.SYSTEM, f"✅ Process exited cleanly (code: {returncode})")
        elif self.exit_signal is not None:
            self._log(LogType.SYSTEM, f"🔄 Process terminated by signal: {self.exit_signal}")
        else:
            self._log(LogType.SYSTEM, f"❌ Process exited with error code: {returncode}")
            hint = _exit_hint(returncode)
            if hint:
                self._log(LogType.SYSTEM, hint)

        if instance.status is DevServerStatus.STOPPING or returncode == 0:
            instance.status = DevServerStatus.STOPPED
        else:
            instance.status = DevServerStatus.ERROR
            if not instance.error:
                instance.error = (
                    f"Process terminated by signal {self.exit_signal}"
                    if self.exit_signal is not None
                    else f"Process exited with code {returncode}"
                )

        self._exited.set()
        self._on_exit(self)

    # === Stopping ===

    def _send(self, sig: signal.Signals) -> None:
        process = self._process
        if process is None:
            return
        if not signal_process_tree(process.pid, sig) and process.returncode is None:
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass

    async def stop(self, grace: float) -> None:
        """Terminate gracefully, forcing termination once `grace` seconds have elapsed."""
        if self._process is None or self.has_exited:
            return

        self._send(signal.SIGTERM)
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=grace)
            return
        except asyncio.TimeoutError:
            logger.warning(
                f"Dev server for {self.project_id} did not exit within {grace}s, forcing termination"
            )

        self._send(force_signal())
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=max(0.5, grace / 5))
        except asyncio.TimeoutError:
            logger.error(f"Dev server for {self.project_id} is still running after forced termination")

    async def wait_closed(self) -> None:
        """Wait until the process has exited and exit handling has run."""
        await self._exited.wait()
