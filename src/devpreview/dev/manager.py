"""Orchestration of local dev servers: detection, ports, supervision, locks, reaping.

The manager is constructed once by the host application and passed around;
all registry mutations happen on the event loop that owns it.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType

from devpreview.constants import DEFAULT_HOST
from devpreview.dev.detector import ProjectDetector, SimpleProjectDetector
from devpreview.dev.lock import LockFileCoordinator
from devpreview.dev.logging import (
    DevLogComponent,
    LogBuffer,
    get_logger,
    new_log_buffer,
)
from devpreview.dev.ports import (
    find_available_port,
    is_port_available,
    test_port_listening,
)
from devpreview.dev.process_control import terminate_pid
from devpreview.dev.reaper import IdleReaper
from devpreview.dev.supervisor import (
    ProcessSupervisor,
    ReadyPredicateFactory,
    marker_ready_predicate,
)
from devpreview.errors import CustomPortUnavailableError, DevServerError
from devpreview.models import (
    DevServerConfig,
    DevServerInstance,
    DevServerStatus,
    LogEntry,
    LogType,
    ManagerSettings,
    ProjectDetectionResult,
    ProjectType,
)

logger = get_logger(DevLogComponent.MANAGER)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_command(detection: ProjectDetectionResult, port: int) -> tuple[str, list[str]]:
    """Translate a detected dev command into an executable and argument vector.

    Static and Python projects are served by the interpreter's http.server on the
    resolved port; everything else runs the detected command.
    """
    if detection.type in (ProjectType.STATIC, ProjectType.PYTHON):
        return sys.executable, ["-m", "http.server", str(port), "--bind", DEFAULT_HOST]

    parts = detection.dev_command.split()
    if not parts:
        raise DevServerError(f"Detected an empty dev command ({detection.type.value} project)")

    if parts[0] == "npm":
        return parts[0], parts[1:]
    if parts[0] == "node":
        return "node", parts[1:]

    # May still break on quoted arguments.
    logger.warning(f"Using fallback command parsing for {detection.dev_command!r}")
    return parts[0], parts[1:]


class DevServerManager:
    """Starts, tracks and stops one dev server per project id."""

    def __init__(
        self,
        settings: ManagerSettings | None = None,
        *,
        detector: ProjectDetector | None = None,
        lock: LockFileCoordinator | None = None,
        clock: Callable[[], datetime] | None = None,
        ready_predicates: Mapping[ProjectType, ReadyPredicateFactory] | None = None,
    ):
        """Initialize the manager.

        Args:
            settings: Timings and limits (defaults to `ManagerSettings()`)
            detector: Proposes dev command, port and framework for a project root
            lock: Cross-session lock coordinator (defaults to one under settings.lock_dir)
            clock: Source of "now" (UTC-aware)
            ready_predicates: Readiness predicate factories per project type
        """
        self.settings: ManagerSettings = settings or ManagerSettings()
        self._clock: Callable[[], datetime] = clock or _utcnow
        self.detector: ProjectDetector = detector or SimpleProjectDetector()
        self.lock: LockFileCoordinator = lock or LockFileCoordinator(
            self.settings.lock_dir, clock=self._clock
        )
        self._ready_predicates: dict[ProjectType, ReadyPredicateFactory] = dict(
            ready_predicates or {}
        )
        self._servers: dict[str, DevServerInstance] = {}
        self._supervisors: dict[str, ProcessSupervisor] = {}
        self._logs: dict[str, LogBuffer] = {}
        self._project_locks: dict[str, asyncio.Lock] = {}
        self._project_lock_users: dict[str, int] = {}
        self.reaper: IdleReaper = IdleReaper(
            instances=lambda: self._servers.values(),
            stop=self.stop_dev_server,
            clock=self._clock,
            idle_threshold=self.settings.idle_threshold,
            interval=self.settings.reap_interval,
        )

    async def __aenter__(self) -> DevServerManager:
        self.reaper.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    # === Registry ===

    def _adopt_from_lock(self, project_id: str) -> DevServerInstance | None:
        adopted = self.lock.get_existing(project_id)
        if adopted is not None:
            self._servers[project_id] = adopted
        return adopted

    def _forget(self, project_id: str, instance: DevServerInstance | None) -> bool:
        """Deregister `instance` if it is still the registered one."""
        if instance is not None and self._servers.get(project_id) is instance:
            del self._servers[project_id]
            return True
        return False

    # === Logs ===

    def _append_log(self, project_id: str, log_type: LogType, message: str) -> None:
        buffer = self._logs.get(project_id)
        if buffer is None:
            buffer = self._logs[project_id] = new_log_buffer(self.settings.log_buffer_size)
        buffer.append(
            LogEntry(timestamp=self._clock(), type=log_type, message=message.strip())
        )

    def get_logs(self, project_id: str, since: datetime | None = None) -> list[LogEntry]:
        """Buffered log entries for a project, optionally only those at or after `since`."""
        entries = list(self._logs.get(project_id, ()))
        if since is None:
            return entries
        if since.tzinfo is None:
            # Naive values are taken as local time.
            since = since.astimezone(timezone.utc)
        return [entry for entry in entries if entry.timestamp >= since]

    def clear_logs(self, project_id: str) -> None:
        self._logs[project_id] = new_log_buffer(self.settings.log_buffer_size)

    # === Lifecycle ===

    @asynccontextmanager
    async def _project_lock(self, project_id: str) -> AsyncIterator[None]:
        """Serialize starts and stops of one project; the lock is dropped once unused."""
        lock = self._project_locks.get(project_id)
        if lock is None:
            lock = self._project_locks[project_id] = asyncio.Lock()
        self._project_lock_users[project_id] = self._project_lock_users.get(project_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._project_lock_users[project_id] - 1
            if users:
                self._project_lock_users[project_id] = users
            else:
                del self._project_lock_users[project_id]
                del self._project_locks[project_id]

    async def start_dev_server(
        self,
        project_id: str,
        project_root: Path | str,
        custom_port: int | None = None,
    ) -> DevServerInstance:
        """Start (or return the already running) dev server for a project.

        Args:
            project_id: Key the server is tracked under
            project_root: Directory the dev command runs in
            custom_port: Port to use instead of scanning from the detected one

        Returns:
            The running DevServerInstance

        Raises:
            PortExhaustedError: No free port near the detected one
            CustomPortUnavailableError: `custom_port` is already bound
            SpawnTimeoutError, ProcessSpawnError, DevServerError: The process failed to start
        """
        async with self._project_lock(project_id):
            return await self._start(project_id, Path(project_root), custom_port)

    async def _start(
        self, project_id: str, project_root: Path, custom_port: int | None
    ) -> DevServerInstance:
        current = self._servers.get(project_id)

        existing = self.lock.get_existing(project_id)
        if existing is not None:
            if current is not None and current.pid == existing.pid:
                return current
            logger.info(
                f"Found dev server for {project_id} from another session "
                f"(pid {existing.pid}, port {existing.config.port})"
            )
            self._servers[project_id] = existing
            return existing

        if current is not None and not current.status.is_terminal:
            logger.info(
                f"Dev server for {project_id} already running in this session "
                f"(port {current.config.port})"
            )
            return current

        logger.info(f"Starting dev server for {project_id} in {project_root}")
        detection = await self.detector.detect(project_root)
        port = self._resolve_port(project_id, detection.port, custom_port)
        command, args = build_command(detection, port)
        if port != detection.port and detection.type not in (
            ProjectType.STATIC,
            ProjectType.PYTHON,
        ):
            logger.info(f"{project_id} will receive port {port} via the PORT environment variable")

        config = DevServerConfig(
            project_type=detection.type,
            dev_command=" ".join([command, *args]),
            port=port,
            package_manager=detection.package_manager,
            framework=detection.framework,
        )
        now = self._clock()
        instance = DevServerInstance(
            id=f"dev-server-{project_id}-{int(now.timestamp() * 1000)}",
            project_id=project_id,
            config=config,
            status=DevServerStatus.STARTING,
            preview_url=f"http://{DEFAULT_HOST}:{port}",
            started_at=now,
            last_activity=now,
        )
        self._servers[project_id] = instance
        self._logs[project_id] = new_log_buffer(self.settings.log_buffer_size)

        factory = self._ready_predicates.get(detection.type, marker_ready_predicate)
        supervisor = ProcessSupervisor(
            instance,
            settings=self.settings,
            log=self._append_log,
            on_exit=self._on_process_exit,
            ready_predicate=factory(config),
        )
        self._supervisors[project_id] = supervisor

        try:
            await supervisor.start(project_root, command, args)
            if supervisor.has_exited:
                raise DevServerError(
                    instance.error or f"Dev server for {project_id} exited during startup"
                )
        except DevServerError as e:
            if self._supervisors.get(project_id) is supervisor:
                del self._supervisors[project_id]
            instance.status = DevServerStatus.ERROR
            instance.error = instance.error or str(e)
            # An exit during startup has already deregistered it; keep it inspectable.
            self._servers.setdefault(project_id, instance)
            logger.error(f"Failed to start dev server for {project_id}: {instance.error}")
            raise

        instance.status = DevServerStatus.RUNNING
        instance.last_activity = self._clock()
        self.lock.acquire(project_id, instance)
        logger.info(f"Dev server for {project_id} started at {instance.preview_url}")
        return instance

    def _resolve_port(
        self, project_id: str, detected_port: int, custom_port: int | None
    ) -> int:
        host = self.settings.host
        if custom_port is not None:
            if not is_port_available(custom_port, host):
                raise CustomPortUnavailableError(custom_port)
            logger.info(f"Using custom port {custom_port} for {project_id}")
            return custom_port

        port = find_available_port(detected_port, self.settings.max_port_tries, host)
        if port != detected_port:
            logger.info(
                f"Port {detected_port} unavailable for {project_id}, using {port}"
            )
        return port

    def _on_process_exit(self, supervisor: ProcessSupervisor) -> None:
        project_id = supervisor.project_id
        if self._supervisors.get(project_id) is supervisor:
            del self._supervisors[project_id]
        registered = self._servers.get(project_id)
        if registered is None or registered is supervisor.instance:
            self._forget(project_id, supervisor.instance)
            self.lock.release(project_id)

    async def stop_dev_server(self, project_id: str) -> None:
        """Stop a project's dev server. Unknown project ids are ignored.

        A start in flight for the same project finishes first and is then stopped.
        """
        async with self._project_lock(project_id):
            await self._stop(project_id)

    async def _stop(self, project_id: str) -> None:
        instance = self._servers.get(project_id)
        supervisor = self._supervisors.get(project_id)
        if instance is None and supervisor is None:
            return

        logger.info(f"Stopping dev server for {project_id}")
        was_terminal = instance is not None and instance.status.is_terminal
        if instance is not None and not was_terminal:
            instance.status = DevServerStatus.STOPPING

        grace = self.settings.stop_grace
        if supervisor is not None:
            await supervisor.stop(grace)
        elif instance is not None and instance.pid is not None and not was_terminal:
            await terminate_pid(instance.pid, grace=grace)

        if instance is not None and not was_terminal:
            instance.status = DevServerStatus.STOPPED
        if self._supervisors.get(project_id) is supervisor:
            self._supervisors.pop(project_id, None)
        self._forget(project_id, instance)
        self.lock.release(project_id)
        logger.info(f"Dev server for {project_id} stopped and lock released")

    async def shutdown(self) -> None:
        """Stop every tracked server concurrently and cancel the idle reaper."""
        logger.info("Shutting down dev server manager")
        await self.reaper.stop()
        project_ids = set(self._servers) | set(self._supervisors) | set(self._project_locks)
        await asyncio.gather(*(self.stop_dev_server(pid) for pid in project_ids))
        logger.info("All dev servers stopped")

    # === Queries ===

    def get_server_instance(self, project_id: str) -> DevServerInstance | None:
        """The instance for a project, from this session or adopted from a lock file."""
        instance = self._servers.get(project_id)
        if instance is not None:
            return instance
        return self._adopt_from_lock(project_id)

    def get_server_status(self, project_id: str) -> DevServerStatus | None:
        instance = self.get_server_instance(project_id)
        return instance.status if instance is not None else None

    def update_server_activity(self, project_id: str) -> None:
        """Mark a project as in use so the idle reaper leaves it alone."""
        instance = self._servers.get(project_id)
        if instance is not None:
            instance.last_activity = self._clock()
            logger.debug(f"Updated activity for {project_id}")

    def get_supervisor(self, project_id: str) -> ProcessSupervisor | None:
        return self._supervisors.get(project_id)

    async def is_server_listening(self, project_id: str) -> bool:
        """Whether something accepts connections on the project's preview port."""
        instance = self.get_server_instance(project_id)
        if instance is None:
            return False
        return await test_port_listening(instance.config.port, self.settings.host)
