"""Per-project lock files used to discover dev servers across sessions.

A lock file is an advisory ownership claim, not a kernel-level lock: two
sessions can both find no owner and both start a server for the same project.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from devpreview.dev.logging import DevLogComponent, get_logger
from devpreview.dev.process_control import is_process_alive
from devpreview.errors import LockIOError
from devpreview.models import (
    DevServerConfig,
    DevServerInstance,
    DevServerStatus,
    LockRecord,
    ProjectType,
)
from devpreview.utils import ensure_dir

logger = get_logger(DevLogComponent.LOCK)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def log_retry_attempt(retry_state: RetryCallState) -> None:
    """Log lock write retries."""
    if retry_state.outcome and retry_state.outcome.failed:
        logger.debug(
            f"Lock write attempt {retry_state.attempt_number} failed: "
            f"{retry_state.outcome.exception()}. Retrying..."
        )


class LockFileCoordinator:
    """Reads and writes one JSON lock file per project id."""

    def __init__(
        self,
        lock_dir: Path,
        *,
        is_alive: Callable[[int], bool] = is_process_alive,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the coordinator.

        Args:
            lock_dir: Directory holding `<project_id>.json` files
            is_alive: Liveness probe for the pid recorded in a lock
            clock: Source of "now" for adopted instances
        """
        self.lock_dir: Path = lock_dir
        self._is_alive: Callable[[int], bool] = is_alive
        self._clock: Callable[[], datetime] = clock or (
            lambda: datetime.now(timezone.utc)
        )

    def lock_path(self, project_id: str) -> Path:
        """`<project_id>.json`, with a hash suffix when the id had to be sanitized."""
        safe = _UNSAFE_FILENAME_CHARS.sub("_", project_id)
        if safe != project_id:
            digest = hashlib.sha256(project_id.encode()).hexdigest()[:8]
            safe = f"{safe}-{digest}"
        return self.lock_dir / f"{safe}.json"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(0.05),
        retry=retry_if_exception_type(OSError),
        before_sleep=log_retry_attempt,
        reraise=True,
    )
    def _write(self, path: Path, record: LockRecord) -> None:
        ensure_dir(path.parent)
        path.write_text(record.model_dump_json(by_alias=True, indent=2))

    def acquire(self, project_id: str, instance: DevServerInstance) -> None:
        """Record `instance` as the owner of `project_id`. Failures are logged, not raised."""
        path = self.lock_path(project_id)
        try:
            if instance.pid is None:
                raise LockIOError(f"Instance {instance.id} has no pid to record")
            record = LockRecord(
                project_id=project_id,
                pid=instance.pid,
                port=instance.config.port,
                started_at=instance.started_at,
                preview_url=instance.preview_url,
            )
            self._write(path, record)
        except (OSError, LockIOError) as e:
            logger.error(f"Failed to create lock file for {project_id}: {e}")
            return
        logger.info(f"Created lock file for {project_id} at {path}")

    def _read(self, path: Path) -> LockRecord | None:
        try:
            return LockRecord.model_validate_json(path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable lock file {path}: {e}")
            return None

    def get_existing(self, project_id: str) -> DevServerInstance | None:
        """Return the live owner recorded for `project_id`, deleting a stale lock.

        Returns:
            A minimal running DevServerInstance, or None if there is no live owner
        """
        path = self.lock_path(project_id)
        record = self._read(path)
        if record is None:
            return None
        if record.project_id != project_id:
            logger.warning(
                f"Ignoring lock file {path}: it belongs to {record.project_id!r}, not {project_id!r}"
            )
            return None

        if not self._is_alive(record.pid):
            logger.info(f"Found stale lock for {project_id} (pid {record.pid}), cleaning up")
            self.release(project_id)
            return None

        logger.info(
            f"Found live lock for {project_id}: pid {record.pid} on port {record.port}"
        )
        now = self._clock()
        return DevServerInstance(
            id=f"dev-server-{project_id}-{int(now.timestamp() * 1000)}",
            project_id=project_id,
            config=DevServerConfig(
                project_type=ProjectType.UNKNOWN,
                dev_command=f"(pid {record.pid}, started by another session)",
                port=record.port,
                package_manager="unknown",
            ),
            status=DevServerStatus.RUNNING,
            preview_url=record.preview_url,
            started_at=record.started_at,
            last_activity=now,
            pid=record.pid,
        )

    def release(self, project_id: str) -> None:
        """Delete the lock file for `project_id`; a missing file is fine."""
        path = self.lock_path(project_id)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug(f"Lock file for {project_id} already removed")
            return
        except OSError as e:
            logger.error(f"Failed to remove lock file {path}: {e}")
            return
        logger.info(f"Released lock file for {project_id}")

    def list_project_ids(self) -> list[str]:
        """Project ids that currently have a lock file (live or stale)."""
        if not self.lock_dir.is_dir():
            return []
        ids: list[str] = []
        for path in sorted(self.lock_dir.glob("*.json")):
            record = self._read(path)
            if record is not None:
                ids.append(record.project_id)
        return ids
