"""Centralized Pydantic models, enums, and type aliases for devpreview."""

from __future__ import annotations

import os
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import ClassVar

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from devpreview.constants import (
    DEFAULT_HOST,
    DEFAULT_MAX_PORT_TRIES,
    ENV_PREFIX,
    IDLE_THRESHOLD,
    LOCK_DIR_NAME,
    LOCK_SUBDIR_NAME,
    LOG_BUFFER_SIZE,
    READY_WARNING_DELAY,
    REAP_INTERVAL,
    SPAWN_TIMEOUT,
    STATIC_SETTLE_DELAY,
    STOP_GRACE_PERIOD,
)


# === Enums ===


class ProjectType(str, Enum):
    """Kind of project a dev server is started for."""

    NODE = "node"
    NEXTJS = "nextjs"
    REACT = "react"
    VUE = "vue"
    PYTHON = "python"
    STATIC = "static"
    UNKNOWN = "unknown"


class DevServerStatus(str, Enum):
    """Lifecycle state of a dev server instance."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (DevServerStatus.STOPPED, DevServerStatus.ERROR)


class LogType(str, Enum):
    """Origin of a buffered log line."""

    STDOUT = "stdout"
    STDERR = "stderr"
    SYSTEM = "system"


# === Detection ===


class Framework(BaseModel):
    """Framework reported by a project detector."""

    name: str
    version: str | None = None


class ProjectDetectionResult(BaseModel):
    """What a project detector proposes for starting a project."""

    type: ProjectType
    dev_command: str
    port: int
    package_manager: str = "npm"
    framework: Framework | None = None
    has_lock_file: bool = False
    scripts: dict[str, str] = Field(default_factory=dict)


# === Dev server state ===


class DevServerConfig(BaseModel):
    """How a dev server instance was launched. Immutable once created."""

    project_type: ProjectType
    dev_command: str
    port: int
    package_manager: str
    framework: Framework | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    @property
    def framework_name(self) -> str | None:
        return self.framework.name if self.framework else None


class DevServerInstance(BaseModel):
    """One active dev server, tracked per project id."""

    id: str
    project_id: str
    config: DevServerConfig
    status: DevServerStatus = DevServerStatus.STARTING
    preview_url: str
    started_at: datetime
    last_activity: datetime
    pid: int | None = None
    error: str | None = None


class LockRecord(BaseModel):
    """On-disk ownership claim for a project's dev server slot."""

    project_id: str = Field(alias="projectId")
    pid: int
    port: int
    started_at: datetime = Field(alias="startedAt")
    preview_url: str = Field(alias="previewUrl")

    model_config: ClassVar[ConfigDict] = ConfigDict(populate_by_name=True)


class LogEntry(BaseModel):
    """A single line captured from (or about) a dev server process."""

    timestamp: datetime
    type: LogType
    message: str


# === Settings ===


def _default_lock_dir() -> Path:
    return Path.home() / LOCK_DIR_NAME / LOCK_SUBDIR_NAME


class ManagerSettings(BaseModel):
    """Tunables for the dev server manager.

    This is the single source of truth for timings and limits. Defaults come
    from `devpreview.constants`; `from_env` applies `DEVPREVIEW_*` overrides.
    """

    lock_dir: Path = Field(default_factory=_default_lock_dir)
    host: str = DEFAULT_HOST
    max_port_tries: int = Field(default=DEFAULT_MAX_PORT_TRIES, ge=1)
    spawn_timeout: float = Field(default=SPAWN_TIMEOUT, gt=0)
    stop_grace: float = Field(default=STOP_GRACE_PERIOD, gt=0)
    ready_warning_delay: float = Field(default=READY_WARNING_DELAY, gt=0)
    static_settle_delay: float = Field(default=STATIC_SETTLE_DELAY, ge=0)
    idle_threshold: float = Field(default=IDLE_THRESHOLD, gt=0)
    reap_interval: float = Field(default=REAP_INTERVAL, gt=0)
    log_buffer_size: int = Field(default=LOG_BUFFER_SIZE, ge=1)

    @classmethod
    def from_env(cls, dotenv_path: Path | None = None) -> ManagerSettings:
        """Build settings from `DEVPREVIEW_*` variables (after loading a .env file).

        Args:
            dotenv_path: Optional .env file; defaults to `.env` in the working directory

        Returns:
            ManagerSettings instance
        """
        dotenv_file = dotenv_path if dotenv_path is not None else Path.cwd() / ".env"
        if dotenv_file.exists():
            load_dotenv(dotenv_file)

        overrides: dict[str, str] = {}
        for name in cls.model_fields:
            value = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
            if value is not None:
                overrides[name] = value
        return cls.model_validate(overrides)
