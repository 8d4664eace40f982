"""Configuration models.

This module provides the Pydantic models for the sections of a pidwarden
configuration file and the conversion of `[[services]]` tables into
supervisor service records.
"""

import shlex
from enum import StrEnum
from pathlib import Path
from typing import ClassVar, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pidwarden.supervisor import (
    ExistenceOnlyMonitor,
    ExponentialBackoff,
    FileCountMonitor,
    FileSizeMonitor,
    LaunchCommand,
    LineCountMonitor,
    ProgressMonitor,
    ResourceLimits,
    ServiceRecord,
)

DEFAULT_STATE_DIR = ".pidwarden/pids"
DEFAULT_LOG_DIR = ".pidwarden/logs"


class LogLevel(StrEnum):
    """Log level threshold values.

    Values are ordered from most verbose (debug) to least verbose (error).
    """

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class LogFormat(StrEnum):
    """Log output format values."""

    JSON = "json"
    TEXT = "text"


class LoggingConfig(BaseModel):
    """Logging configuration section.

    Attributes:
        level: Log level threshold.
        format: Log output format.
        file: Path to log file (empty logs to stderr).
        max_bytes: Rotate the log file at this size. Needs backup_count.
        backup_count: Number of rotated files to keep. Needs max_bytes.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True, extra="ignore")

    level: LogLevel = LogLevel.INFO
    format: LogFormat = LogFormat.JSON
    file: str = ""
    max_bytes: int | None = Field(default=None, gt=0)
    backup_count: int | None = Field(default=None, ge=0)


class StoreConfig(BaseModel):
    """PID store section."""

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True, extra="ignore")

    directory: str = DEFAULT_STATE_DIR


class LogsConfig(BaseModel):
    """Captured service output section."""

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True, extra="ignore")

    directory: str = DEFAULT_LOG_DIR


class ControlConfig(BaseModel):
    """HTTP control API section."""

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True, extra="ignore")

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = Field(default=8765, ge=1, le=65535)


class SupervisorSettings(BaseModel):
    """Supervisor-wide settings section."""

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True, extra="ignore")

    status_probe_timeout: float = Field(default=0.5, gt=0)
    stop_on_exit: bool = False


class ProgressConfig(BaseModel):
    """Progress source of one service.

    Attributes:
        kind: Which monitor to use.
        path: File (line-count, file-size) or directory (file-count).
        pattern: Glob for file-count.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True, extra="ignore")

    kind: Literal["existence", "line-count", "file-count", "file-size"] = "existence"
    path: str | None = None
    pattern: str = "*"

    @model_validator(mode="after")
    def _require_path(self) -> Self:
        if self.kind != "existence" and not self.path:
            msg = f"progress kind '{self.kind}' requires a path"
            raise ValueError(msg)
        return self

    def to_monitor(self, base_dir: Path) -> ProgressMonitor:
        """Build the progress monitor, resolving paths against `base_dir`."""
        if self.kind == "existence" or self.path is None:
            return ExistenceOnlyMonitor()
        path = base_dir / Path(self.path).expanduser()
        if self.kind == "line-count":
            return LineCountMonitor(path)
        if self.kind == "file-count":
            return FileCountMonitor(path, self.pattern)
        return FileSizeMonitor(path)


class ServiceSpec(BaseModel):
    """One `[[services]]` table."""

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(min_length=1)
    command: list[str]
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    poll_interval: float = Field(default=5.0, gt=0)
    progress_timeout: float | None = Field(default=None, gt=0)
    max_restarts: int = Field(default=5, ge=0)
    backoff_base: float = Field(default=1.0, gt=0)
    backoff_max: float = Field(default=60.0, gt=0)
    startup_grace: float = Field(default=10.0, gt=0)
    shutdown_grace: float = Field(default=5.0, gt=0)
    launch_timeout: float = Field(default=30.0, gt=0)
    probe_timeout: float = Field(default=2.0, gt=0)
    max_memory_mb: float | None = Field(default=None, gt=0)
    max_cpu_percent: float | None = Field(default=None, gt=0)
    breach_ticks: int = Field(default=3, ge=1)
    autostart: bool = True
    progress: ProgressConfig = Field(default_factory=ProgressConfig)

    @field_validator("command", mode="before")
    @classmethod
    def _split_command(cls, value: object) -> object:
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @field_validator("command")
    @classmethod
    def _require_argv(cls, value: list[str]) -> list[str]:
        if not value or not all(value):
            msg = "command must be a non-empty list of non-empty strings"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def _check_backoff(self) -> Self:
        if self.backoff_max < self.backoff_base:
            msg = "backoff_max must not be below backoff_base"
            raise ValueError(msg)
        return self

    def to_record(self, base_dir: Path) -> ServiceRecord:
        """Convert to a supervisor service record.

        Args:
            base_dir: Directory relative paths are resolved against.
        """
        cwd = base_dir / Path(self.cwd).expanduser() if self.cwd is not None else base_dir
        return ServiceRecord(
            name=self.name,
            command=LaunchCommand(argv=tuple(self.command), cwd=cwd, env=dict(self.env)),
            poll_interval=self.poll_interval,
            progress_timeout=self.progress_timeout,
            max_restarts=self.max_restarts,
            backoff=ExponentialBackoff(base=self.backoff_base, max_delay=self.backoff_max),
            startup_grace=self.startup_grace,
            shutdown_grace=self.shutdown_grace,
            launch_timeout=self.launch_timeout,
            probe_timeout=self.probe_timeout,
            resources=ResourceLimits(
                max_memory_mb=self.max_memory_mb,
                max_cpu_percent=self.max_cpu_percent,
                breach_ticks=self.breach_ticks,
            ),
            progress_monitor=self.progress.to_monitor(base_dir),
        )


class Config(BaseModel):
    """A complete pidwarden configuration file.

    Relative directories are resolved against `base_dir`, the directory
    holding the configuration file.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True, extra="ignore")

    base_dir: Path = Path()
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logs: LogsConfig = Field(default_factory=LogsConfig)
    control: ControlConfig = Field(default_factory=ControlConfig)
    supervisor: SupervisorSettings = Field(default_factory=SupervisorSettings)
    services: list[ServiceSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_names(self) -> Self:
        seen: set[str] = set()
        for service in self.services:
            if service.name in seen:
                msg = f"duplicate service name '{service.name}'"
                raise ValueError(msg)
            seen.add(service.name)
        return self

    @property
    def state_dir(self) -> Path:
        """Return the resolved PID store directory."""
        return self.base_dir / Path(self.store.directory).expanduser()

    @property
    def log_dir(self) -> Path:
        """Return the resolved service output directory."""
        return self.base_dir / Path(self.logs.directory).expanduser()

    @property
    def log_file(self) -> Path | None:
        """Return the resolved supervisor log file, or None for stderr."""
        if not self.logging.file:
            return None
        return self.base_dir / Path(self.logging.file).expanduser()

    def records(self) -> list[ServiceRecord]:
        """Return service records in file order."""
        return [service.to_record(self.base_dir) for service in self.services]

    def autostart(self) -> list[str]:
        """Return names of services to start when the supervisor runs."""
        return [service.name for service in self.services if service.autostart]
