"""Data models for the supervisor system.

This module defines the core data types for process supervision:
- ServiceState: Lifecycle states owned by the restart controller
- Liveness: Outcome of a liveness probe
- HealthVerdict: Outcome of one health evaluation
- PIDKind: Which process a PID record describes
- PIDEntry: Immutable persisted PID record
- LaunchCommand / LaunchResult: Launcher inputs and outputs
- ResourceLimits / ResourceSample: Resource ceilings and observations
- ServiceRecord: Service configuration
- ServiceRuntime: Mutable runtime state
- StatusEvent: Immutable state transition records
- ServiceStatusReport / ControlResult: Control surface results
"""

from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path  # noqa: TC003 - Used in runtime type annotations
from typing import TYPE_CHECKING

import pendulum

from ._backoff import ExponentialBackoff
from ._progress import ExistenceOnlyMonitor

if TYPE_CHECKING:
    from ._protocol import ProgressMonitor, ProgressToken

UNKNOWN = "unknown"
"""State/verdict reported before anything is known about a service."""

DEFAULT_HISTORY_LIMIT = 20


class ServiceState(StrEnum):
    """Service lifecycle states.

    - STOPPED: Not running and not scheduled to run
    - STARTING: A launch is in progress
    - RUNNING: Launched and passing health checks
    - DEGRADED: Last verdict was unhealthy; a restart decision is pending
    - RESTARTING: Waiting out the backoff delay before the next launch
    - FAILED_PERMANENTLY: Failure budget exhausted; needs an explicit reset
    """

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    RESTARTING = "restarting"
    FAILED_PERMANENTLY = "failed_permanently"


INACTIVE_STATES = frozenset({ServiceState.STOPPED, ServiceState.FAILED_PERMANENTLY})


class Liveness(StrEnum):
    """Outcome of probing a recorded PID."""

    RUNNING = "running"
    DEAD = "dead"
    AMBIGUOUS = "ambiguous"


class HealthVerdict(StrEnum):
    """Outcome of one health evaluation."""

    HEALTHY = "healthy"
    STALLED = "stalled"
    CRASHED = "crashed"
    RESOURCE_EXCEEDED = "resource_exceeded"


class PIDKind(StrEnum):
    """Which process a PID record describes."""

    PRIMARY = "primary"
    SESSION = "session"


class SignalKind(StrEnum):
    """How hard to ask a process to terminate."""

    GRACEFUL = "graceful"
    FORCE = "force"


@dataclass(frozen=True, slots=True)
class PIDEntry:
    """A persisted process identifier plus its identity fingerprint.

    Attributes:
        pid: OS process identifier.
        fingerprint: Identity beyond the numeric PID (process create time).
            Empty when it could not be captured at launch.
        recorded_at: ISO 8601 timestamp of the write.
        handle: Session handle the process lives in, if any.
    """

    pid: int
    fingerprint: str
    recorded_at: str
    handle: str | None = None


@dataclass(frozen=True, slots=True)
class LaunchCommand:
    """What to execute for a service; opaque to everything but the launcher.

    Attributes:
        argv: Executable and arguments.
        cwd: Working directory for the process.
        env: Additional environment variables.
    """

    argv: tuple[str, ...]
    cwd: Path | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class LaunchResult:
    """What a launcher reports about a freshly started process."""

    session_handle: str
    pid: int
    fingerprint: str


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    """Observe-and-alert resource ceilings.

    Attributes:
        max_memory_mb: Resident memory ceiling in MiB, or None for no limit.
        max_cpu_percent: CPU ceiling (100 = one core), or None for no limit.
        breach_ticks: Consecutive breaching ticks before the verdict fires.
        include_children: Whether descendants count towards usage.
    """

    max_memory_mb: float | None = None
    max_cpu_percent: float | None = None
    breach_ticks: int = 3
    include_children: bool = True

    @property
    def enabled(self) -> bool:
        """Return True when at least one ceiling is configured."""
        return self.max_memory_mb is not None or self.max_cpu_percent is not None


@dataclass(frozen=True, slots=True)
class ResourceSample:
    """One observation of a process tree's resource usage."""

    memory_mb: float
    cpu_percent: float

    def exceeds(self, limits: ResourceLimits) -> bool:
        """Check the sample against configured ceilings."""
        if limits.max_memory_mb is not None and self.memory_mb > limits.max_memory_mb:
            return True
        return (
            limits.max_cpu_percent is not None
            and self.cpu_percent > limits.max_cpu_percent
        )


@dataclass(frozen=True, slots=True)
class ServiceRecord:
    """Configuration for a supervised service.

    Immutable once registered. Re-registering a name replaces the record
    but keeps the runtime state of the service.

    Attributes:
        name: Unique identifier for the service.
        command: What to launch.
        poll_interval: Seconds between health evaluations.
        progress_timeout: Seconds without progress before a stall, or None
            to disable stall detection.
        max_restarts: Consecutive failures tolerated before failing permanently.
        backoff: Delay policy between restart attempts.
        startup_grace: Seconds a fresh launch has to show up as running.
        shutdown_grace: Seconds to wait after a graceful signal before force kill.
        launch_timeout: Deadline for a launcher invocation.
        probe_timeout: Deadline for a progress sample.
        resources: Resource ceilings.
        progress_monitor: Progress source for stall detection.
        history_limit: Number of restart timestamps to keep.
    """

    name: str
    command: LaunchCommand
    poll_interval: float = 5.0
    progress_timeout: float | None = None
    max_restarts: int = 5
    backoff: ExponentialBackoff = field(default_factory=ExponentialBackoff)
    startup_grace: float = 10.0
    shutdown_grace: float = 5.0
    launch_timeout: float = 30.0
    probe_timeout: float = 2.0
    resources: ResourceLimits = field(default_factory=ResourceLimits)
    progress_monitor: "ProgressMonitor" = field(default_factory=ExistenceOnlyMonitor)
    history_limit: int = DEFAULT_HISTORY_LIMIT


@dataclass(slots=True)
class ServiceRuntime:
    """Mutable, process-local runtime state of a service.

    Written only by the service's restart controller.

    Attributes:
        state: Current lifecycle state.
        consecutive_failures: Failures since the last confirmed healthy tick.
        last_progress_token: Last progress token observed.
        last_progress_observed_at: Monotonic time the token last changed.
        restart_history: ISO 8601 timestamps of past restarts, oldest first.
        resource_breaches: Consecutive ticks over a resource ceiling.
        last_verdict: Most recent health verdict, None until the first poll.
        ambiguous: Whether the last probe could not confirm identity.
        started_at: When the current process was launched or adopted.
        restart_at: Monotonic deadline of the pending backoff, if any.
    """

    state: ServiceState = ServiceState.STOPPED
    consecutive_failures: int = 0
    last_progress_token: "ProgressToken | None" = None
    last_progress_observed_at: float | None = None
    restart_history: deque[str] = field(
        default_factory=lambda: deque(maxlen=DEFAULT_HISTORY_LIMIT)
    )
    resource_breaches: int = 0
    last_verdict: HealthVerdict | None = None
    ambiguous: bool = False
    started_at: pendulum.DateTime | None = None
    restart_at: float | None = None

    def reset_progress(self) -> None:
        """Forget progress and resource observations of a previous process."""
        self.last_progress_token = None
        self.last_progress_observed_at = None
        self.resource_breaches = 0
        self.ambiguous = False


@dataclass(frozen=True, slots=True)
class StatusEvent:
    """Immutable record of a state transition.

    Attributes:
        service_name: Name of the service that transitioned.
        old_state: State before the transition.
        new_state: State after the transition.
        verdict: Verdict that drove the transition, if any.
        timestamp: ISO 8601 formatted timestamp.
        pid: Process ID involved, if any.
        message: Optional human-readable message.
    """

    service_name: str
    old_state: ServiceState
    new_state: ServiceState
    verdict: HealthVerdict | None
    timestamp: str
    pid: int | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class ServiceStatusReport:
    """Point-in-time status of one service.

    Attributes:
        name: Service name.
        state: A ServiceState value, or "unknown" for unregistered services.
        pid: Recorded primary PID, if any.
        uptime: Seconds since the current process was launched or adopted.
        restart_count: Number of restarts in the retained history.
        consecutive_failures: Failures since the last healthy tick.
        last_verdict: Most recent verdict value, or "unknown".
        restart_history: ISO 8601 restart timestamps, oldest first.
        stale: True when the live probe timed out and cached data is shown.
        confidence: "normal", or "degraded" when identity is ambiguous.
    """

    name: str
    state: str
    pid: int | None = None
    uptime: float | None = None
    restart_count: int = 0
    consecutive_failures: int = 0
    last_verdict: str = UNKNOWN
    restart_history: tuple[str, ...] = ()
    stale: bool = False
    confidence: str = "normal"


@dataclass(frozen=True, slots=True)
class ControlResult:
    """Structured result of a control command."""

    ok: bool
    service_name: str
    state: str
    message: str = ""


def get_timestamp() -> str:
    """Get current timestamp in ISO 8601 format."""
    return pendulum.now("UTC").to_iso8601_string()
