"""Supervisor package for watching long-running services.

This package keeps long-running processes alive and honest: it records
each launched process in a crash-safe PID store, probes liveness against a
PID-reuse-proof fingerprint, detects stalls and resource overuse, restarts
with exponential backoff against a bounded failure budget, and adopts
still-running processes after the supervisor itself restarts.

Key Components:
    - ServiceRecord: Configuration for a supervised service
    - ServiceState: Lifecycle state enumeration
    - HealthVerdict / Liveness: Evaluation and probe outcomes
    - PIDStore: Atomic, file-backed PID records
    - LivenessProber: Fingerprint-checked liveness probes
    - HealthEvaluator: Liveness, resource and progress checks
    - RestartController: Per-service restart policy state machine
    - ServiceManager: Per-service poll loop and locking
    - Supervisor: Multi-service coordinator
    - SubprocessLauncher: Detached-session process launcher
    - FileLogStore: Timestamped log retrieval
    - ConsoleEventSink / LoggingEventSink: Transition event sinks
    - create_control_router: FastAPI endpoint factory

Example:
    >>> from pathlib import Path
    >>> from pidwarden.supervisor import (
    ...     LaunchCommand, PIDStore, ServiceRecord, SubprocessLauncher, Supervisor,
    ... )
    >>> supervisor = Supervisor(
    ...     [ServiceRecord(name="worker", command=LaunchCommand(("python", "worker.py")))],
    ...     store=PIDStore(Path("state")),
    ...     launcher=SubprocessLauncher(Path("logs")),
    ... )
    >>> await supervisor.run(autostart=["worker"])  # Blocks until shutdown
"""

from ._api import create_control_router
from ._backoff import ExponentialBackoff
from ._controller import RestartController
from ._health import HealthEvaluator, HealthReport
from ._launcher import SubprocessLauncher
from ._logs import FileLogStore
from ._models import (
    ControlResult,
    HealthVerdict,
    LaunchCommand,
    LaunchResult,
    Liveness,
    PIDEntry,
    PIDKind,
    ResourceLimits,
    ResourceSample,
    ServiceRecord,
    ServiceRuntime,
    ServiceState,
    ServiceStatusReport,
    SignalKind,
    StatusEvent,
)
from ._output import ConsoleEventSink, LoggingEventSink
from ._prober import LivenessProber, process_fingerprint
from ._progress import (
    ExistenceOnlyMonitor,
    FileCountMonitor,
    FileSizeMonitor,
    LineCountMonitor,
)
from ._protocol import EventSink, LogStore, ProcessLauncher, ProgressMonitor, ProgressToken
from ._resources import ResourceSampler
from ._service import ServiceManager
from ._store import PIDStore
from ._supervisor import Supervisor, validate_record

__all__ = [
    "ConsoleEventSink",
    "ControlResult",
    "EventSink",
    "ExistenceOnlyMonitor",
    "ExponentialBackoff",
    "FileCountMonitor",
    "FileLogStore",
    "FileSizeMonitor",
    "HealthEvaluator",
    "HealthReport",
    "HealthVerdict",
    "LaunchCommand",
    "LaunchResult",
    "LineCountMonitor",
    "Liveness",
    "LivenessProber",
    "LogStore",
    "LoggingEventSink",
    "PIDEntry",
    "PIDKind",
    "PIDStore",
    "ProcessLauncher",
    "ProgressMonitor",
    "ProgressToken",
    "ResourceLimits",
    "ResourceSample",
    "ResourceSampler",
    "RestartController",
    "ServiceManager",
    "ServiceRecord",
    "ServiceRuntime",
    "ServiceState",
    "ServiceStatusReport",
    "SignalKind",
    "StatusEvent",
    "SubprocessLauncher",
    "Supervisor",
    "create_control_router",
    "process_fingerprint",
    "validate_record",
]
