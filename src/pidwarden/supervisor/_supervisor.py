"""Main supervisor coordinator for managing multiple services.

This module provides the Supervisor class that owns the set of watched
services, runs one poll loop per service using anyio for structured
concurrency, and exposes the control surface (start, stop, restart,
status, logs, reset).
"""

import re
import signal
import time
from collections.abc import Callable, Iterable, Sequence
from typing import TYPE_CHECKING, final

import anyio
import anyio.abc

from pidwarden.exceptions import RegistrationError, ServiceNotFoundError
from pidwarden.utils import create_null_logger

from ._controller import RestartController
from ._health import HealthEvaluator, HealthReport
from ._models import (
    UNKNOWN,
    ControlResult,
    ServiceRecord,
    ServiceStatusReport,
)
from ._prober import LivenessProber
from ._protocol import ProgressMonitor
from ._service import ServiceManager

if TYPE_CHECKING:
    import pendulum
    from structlog.typing import FilteringBoundLogger

    from ._protocol import EventSink, LogStore, ProcessLauncher
    from ._resources import ResourceSampler
    from ._store import PIDStore

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def validate_record(record: ServiceRecord) -> None:  # noqa: C901, PLR0912
    """Check a service record before it is registered.

    Raises:
        RegistrationError: If any field is unusable.
    """

    def reject(field: str, problem: str) -> RegistrationError:
        msg = f"Invalid service '{record.name}': {field} {problem}"
        return RegistrationError(msg, service_name=record.name, field=field)

    if not _NAME_RE.match(record.name):
        raise reject("name", "must match [A-Za-z0-9][A-Za-z0-9_.-]*")
    if not record.command.argv or not all(
        isinstance(arg, str) and arg for arg in record.command.argv
    ):
        raise reject("command", "must be a non-empty sequence of non-empty strings")
    if any("\x00" in arg for arg in record.command.argv):
        raise reject("command", "must not contain NUL characters")
    if record.command.cwd is not None and "\x00" in str(record.command.cwd):
        raise reject("command.cwd", "must not contain NUL characters")
    for key, value in record.command.env.items():
        if not key or "=" in key or "\x00" in key or "\x00" in value:
            raise reject("command.env", f"has an unusable variable {key!r}")

    positive = {
        "poll_interval": record.poll_interval,
        "startup_grace": record.startup_grace,
        "shutdown_grace": record.shutdown_grace,
        "launch_timeout": record.launch_timeout,
        "probe_timeout": record.probe_timeout,
        "backoff.base": record.backoff.base,
    }
    for field, value in positive.items():
        if value <= 0:
            raise reject(field, "must be positive")

    if record.progress_timeout is not None and record.progress_timeout <= 0:
        raise reject("progress_timeout", "must be positive or unset")
    if record.max_restarts < 0:
        raise reject("max_restarts", "must not be negative")
    if record.backoff.max_delay < record.backoff.base:
        raise reject("backoff.max_delay", "must not be below backoff.base")
    if record.backoff.multiplier < 1:
        raise reject("backoff.multiplier", "must be at least 1")
    if not 0 <= record.backoff.jitter <= 1:
        raise reject("backoff.jitter", "must be between 0 and 1")
    if record.resources.breach_ticks < 1:
        raise reject("resources.breach_ticks", "must be at least 1")
    if record.history_limit < 1:
        raise reject("history_limit", "must be at least 1")
    if not isinstance(record.progress_monitor, ProgressMonitor):
        raise reject("progress_monitor", "must provide a sample(service_name) method")


@final
class Supervisor:
    """Coordinates the supervision of multiple services.

    Each registered service gets a RestartController (its state machine)
    wrapped in a ServiceManager (its lock and poll loop). While `run()` is
    active, every service is polled on its own interval in its own task;
    control commands may be issued concurrently from other tasks.
    """

    __slots__ = (
        "_clock",
        "_evaluator",
        "_launcher",
        "_log_store",
        "_logger",
        "_poll_step",
        "_prober",
        "_services",
        "_sinks",
        "_stop_on_exit",
        "_stopping",
        "_store",
        "_task_group",
        "status_probe_timeout",
    )

    def __init__(  # noqa: PLR0913
        self,
        records: Iterable[ServiceRecord] = (),
        *,
        store: "PIDStore",
        launcher: "ProcessLauncher",
        log_store: "LogStore | None" = None,
        sinks: "Sequence[EventSink]" = (),
        prober: LivenessProber | None = None,
        sampler: "ResourceSampler | None" = None,
        clock: Callable[[], float] = time.monotonic,
        status_probe_timeout: float = 0.5,
        stop_on_exit: bool = False,
        poll_step: float = 0.1,
        logger: "FilteringBoundLogger | None" = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            records: Services to register up front.
            store: PID store shared by all services.
            launcher: Starts and signals service processes.
            log_store: Source for `logs_since`; no logs if None.
            sinks: Receivers of status events.
            prober: Liveness prober; psutil-backed if None.
            sampler: Resource sampler; psutil-backed if None.
            clock: Monotonic clock for backoff and stall timing.
            status_probe_timeout: Bound on the live probe done by `status`.
            stop_on_exit: Stop every service when `run()` drains.
            poll_step: Probe spacing while waiting for processes to
                start or exit.
            logger: Logger for supervisor diagnostics.

        Raises:
            RegistrationError: If a record is invalid.
        """
        self._logger = logger if logger is not None else create_null_logger()
        self._store = store
        self._launcher = launcher
        self._log_store = log_store
        self._sinks = tuple(sinks)
        self._prober = prober if prober is not None else LivenessProber(logger=self._logger)
        self._clock = clock
        self._evaluator = HealthEvaluator(
            store,
            prober=self._prober,
            sampler=sampler,
            clock=clock,
            logger=self._logger,
        )
        self._poll_step = poll_step
        self._stop_on_exit = stop_on_exit
        self._services: dict[str, ServiceManager] = {}
        self._stopping: anyio.Event | None = None
        self._task_group: anyio.abc.TaskGroup | None = None
        self.status_probe_timeout = status_probe_timeout

        for record in records:
            self.register(record)

    @property
    def services(self) -> dict[str, ServiceManager]:
        """Return the dictionary of managed services."""
        return self._services

    def get_service(self, name: str) -> ServiceManager:
        """Get a service by name.

        Raises:
            ServiceNotFoundError: If no service exists with that name.
        """
        service = self._services.get(name)
        if service is None:
            msg = f"Service '{name}' not found"
            raise ServiceNotFoundError(msg, service_name=name)
        return service

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, record: ServiceRecord) -> ServiceManager:
        """Register a service, or replace the configuration of a known one.

        Re-registration keeps the service's runtime state.

        Raises:
            RegistrationError: If the record is invalid.
        """
        validate_record(record)

        existing = self._services.get(record.name)
        if existing is not None:
            existing.replace_record(record)
            self._logger.info("service_reconfigured", service=record.name)
            return existing

        controller = RestartController(
            record,
            store=self._store,
            launcher=self._launcher,
            prober=self._prober,
            sinks=self._sinks,
            clock=self._clock,
            poll_step=self._poll_step,
            logger=self._logger,
        )
        manager = ServiceManager(
            controller,
            evaluator=self._evaluator,
            store=self._store,
            logger=self._logger,
        )
        self._services[record.name] = manager
        self._logger.info("service_registered", service=record.name)

        if self._task_group is not None and self._stopping is not None:
            self._task_group.start_soon(manager.run, self._stopping)
        return manager

    def unregister(self, name: str) -> None:
        """Forget an inactive service.

        Raises:
            ServiceNotFoundError: If no service exists with that name.
            RegistrationError: If the service is still active.
        """
        service = self.get_service(name)
        if service.is_active():
            msg = f"Service '{name}' must be stopped before it is unregistered"
            raise RegistrationError(msg, service_name=name)
        del self._services[name]
        service.retire()
        self._logger.info("service_unregistered", service=name)

    # -------------------------------------------------------------------------
    # Control surface
    # -------------------------------------------------------------------------

    async def start(self, name: str) -> ControlResult:
        """Start a service.

        Raises:
            ServiceNotFoundError: If no service exists with that name.
        """
        return await self.get_service(name).start()

    async def stop(self, name: str, *, force: bool = False) -> ControlResult:
        """Stop a service. Stopping a stopped service succeeds as a no-op.

        Raises:
            ServiceNotFoundError: If no service exists with that name.
        """
        return await self.get_service(name).stop(force=force)

    async def restart(self, name: str) -> ControlResult:
        """Stop a service if needed, then start it with a fresh budget.

        A permanently failed service stays failed; reset it first.

        Raises:
            ServiceNotFoundError: If no service exists with that name.
        """
        service = self.get_service(name)
        _ = await service.stop()
        return await service.start()

    async def reset_failure(self, name: str) -> ControlResult:
        """Clear a permanent failure so the service can be started again.

        Raises:
            ServiceNotFoundError: If no service exists with that name.
        """
        return await self.get_service(name).reset_failure()

    async def poll(self, name: str) -> HealthReport | None:
        """Run one poll tick for a service right now.

        Raises:
            ServiceNotFoundError: If no service exists with that name.
        """
        return await self.get_service(name).poll()

    async def status(self, name: str) -> ServiceStatusReport:
        """Return the status of a service. Never raises.

        Unknown services report the state "unknown".
        """
        service = self._services.get(name)
        if service is None:
            return ServiceStatusReport(name=name, state=UNKNOWN)
        try:
            return await service.status(self.status_probe_timeout)
        except Exception as e:  # noqa: BLE001
            self._logger.warning("status_failed", service=name, error=str(e))
            return ServiceStatusReport(
                name=name,
                state=service.state.value,
                pid=service.pid,
                stale=True,
            )

    async def status_all(self) -> list[ServiceStatusReport]:
        """Return the status of every registered service."""
        return [await self.status(name) for name in list(self._services)]

    def list_active(self) -> list[str]:
        """Return names of services not stopped or failed, in registration order."""
        return [name for name, service in self._services.items() if service.is_active()]

    def logs_since(self, name: str, since: "pendulum.DateTime") -> list[str]:
        """Return a service's output lines written at or after `since`.

        Raises:
            ServiceNotFoundError: If no service exists with that name.
        """
        _ = self.get_service(name)
        if self._log_store is None:
            return []
        return self._log_store.lines_since(name, since)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def recover(self) -> None:
        """Rebuild runtime state from the PID store.

        Live recorded processes are adopted; dead ones are handled like
        crashes. Records of services that are not registered are left
        alone and reported.
        """
        self._store.reload()
        for service in list(self._services.values()):
            await service.recover()

        orphans = self._store.list_services() - self._services.keys()
        for name in sorted(orphans):
            self._logger.warning("orphaned_pid_record", service=name)

    async def run(
        self,
        *,
        autostart: Sequence[str] = (),
        handle_signals: bool = True,
    ) -> None:
        """Run the supervisor until shutdown.

        Recovers state from the PID store, starts the named services that
        are not already running, then polls every service until shutdown()
        is called or SIGINT/SIGTERM arrives.

        Args:
            autostart: Services to start once recovery is done.
            handle_signals: Install SIGINT/SIGTERM handlers.
        """
        self._stopping = anyio.Event()
        await self.recover()

        async def handle_signals_task() -> None:
            with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
                async for signum in signals:
                    self._logger.info("signal_received", signal=signal.Signals(signum).name)
                    await self.shutdown()
                    break

        async with anyio.create_task_group() as tg:
            self._task_group = tg

            if handle_signals:
                tg.start_soon(handle_signals_task)

            for service in list(self._services.values()):
                tg.start_soon(service.run, self._stopping)

            for name in autostart:
                service = self._services.get(name)
                if service is None:
                    self._logger.warning("autostart_unknown_service", service=name)
                    continue
                tg.start_soon(self._autostart, service)

            await self._stopping.wait()

            # Poll loops leave after their current (shielded) tick
            for service in self._services.values():
                service.wake()
            tg.cancel_scope.cancel()

        self._task_group = None

        if self._stop_on_exit:
            for service in list(self._services.values()):
                _ = await service.stop()

        self._logger.info("supervisor_stopped")

    async def _autostart(self, service: ServiceManager) -> None:
        try:
            result = await service.start()
        except Exception:  # noqa: BLE001
            # One service failing to start must not end run()
            self._logger.exception("autostart_failed", service=service.name)
            return
        if not result.ok:
            self._logger.warning("autostart_not_started", service=service.name, reason=result.message)

    async def shutdown(self) -> None:
        """Trigger a graceful drain of run()."""
        if self._stopping is not None:
            self._stopping.set()
