"""Per-service runner: poll loop, locking and status snapshots.

Each ServiceManager serializes everything that can change its service's
state (poll ticks and control commands) behind one lock. Ticks are
shielded from cancellation so that shutdown never interrupts a launch or a
stop half way; every suspension point inside a tick is deadline-bounded.
"""

from typing import TYPE_CHECKING, final

import anyio
import anyio.to_thread
import pendulum

from pidwarden.utils import create_null_logger

from ._health import HealthReport
from ._models import (
    INACTIVE_STATES,
    UNKNOWN,
    ControlResult,
    Liveness,
    PIDKind,
    ServiceRecord,
    ServiceState,
    ServiceStatusReport,
)

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from ._controller import RestartController
    from ._health import HealthEvaluator
    from ._store import PIDStore


@final
class ServiceManager:
    """Runs one service's poll loop and serializes its transitions.

    Attributes:
        controller: The restart controller owning the service's state.
    """

    __slots__ = (
        "_evaluator",
        "_lock",
        "_logger",
        "_retired",
        "_store",
        "_wakeup",
        "controller",
    )

    def __init__(
        self,
        controller: "RestartController",
        *,
        evaluator: "HealthEvaluator",
        store: "PIDStore",
        logger: "FilteringBoundLogger | None" = None,
    ) -> None:
        """Initialize the service manager.

        Args:
            controller: The service's restart controller.
            evaluator: Shared health evaluator.
            store: Shared PID store.
            logger: Logger for poll loop errors.
        """
        self.controller = controller
        self._evaluator = evaluator
        self._store = store
        base_logger = logger if logger is not None else create_null_logger()
        self._logger = base_logger.bind(service=controller.name)
        self._lock = anyio.Lock()
        self._wakeup = anyio.Event()
        self._retired = False

    @property
    def name(self) -> str:
        """Return the unique name of this service."""
        return self.controller.name

    @property
    def record(self) -> ServiceRecord:
        """Return the service configuration."""
        return self.controller.record

    @property
    def state(self) -> ServiceState:
        """Return the current state of this service."""
        return self.controller.state

    @property
    def pid(self) -> int | None:
        """Return the recorded primary PID, if any."""
        entry = self._store.read(self.name, PIDKind.PRIMARY)
        return entry.pid if entry is not None else None

    def is_active(self) -> bool:
        """Check whether the service is neither stopped nor failed."""
        return self.state not in INACTIVE_STATES

    def wake(self) -> None:
        """Interrupt the poll loop's sleep so it re-reads state."""
        wakeup = self._wakeup
        self._wakeup = anyio.Event()
        wakeup.set()

    @property
    def retired(self) -> bool:
        """Check whether the service was unregistered."""
        return self._retired

    def retire(self) -> None:
        """End the poll loop for good; the service is no longer supervised."""
        self._retired = True
        self.wake()

    def replace_record(self, record: ServiceRecord) -> None:
        """Swap the service configuration, keeping runtime state."""
        self.controller.replace_record(record)
        self.wake()

    # -------------------------------------------------------------------------
    # Serialized operations
    # -------------------------------------------------------------------------

    async def poll(self) -> HealthReport | None:
        """Run one poll tick: evaluate health and apply the verdict.

        In RESTARTING, a tick launches the service once the backoff delay
        has elapsed instead of evaluating health.

        Returns:
            The health report, or None if no evaluation took place.
        """
        async with self._lock:
            with anyio.CancelScope(shield=True):
                return await self._tick()

    async def _tick(self) -> HealthReport | None:
        controller = self.controller
        try:
            if controller.state == ServiceState.RESTARTING:
                await controller.advance()
                return None
            if controller.state != ServiceState.RUNNING:
                return None

            report = await self._evaluator.evaluate(controller.record, controller.runtime)
            await controller.apply(report)
        except Exception:  # noqa: BLE001
            # A poll must never take the supervisor down
            self._logger.exception("poll_failed")
            return None
        return report

    async def start(self) -> ControlResult:
        """Start the service."""
        async with self._lock:
            with anyio.CancelScope(shield=True):
                result = await self.controller.request_start()
        self.wake()
        return result

    async def stop(self, *, force: bool = False) -> ControlResult:
        """Stop the service, pre-empting any pending restart."""
        async with self._lock:
            with anyio.CancelScope(shield=True):
                result = await self.controller.request_stop(force=force)
        self.wake()
        return result

    async def reset_failure(self) -> ControlResult:
        """Clear a permanent failure."""
        async with self._lock:
            result = await self.controller.reset_failure()
        self.wake()
        return result

    async def recover(self) -> None:
        """Adopt or clean up whatever the PID store says was running."""
        async with self._lock:
            with anyio.CancelScope(shield=True):
                await self.controller.recover()
        self.wake()

    # -------------------------------------------------------------------------
    # Poll loop
    # -------------------------------------------------------------------------

    def next_delay(self) -> float:
        """Return seconds until the next tick is due."""
        interval = self.record.poll_interval
        remaining = self.controller.seconds_until_restart()
        if remaining is None:
            return interval
        return min(interval, remaining)

    async def run(self, stopping: anyio.Event) -> None:
        """Poll until `stopping` is set or the service is retired.

        The caller must call wake() after setting `stopping` so that a
        sleeping loop notices promptly.
        """
        while not (stopping.is_set() or self._retired):
            _ = await self.poll()
            if stopping.is_set() or self._retired:
                break
            wakeup = self._wakeup
            with anyio.move_on_after(self.next_delay()):
                await wakeup.wait()

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def status(self, probe_timeout: float) -> ServiceStatusReport:
        """Build a status snapshot without taking the service lock.

        The live probe is bounded by `probe_timeout`; if it is slow, the
        cached verdict is returned and marked stale.
        """
        runtime = self.controller.runtime
        entry = self._store.read(self.name, PIDKind.PRIMARY)

        stale = False
        ambiguous = runtime.ambiguous
        if entry is not None:
            liveness: Liveness | None = None
            with anyio.move_on_after(probe_timeout):
                liveness = await anyio.to_thread.run_sync(
                    self._evaluator.prober.probe,
                    entry,
                    abandon_on_cancel=True,
                )
            if liveness is None:
                stale = True
            else:
                ambiguous = liveness == Liveness.AMBIGUOUS

        uptime: float | None = None
        if runtime.started_at is not None and self.is_active():
            uptime = (pendulum.now("UTC") - runtime.started_at).total_seconds()

        return ServiceStatusReport(
            name=self.name,
            state=runtime.state.value,
            pid=entry.pid if entry is not None else None,
            uptime=uptime,
            restart_count=len(runtime.restart_history),
            consecutive_failures=runtime.consecutive_failures,
            last_verdict=runtime.last_verdict.value if runtime.last_verdict else UNKNOWN,
            restart_history=tuple(runtime.restart_history),
            stale=stale,
            confidence="degraded" if ambiguous else "normal",
        )
