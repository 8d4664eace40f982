"""Restart policy state machine for a single service.

The controller is the only writer of a service's runtime state. It consumes
health reports, decides whether to restart, and performs the side effects
of its transitions: launcher calls, termination signals and PID store
updates. Every transition is published as a StatusEvent.

Transitions:

    stopped            --start-->                   starting
    starting           --probe running-->           running
    starting           --launch/probe failure-->    restarting | failed_permanently
    running            --healthy-->                 running (failures reset)
    running            --unhealthy-->               degraded
    degraded           --budget left-->             restarting
    degraded           --budget exhausted-->        failed_permanently
    restarting         --backoff elapsed-->         starting
    failed_permanently --reset-->                   stopped
    any (but failed)   --stop-->                    stopped

The controller does no locking of its own; callers serialize access per
service.
"""

import time
from collections import deque
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, final

import anyio
import pendulum

from pidwarden.exceptions import BudgetExhausted, LaunchError, PIDStoreError
from pidwarden.utils import create_null_logger

from ._health import HealthReport
from ._models import (
    ControlResult,
    HealthVerdict,
    Liveness,
    PIDEntry,
    PIDKind,
    ServiceRecord,
    ServiceRuntime,
    ServiceState,
    SignalKind,
    StatusEvent,
    get_timestamp,
)

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from ._prober import LivenessProber
    from ._protocol import EventSink, ProcessLauncher
    from ._store import PIDStore


@final
class RestartController:
    """Owns the lifecycle state of one service.

    Attributes:
        runtime: The service's runtime state. Read-only outside this class.
    """

    __slots__ = (
        "_clock",
        "_launcher",
        "_logger",
        "_poll_step",
        "_prober",
        "_record",
        "_sinks",
        "_store",
        "runtime",
    )

    def __init__(  # noqa: PLR0913
        self,
        record: ServiceRecord,
        *,
        store: "PIDStore",
        launcher: "ProcessLauncher",
        prober: "LivenessProber",
        sinks: "Sequence[EventSink]" = (),
        clock: Callable[[], float] = time.monotonic,
        poll_step: float = 0.1,
        logger: "FilteringBoundLogger | None" = None,
    ) -> None:
        """Initialize the controller in the STOPPED state.

        Args:
            record: The service configuration.
            store: PID store for launched processes.
            launcher: Starts and signals processes.
            prober: Confirms launched processes are alive.
            sinks: Receivers of status events.
            clock: Monotonic clock for backoff deadlines.
            poll_step: Seconds between probes while waiting for a process
                to appear after launch or to disappear after a signal.
            logger: Logger for diagnostics.
        """
        self._record = record
        self._store = store
        self._launcher = launcher
        self._prober = prober
        self._sinks = tuple(sinks)
        self._clock = clock
        self._poll_step = poll_step
        base_logger = logger if logger is not None else create_null_logger()
        self._logger = base_logger.bind(service=record.name)
        self.runtime = ServiceRuntime(restart_history=deque(maxlen=record.history_limit))

    @property
    def name(self) -> str:
        """Return the service name."""
        return self._record.name

    @property
    def record(self) -> ServiceRecord:
        """Return the current service configuration."""
        return self._record

    @property
    def state(self) -> ServiceState:
        """Return the current lifecycle state."""
        return self.runtime.state

    def replace_record(self, record: ServiceRecord) -> None:
        """Swap in a new configuration, keeping runtime state."""
        self._record = record
        if self.runtime.restart_history.maxlen != record.history_limit:
            self.runtime.restart_history = deque(
                self.runtime.restart_history, maxlen=record.history_limit
            )

    def seconds_until_restart(self) -> float | None:
        """Return the remaining backoff delay, or None if none is pending."""
        if self.runtime.state != ServiceState.RESTARTING or self.runtime.restart_at is None:
            return None
        return max(0.0, self.runtime.restart_at - self._clock())

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def _transition(
        self,
        new_state: ServiceState,
        *,
        verdict: HealthVerdict | None = None,
        pid: int | None = None,
        message: str | None = None,
    ) -> None:
        old_state = self.runtime.state
        self.runtime.state = new_state
        event = StatusEvent(
            service_name=self.name,
            old_state=old_state,
            new_state=new_state,
            verdict=verdict,
            timestamp=get_timestamp(),
            pid=pid,
            message=message,
        )
        for sink in self._sinks:
            try:
                await sink.write_event(event)
            except Exception as e:  # noqa: BLE001
                # Sink errors must not interrupt a transition
                self._logger.warning("event_sink_failed", sink=type(sink).__name__, error=str(e))

    # -------------------------------------------------------------------------
    # External requests
    # -------------------------------------------------------------------------

    async def request_start(self) -> ControlResult:
        """Handle an external start request."""
        state = self.runtime.state
        if state == ServiceState.FAILED_PERMANENTLY:
            return self._result(
                ok=False,
                message="Service failed permanently; reset it before starting",
            )
        if state == ServiceState.RESTARTING:
            return self._result(ok=True, message="Restart already scheduled")
        if state != ServiceState.STOPPED:
            return self._result(ok=True, message="Already running")

        await self._launch()
        if self.runtime.state == ServiceState.RUNNING:
            return self._result(ok=True, message="Started")
        return self._result(ok=False, message="Start failed")

    async def request_stop(self, *, force: bool = False) -> ControlResult:
        """Handle an external stop request. Idempotent.

        Pre-empts a pending backoff immediately. A permanently failed
        service keeps its state; only reset_failure clears it.
        """
        await self._terminate_processes(force=force)
        self._clear_records()
        self.runtime.restart_at = None

        if self.runtime.state == ServiceState.FAILED_PERMANENTLY:
            return self._result(ok=True, message="Service is failed permanently")

        self.runtime.consecutive_failures = 0
        self.runtime.started_at = None
        self.runtime.reset_progress()
        if self.runtime.state == ServiceState.STOPPED:
            return self._result(ok=True, message="Already stopped")

        await self._transition(ServiceState.STOPPED, message="Stopped by request")
        return self._result(ok=True, message="Stopped")

    async def reset_failure(self) -> ControlResult:
        """Clear FAILED_PERMANENTLY, returning the service to STOPPED."""
        if self.runtime.state != ServiceState.FAILED_PERMANENTLY:
            return self._result(ok=True, message="Service is not failed")

        self.runtime.consecutive_failures = 0
        self.runtime.restart_at = None
        await self._transition(ServiceState.STOPPED, message="Failure reset by operator")
        return self._result(ok=True, message="Failure reset")

    # -------------------------------------------------------------------------
    # Poll-driven transitions
    # -------------------------------------------------------------------------

    async def apply(self, report: HealthReport) -> None:
        """Apply one health report to a RUNNING service.

        Reports for services in any other state are ignored; they describe
        a process the controller has already acted on.
        """
        if self.runtime.state != ServiceState.RUNNING:
            return

        runtime = self.runtime
        runtime.resource_breaches = report.resource_breaches
        runtime.last_progress_token = report.progress_token
        runtime.last_progress_observed_at = report.progress_observed_at

        verdict = report.verdict
        if verdict is None:
            return

        runtime.last_verdict = verdict
        runtime.ambiguous = report.liveness == Liveness.AMBIGUOUS

        if verdict == HealthVerdict.HEALTHY:
            if not runtime.ambiguous:
                runtime.consecutive_failures = 0
            return

        self._logger.warning("service_unhealthy", verdict=verdict.value, pid=report.pid)
        await self._transition(ServiceState.DEGRADED, verdict=verdict, pid=report.pid)
        await self._handle_degraded(verdict)

    async def advance(self) -> None:
        """Launch again once a pending backoff delay has elapsed."""
        remaining = self.seconds_until_restart()
        if remaining is None or remaining > 0:
            return
        self.runtime.restart_at = None
        await self._launch()

    async def recover(self) -> None:
        """Rebuild runtime state from the PID store after a supervisor restart.

        A recorded process that is still alive is adopted as RUNNING with an
        unknown verdict. A recorded process that died while nobody watched
        is handled like a crash.
        """
        if self.runtime.state != ServiceState.STOPPED:
            return

        entry = self._store.read(self.name, PIDKind.PRIMARY)
        if entry is None:
            if self._store.read(self.name, PIDKind.SESSION) is not None:
                self._clear_records()
            return

        liveness = self._prober.probe(entry)
        self.runtime.started_at = _parse_timestamp(entry.recorded_at)
        self.runtime.ambiguous = liveness == Liveness.AMBIGUOUS
        await self._transition(
            ServiceState.RUNNING,
            pid=entry.pid,
            message=f"Adopted recorded process ({liveness.value})",
        )

        if liveness == Liveness.DEAD:
            await self.apply(
                HealthReport(
                    verdict=HealthVerdict.CRASHED,
                    liveness=liveness,
                    pid=entry.pid,
                )
            )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _result(self, *, ok: bool, message: str) -> ControlResult:
        return ControlResult(
            ok=ok,
            service_name=self.name,
            state=self.runtime.state.value,
            message=message,
        )

    def _charge_failure(self) -> None:
        """Count one failure against the budget.

        Raises:
            BudgetExhausted: If the budget was already used up.
        """
        runtime = self.runtime
        if runtime.consecutive_failures >= self._record.max_restarts:
            msg = (
                f"Service '{self.name}' exceeded {self._record.max_restarts} "
                "consecutive restarts"
            )
            raise BudgetExhausted(
                msg,
                service_name=self.name,
                consecutive_failures=runtime.consecutive_failures,
            )
        runtime.consecutive_failures += 1
        runtime.restart_history.append(get_timestamp())

    async def _schedule_restart(self, verdict: HealthVerdict | None, reason: str) -> None:
        try:
            self._charge_failure()
        except BudgetExhausted as e:
            await self._fail_permanently(verdict, str(e))
            return

        failures = self.runtime.consecutive_failures
        delay = self._record.backoff.delay(failures)
        self.runtime.restart_at = self._clock() + delay
        await self._transition(
            ServiceState.RESTARTING,
            verdict=verdict,
            message=(
                f"{reason}; restarting in {delay:.1f}s "
                f"(attempt {failures}/{self._record.max_restarts})"
            ),
        )

    async def _handle_degraded(self, verdict: HealthVerdict) -> None:
        await self._terminate_processes(force=False)
        self._clear_records()
        self.runtime.started_at = None
        self.runtime.reset_progress()
        await self._schedule_restart(verdict, f"Service {verdict.value}")

    async def _fail_permanently(self, verdict: HealthVerdict | None, message: str) -> None:
        await self._terminate_processes(force=False)
        self._clear_records()
        self.runtime.restart_at = None
        self.runtime.started_at = None
        self._logger.error(
            "service_failed_permanently",
            verdict=verdict.value if verdict is not None else None,
            consecutive_failures=self.runtime.consecutive_failures,
        )
        await self._transition(
            ServiceState.FAILED_PERMANENTLY,
            verdict=verdict,
            message=message,
        )

    async def _launch(self) -> None:
        """Run the STARTING sequence: launch, record, confirm."""
        await self._transition(ServiceState.STARTING)
        self.runtime.reset_progress()
        record = self._record

        try:
            with anyio.fail_after(record.launch_timeout):
                result = await self._launcher.launch(record.name, record.command)
        except LaunchError as e:
            self._logger.error("launch_failed", error=str(e))
            await self._schedule_restart(None, f"Launch failed: {e}")
            return
        except TimeoutError:
            self._logger.error("launch_timed_out", timeout=record.launch_timeout)
            await self._schedule_restart(
                None, f"Launch exceeded {record.launch_timeout}s"
            )
            return
        except Exception as e:  # noqa: BLE001
            # A misbehaving launcher costs one attempt, never the supervisor
            self._logger.exception("launch_crashed", error_type=type(e).__name__)
            await self._schedule_restart(None, f"Launch failed: {type(e).__name__}: {e}")
            return

        try:
            entry = self._store.write(
                record.name,
                PIDKind.PRIMARY,
                result.pid,
                result.fingerprint,
                handle=result.session_handle,
            )
            _ = self._store.write(
                record.name,
                PIDKind.SESSION,
                result.pid,
                result.fingerprint,
                handle=result.session_handle,
            )
        except PIDStoreError as e:
            # An untracked process would be invisible to every later poll
            self._logger.error("pid_record_failed", error=str(e))
            await self._signal(result.session_handle, result.pid, SignalKind.FORCE)
            self._clear_records()
            await self._schedule_restart(None, f"Could not record PID: {e}")
            return

        if not await self._confirm_started(entry):
            self._logger.warning("startup_probe_failed", pid=result.pid)
            await self._terminate_processes(force=True)
            self._clear_records()
            await self._schedule_restart(
                None, f"Process {result.pid} did not stay up during startup"
            )
            return

        self.runtime.started_at = pendulum.now("UTC")
        self.runtime.last_verdict = None
        await self._transition(ServiceState.RUNNING, pid=result.pid, message="Started")

    async def _confirm_started(self, entry: PIDEntry) -> bool:
        """Probe a fresh launch until it shows up, within the startup grace."""
        with anyio.move_on_after(self._record.startup_grace):
            while True:
                liveness = self._prober.probe(entry)
                if liveness != Liveness.DEAD:
                    self.runtime.ambiguous = liveness == Liveness.AMBIGUOUS
                    return True
                await anyio.sleep(self._poll_step)
        return False

    async def _wait_for_exit(self, entry: PIDEntry, timeout: float) -> bool:
        with anyio.move_on_after(timeout):
            while self._prober.probe(entry) != Liveness.DEAD:
                await anyio.sleep(self._poll_step)
            return True
        return False

    async def _wait_for_session_exit(self, handle: str, timeout: float) -> bool:
        with anyio.move_on_after(timeout):
            while await self._session_alive(handle):
                await anyio.sleep(self._poll_step)
            return True
        return False

    async def _terminate_processes(self, *, force: bool) -> None:
        """Graceful-stop sequence: signal, wait up to the grace period, kill.

        Covers the primary process and, for workers that fork away from it,
        whatever is left of its session.
        """
        grace = self._record.shutdown_grace
        primary = self._store.read(self.name, PIDKind.PRIMARY)
        session = self._store.read(self.name, PIDKind.SESSION)

        if primary is not None and self._prober.probe(primary) != Liveness.DEAD:
            handle = primary.handle
            exited = False
            if not force:
                await self._signal(handle, primary.pid, SignalKind.GRACEFUL)
                exited = await self._wait_for_exit(primary, grace)
            if not exited:
                await self._signal(handle, primary.pid, SignalKind.FORCE)
                if not await self._wait_for_exit(primary, grace):
                    self._logger.error("process_survived_kill", pid=primary.pid)

        if session is None or session.handle is None:
            return
        # A reused leader PID means the session is gone and the group ID
        # may belong to someone else now
        if self._prober.pid_reused(session):
            return
        if not await self._session_alive(session.handle):
            return

        if not force:
            await self._signal(session.handle, session.pid, SignalKind.GRACEFUL)
            if await self._wait_for_session_exit(session.handle, grace):
                return
        await self._signal(session.handle, session.pid, SignalKind.FORCE)
        if not await self._wait_for_session_exit(session.handle, grace):
            self._logger.error("session_survived_kill", handle=session.handle)

    async def _signal(self, handle: str | None, pid: int, signal_kind: SignalKind) -> None:
        try:
            await self._launcher.terminate(handle, pid, signal_kind)
        except Exception as e:  # noqa: BLE001
            # The wait that follows decides whether the process went away
            self._logger.error(
                "signal_failed",
                pid=pid,
                handle=handle,
                signal=signal_kind.value,
                error=str(e),
            )

    async def _session_alive(self, handle: str) -> bool:
        try:
            return await self._launcher.is_session_alive(handle)
        except Exception as e:  # noqa: BLE001
            self._logger.error("session_check_failed", handle=handle, error=str(e))
            return False

    def _clear_records(self) -> None:
        try:
            self._store.remove_all(self.name)
        except PIDStoreError as e:
            self._logger.error("pid_record_remove_failed", error=str(e))


def _parse_timestamp(value: str) -> pendulum.DateTime | None:
    try:
        parsed = pendulum.parse(value)
    except ValueError:
        return None
    return parsed if isinstance(parsed, pendulum.DateTime) else None
