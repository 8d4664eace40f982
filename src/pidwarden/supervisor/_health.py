"""Health evaluation for supervised services.

One evaluation combines three signals, checked in this order with the
first match winning:

1. Liveness: no record, or the recorded process is dead -> CRASHED.
2. Resources: memory or CPU over a ceiling for N consecutive ticks
   -> RESOURCE_EXCEEDED.
3. Progress: the progress token has not changed for `progress_timeout`
   seconds -> STALLED.

Anything else is HEALTHY. The evaluator never mutates runtime state; it
reports observations (new progress token, breach count) for the restart
controller to apply.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, final

import anyio
import anyio.to_thread

from pidwarden.exceptions import ProbeTimeout
from pidwarden.utils import create_null_logger

from ._models import (
    HealthVerdict,
    Liveness,
    PIDKind,
    ResourceSample,
    ServiceRecord,
    ServiceRuntime,
)
from ._progress import tracks_progress
from ._prober import LivenessProber
from ._resources import ResourceSampler

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from ._protocol import ProgressToken
    from ._store import PIDStore


@dataclass(frozen=True, slots=True)
class HealthReport:
    """Result of one health evaluation.

    Attributes:
        verdict: The verdict, or None when the tick is inconclusive (a
            progress sample was missing) and must not drive a transition.
        liveness: Outcome of the liveness probe.
        pid: The PID that was evaluated, if a record existed.
        resources: Resource sample, if one was taken.
        resource_breaches: Consecutive breaching ticks including this one.
        progress_token: Latest known progress token.
        progress_observed_at: Monotonic time the token last changed.
        progress_missing: Whether the progress sample was missing this tick.
    """

    verdict: HealthVerdict | None
    liveness: Liveness
    pid: int | None = None
    resources: ResourceSample | None = None
    resource_breaches: int = 0
    progress_token: "ProgressToken | None" = None
    progress_observed_at: float | None = None
    progress_missing: bool = False


@final
class HealthEvaluator:
    """Turns the PID store, a liveness probe and monitors into a verdict."""

    __slots__ = ("_clock", "_logger", "_prober", "_sampler", "_store")

    def __init__(
        self,
        store: "PIDStore",
        *,
        prober: LivenessProber | None = None,
        sampler: ResourceSampler | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: "FilteringBoundLogger | None" = None,
    ) -> None:
        """Initialize the evaluator.

        Args:
            store: Where the launched PIDs are recorded.
            prober: Liveness prober; a psutil-backed one if None.
            sampler: Resource sampler; a psutil-backed one if None.
            clock: Monotonic clock used for stall timing.
            logger: Logger for skipped samples.
        """
        self._store = store
        self._logger = logger if logger is not None else create_null_logger()
        self._prober = prober if prober is not None else LivenessProber(logger=self._logger)
        self._sampler = sampler if sampler is not None else ResourceSampler()
        self._clock = clock

    @property
    def prober(self) -> LivenessProber:
        """Return the liveness prober used by this evaluator."""
        return self._prober

    async def evaluate(self, record: ServiceRecord, runtime: ServiceRuntime) -> HealthReport:
        """Evaluate the health of one service.

        Args:
            record: The service configuration.
            runtime: The service's current runtime state (read only).

        Returns:
            The health report for this tick.
        """
        entry = self._store.read(record.name, PIDKind.PRIMARY)
        if entry is None:
            return HealthReport(verdict=HealthVerdict.CRASHED, liveness=Liveness.DEAD)

        liveness = self._prober.probe(entry)
        if liveness == Liveness.DEAD:
            return HealthReport(
                verdict=HealthVerdict.CRASHED,
                liveness=liveness,
                pid=entry.pid,
            )

        if liveness == Liveness.AMBIGUOUS:
            # Assume running; never act on a process we cannot identify
            return HealthReport(
                verdict=HealthVerdict.HEALTHY,
                liveness=liveness,
                pid=entry.pid,
                resource_breaches=runtime.resource_breaches,
                progress_token=runtime.last_progress_token,
                progress_observed_at=runtime.last_progress_observed_at,
            )

        limits = record.resources
        sample: ResourceSample | None = None
        breaches = 0
        if limits.enabled:
            sample = self._sampler.sample(entry.pid, include_children=limits.include_children)
            if sample is None:
                breaches = runtime.resource_breaches
            elif sample.exceeds(limits):
                breaches = runtime.resource_breaches + 1
            if breaches >= limits.breach_ticks:
                return HealthReport(
                    verdict=HealthVerdict.RESOURCE_EXCEEDED,
                    liveness=liveness,
                    pid=entry.pid,
                    resources=sample,
                    resource_breaches=breaches,
                    progress_token=runtime.last_progress_token,
                    progress_observed_at=runtime.last_progress_observed_at,
                )

        token = runtime.last_progress_token
        observed_at = runtime.last_progress_observed_at
        verdict = HealthVerdict.HEALTHY

        if record.progress_timeout is not None and tracks_progress(record.progress_monitor):
            try:
                sampled = await self._sample_progress(record)
            except ProbeTimeout as e:
                self._logger.info(
                    "progress_sample_missing",
                    service=record.name,
                    error=str(e),
                )
                return HealthReport(
                    verdict=None,
                    liveness=liveness,
                    pid=entry.pid,
                    resources=sample,
                    resource_breaches=breaches,
                    progress_token=token,
                    progress_observed_at=observed_at,
                    progress_missing=True,
                )

            now = self._clock()
            if observed_at is None or sampled != token:
                token = sampled
                observed_at = now
            elif now - observed_at >= record.progress_timeout:
                verdict = HealthVerdict.STALLED

        return HealthReport(
            verdict=verdict,
            liveness=liveness,
            pid=entry.pid,
            resources=sample,
            resource_breaches=breaches,
            progress_token=token,
            progress_observed_at=observed_at,
        )

    async def _sample_progress(self, record: ServiceRecord) -> "ProgressToken":
        """Sample the service's progress monitor within its probe timeout.

        Raises:
            ProbeTimeout: If the sample is slow or the monitor fails.
        """
        monitor = record.progress_monitor
        token: ProgressToken | None = None
        try:
            with anyio.move_on_after(record.probe_timeout) as scope:
                token = await anyio.to_thread.run_sync(
                    monitor.sample,
                    record.name,
                    abandon_on_cancel=True,
                )
        except Exception as e:  # noqa: BLE001
            msg = f"Progress monitor for '{record.name}' failed: {e}"
            raise ProbeTimeout(
                msg,
                service_name=record.name,
                timeout=record.probe_timeout,
            ) from e

        if scope.cancelled_caught:
            msg = f"Progress sample for '{record.name}' exceeded {record.probe_timeout}s"
            raise ProbeTimeout(msg, service_name=record.name, timeout=record.probe_timeout)

        return token
