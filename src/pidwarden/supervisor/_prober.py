"""Liveness probing for recorded PIDs.

A PID alone does not identify a process: once the original exits, the
kernel may hand the same number to something unrelated. Every record
therefore carries a fingerprint, the process create time as reported by
psutil, and a probe only reports RUNNING when both the PID and the
fingerprint match.
"""

from typing import TYPE_CHECKING, final

import psutil

from pidwarden.exceptions import FingerprintMismatch
from pidwarden.utils import create_null_logger

from ._models import Liveness, PIDEntry

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger


def process_fingerprint(pid: int) -> str:
    """Return the identity fingerprint of a live process.

    Args:
        pid: The process ID.

    Returns:
        The process create time, formatted with fixed precision.

    Raises:
        psutil.NoSuchProcess: If the process does not exist.
        psutil.AccessDenied: If the create time cannot be read.
    """
    return f"{psutil.Process(pid).create_time():.3f}"


def try_process_fingerprint(pid: int) -> str:
    """Return the fingerprint of a process, or "" if it cannot be read."""
    try:
        return process_fingerprint(pid)
    except psutil.Error:
        return ""


@final
class LivenessProber:
    """Answers RUNNING / DEAD / AMBIGUOUS for a recorded PID."""

    __slots__ = ("_logger",)

    def __init__(self, *, logger: "FilteringBoundLogger | None" = None) -> None:
        self._logger = logger if logger is not None else create_null_logger()

    def probe(self, entry: PIDEntry) -> Liveness:
        """Probe the process behind a record.

        Args:
            entry: The recorded PID and fingerprint.

        Returns:
            DEAD if no such process exists, it is a zombie, or it carries a
            different fingerprint; RUNNING on an exact match; AMBIGUOUS when
            the fingerprint cannot be compared.
        """
        try:
            process = psutil.Process(entry.pid)
            if process.status() == psutil.STATUS_ZOMBIE:
                return Liveness.DEAD
            self._check_fingerprint(entry, f"{process.create_time():.3f}")
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return Liveness.DEAD
        except FingerprintMismatch as e:
            self._logger.warning(
                "pid_reused",
                pid=e.pid,
                expected=e.expected,
                actual=e.actual,
            )
            return Liveness.DEAD
        except psutil.AccessDenied:
            return Liveness.AMBIGUOUS
        except psutil.Error as e:
            self._logger.warning("probe_failed", pid=entry.pid, error=str(e))
            return Liveness.AMBIGUOUS

        if not entry.fingerprint:
            return Liveness.AMBIGUOUS
        return Liveness.RUNNING

    def pid_reused(self, entry: PIDEntry) -> bool:
        """Return True if the PID is live but carries another fingerprint."""
        if not entry.fingerprint:
            return False
        try:
            actual = process_fingerprint(entry.pid)
        except psutil.Error:
            return False
        return actual != entry.fingerprint

    @staticmethod
    def _check_fingerprint(entry: PIDEntry, actual: str) -> None:
        if entry.fingerprint and entry.fingerprint != actual:
            msg = f"PID {entry.pid} now belongs to a different process"
            raise FingerprintMismatch(
                msg,
                pid=entry.pid,
                expected=entry.fingerprint,
                actual=actual,
            )
