"""Protocol definitions for the supervisor system.

This module defines the seams between the supervision core and its
collaborators:
- ProcessLauncher: Starts and signals processes inside detached sessions
- ProgressMonitor: Reports how far a service has advanced
- EventSink: Consumes state transition events
- LogStore: Serves a service's captured output
"""

from collections.abc import Hashable
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    import pendulum

    from ._models import LaunchCommand, LaunchResult, SignalKind, StatusEvent

type ProgressToken = Hashable


@runtime_checkable
class ProcessLauncher(Protocol):
    """Protocol for starting and terminating supervised processes.

    Implementations host each process in its own session so that it
    outlives the supervisor, and expose that session through an opaque
    handle.
    """

    async def launch(self, service_name: str, command: "LaunchCommand") -> "LaunchResult":
        """Start a command in a new detached session.

        Args:
            service_name: The service the process belongs to.
            command: What to execute.

        Returns:
            The session handle, PID and identity fingerprint.

        Raises:
            LaunchError: If the command cannot be started.
        """
        ...

    async def terminate(
        self,
        session_handle: str | None,
        pid: int,
        signal_kind: "SignalKind",
    ) -> None:
        """Ask a process (and its session) to terminate.

        Must not raise if the process is already gone.

        Args:
            session_handle: Handle returned by launch, if known.
            pid: The primary process ID.
            signal_kind: Graceful or forced termination.
        """
        ...

    async def is_session_alive(self, session_handle: str) -> bool:
        """Return whether the session behind a handle still exists."""
        ...


@runtime_checkable
class ProgressMonitor(Protocol):
    """Protocol for per-service progress sources.

    `sample` must be side-effect free and quick. It is run in a worker
    thread under the service's probe timeout; a sample that times out or
    raises counts as missing for that tick, never as zero progress.
    """

    def sample(self, service_name: str) -> ProgressToken:
        """Return a token that changes whenever the service makes progress."""
        ...


@runtime_checkable
class EventSink(Protocol):
    """Protocol for consuming service state transitions."""

    async def write_event(self, event: "StatusEvent") -> None:
        """Record a state transition.

        Args:
            event: The transition to record.
        """
        ...


@runtime_checkable
class LogStore(Protocol):
    """Protocol for the storage holding each service's captured output."""

    def lines_since(self, service_name: str, since: "pendulum.DateTime") -> list[str]:
        """Return output lines written at or after a point in time.

        Args:
            service_name: The service whose output to read.
            since: Earliest timestamp of interest.

        Returns:
            Matching lines in write order, without trailing newlines.
        """
        ...
