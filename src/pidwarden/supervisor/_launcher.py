"""Default process launcher.

Starts each command as the leader of a new session (and process group) so
that it survives the supervisor and can be signalled as a whole, including
any children it forks. Output goes to a per-service log file; the session
handle is `pgid:<n>`.
"""

import os
import signal
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, final

import anyio
import anyio.to_thread
import pendulum

from pidwarden.exceptions import LaunchError
from pidwarden.utils import create_null_logger

from ._models import LaunchCommand, LaunchResult, SignalKind
from ._prober import try_process_fingerprint

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

_HANDLE_PREFIX = "pgid:"


def parse_handle(session_handle: str | None) -> int | None:
    """Extract the process group ID from a session handle."""
    if session_handle is None or not session_handle.startswith(_HANDLE_PREFIX):
        return None
    try:
        return int(session_handle.removeprefix(_HANDLE_PREFIX))
    except ValueError:
        return None


@final
class SubprocessLauncher:
    """Launches commands as detached session leaders.

    Popen objects of launched children are kept so that exited children
    are reaped instead of lingering as zombies.

    Attributes:
        log_dir: Directory for `<service>.log` output files.
    """

    __slots__ = ("_children", "_logger", "log_dir")

    def __init__(
        self,
        log_dir: Path,
        *,
        logger: "FilteringBoundLogger | None" = None,
    ) -> None:
        """Initialize the launcher.

        Args:
            log_dir: Directory for per-service output files.
            logger: Logger for launch and signal diagnostics.
        """
        self.log_dir = log_dir
        self._logger = logger if logger is not None else create_null_logger()
        self._children: dict[int, subprocess.Popen[bytes]] = {}

    def log_path(self, service_name: str) -> Path:
        """Return the output file of a service."""
        return self.log_dir / f"{service_name}.log"

    def _spawn(self, service_name: str, command: LaunchCommand) -> subprocess.Popen[bytes]:
        self.log_dir.mkdir(parents=True, exist_ok=True)

        env: dict[str, str] | None = None
        if command.env:
            env = {**os.environ, **command.env}

        with self.log_path(service_name).open("ab") as log_file:
            banner = f"{pendulum.now('UTC').to_iso8601_string()} [pidwarden] launching {' '.join(command.argv)}\n"
            _ = log_file.write(banner.encode())
            log_file.flush()
            return subprocess.Popen(  # noqa: S603
                command.argv,
                cwd=command.cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )

    async def launch(self, service_name: str, command: LaunchCommand) -> LaunchResult:
        """Start a command in a new session.

        Raises:
            LaunchError: If the command cannot be started.
        """
        if not command.argv:
            msg = f"Service '{service_name}' has an empty command"
            raise LaunchError(msg, service_name=service_name)

        self._reap()
        try:
            process = await anyio.to_thread.run_sync(self._spawn, service_name, command)
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            msg = f"Failed to start service '{service_name}': {e}"
            raise LaunchError(msg, service_name=service_name, cause=e) from e

        self._children[process.pid] = process
        fingerprint = try_process_fingerprint(process.pid)
        self._logger.debug(
            "process_launched",
            service=service_name,
            pid=process.pid,
            fingerprint=fingerprint,
        )
        return LaunchResult(
            session_handle=f"{_HANDLE_PREFIX}{process.pid}",
            pid=process.pid,
            fingerprint=fingerprint,
        )

    async def terminate(
        self,
        session_handle: str | None,
        pid: int,
        signal_kind: SignalKind,
    ) -> None:
        """Signal the session's process group, or the PID if there is none."""
        signum = signal.SIGTERM if signal_kind == SignalKind.GRACEFUL else signal.SIGKILL
        pgid = parse_handle(session_handle)
        try:
            if pgid is not None:
                os.killpg(pgid, signum)
            else:
                os.kill(pid, signum)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            self._logger.warning("signal_denied", pid=pid, handle=session_handle, error=str(e))
        self._reap()

    async def is_session_alive(self, session_handle: str) -> bool:
        """Check whether any process of the session's group still exists."""
        self._reap()
        pgid = parse_handle(session_handle)
        if pgid is None:
            return False
        try:
            os.killpg(pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _reap(self) -> None:
        exited = [pid for pid, child in self._children.items() if child.poll() is not None]
        for pid in exited:
            del self._children[pid]
