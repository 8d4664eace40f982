"""Built-in progress monitors.

Progress checking is opt-in per service. Services registered without a
monitor get ExistenceOnlyMonitor, which never reports progress and makes
the health evaluator skip stall detection. The other monitors derive a
token from files a pipeline stage writes as it works.
"""

from pathlib import Path
from typing import final


@final
class ExistenceOnlyMonitor:
    """Monitor for services whose only health signal is being alive."""

    __slots__ = ()

    def sample(self, service_name: str) -> int:  # noqa: ARG002
        return 0

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ExistenceOnlyMonitor)

    def __hash__(self) -> int:
        return hash(ExistenceOnlyMonitor)


@final
class LineCountMonitor:
    """Counts lines in an output file, e.g. one record per line.

    A missing file counts as zero lines so that a stage that has not
    written anything yet is still sampled.
    """

    __slots__ = ("path",)

    def __init__(self, path: Path) -> None:
        self.path = path

    def sample(self, service_name: str) -> int:  # noqa: ARG002
        try:
            with self.path.open("rb") as f:
                return sum(1 for _ in f)
        except FileNotFoundError:
            return 0


@final
class FileCountMonitor:
    """Counts files matching a glob pattern, e.g. completed output shards."""

    __slots__ = ("directory", "pattern")

    def __init__(self, directory: Path, pattern: str = "*") -> None:
        self.directory = directory
        self.pattern = pattern

    def sample(self, service_name: str) -> int:  # noqa: ARG002
        if not self.directory.is_dir():
            return 0
        return sum(1 for p in self.directory.glob(self.pattern) if p.is_file())


@final
class FileSizeMonitor:
    """Reports the byte size of a file that only grows while work happens."""

    __slots__ = ("path",)

    def __init__(self, path: Path) -> None:
        self.path = path

    def sample(self, service_name: str) -> int:  # noqa: ARG002
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0


def tracks_progress(monitor: object) -> bool:
    """Return whether a monitor can ever report progress."""
    return not isinstance(monitor, ExistenceOnlyMonitor)
