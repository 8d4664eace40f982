"""File-backed log store for captured service output."""

import re
from pathlib import Path
from typing import final

import pendulum

_TIMESTAMP_RE = re.compile(
    r"^\[?(\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:[.,]\d+)?(?:Z|[+-]\d{2}:?\d{2})?)"
)


def _line_timestamp(line: str) -> pendulum.DateTime | None:
    match = _TIMESTAMP_RE.match(line)
    if match is None:
        return None
    try:
        parsed = pendulum.parse(match.group(1).replace(",", "."), tz="UTC")
    except ValueError:
        return None
    return parsed if isinstance(parsed, pendulum.DateTime) else None


@final
class FileLogStore:
    """Reads `<service>.log` files written by the subprocess launcher.

    Lines that start with an ISO 8601 timestamp carry their own time; lines
    without one (tracebacks, wrapped output) inherit the timestamp of the
    closest preceding stamped line. Lines before the first stamp are never
    returned because their age is unknown.
    """

    __slots__ = ("log_dir",)

    def __init__(self, log_dir: Path) -> None:
        self.log_dir = log_dir

    def lines_since(self, service_name: str, since: pendulum.DateTime) -> list[str]:
        path = self.log_dir / f"{service_name}.log"
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return []

        current: pendulum.DateTime | None = None
        lines: list[str] = []
        for line in content.splitlines():
            stamp = _line_timestamp(line)
            if stamp is not None:
                current = stamp
            if current is not None and current >= since:
                lines.append(line)
        return lines
