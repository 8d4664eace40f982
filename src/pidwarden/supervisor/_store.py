"""Durable PID records for supervised services.

Each (service, kind) pair is stored as its own small `key=value` text file
named `<service>.<kind>.pid`, so that operators can inspect the state with
`cat` and so that a CLI process can read it while the supervisor writes.
All writes go through a temporary file in the same directory followed by an
atomic rename; a reader sees either the previous record or the new one,
never a torn mix.
"""

import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, final

from pidwarden.exceptions import PIDStoreError, StoreCorruption
from pidwarden.utils import create_null_logger

from ._models import PIDEntry, PIDKind, get_timestamp

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

_SUFFIX = ".pid"
_REQUIRED_KEYS = frozenset({"pid", "fingerprint", "recorded_at"})


def _format_entry(service_name: str, kind: PIDKind, entry: PIDEntry) -> str:
    lines = [
        f"service={service_name}",
        f"kind={kind.value}",
        f"pid={entry.pid}",
        f"fingerprint={entry.fingerprint}",
        f"recorded_at={entry.recorded_at}",
    ]
    if entry.handle is not None:
        lines.append(f"handle={entry.handle}")
    # Trailing marker lets readers tell a complete record from a truncated one
    lines.append("end=1")
    return "\n".join(lines) + "\n"


def _parse_entry(path: Path, content: str) -> PIDEntry:
    """Parse a record file.

    Raises:
        StoreCorruption: If the record is incomplete or malformed.
    """
    values: dict[str, str] = {}
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            msg = f"Malformed line in PID record: {line!r}"
            raise StoreCorruption(msg, path=path, operation="read")
        values[key.strip()] = value.strip()

    missing = _REQUIRED_KEYS - values.keys()
    if missing or values.get("end") != "1":
        msg = f"Incomplete PID record (missing: {', '.join(sorted(missing)) or 'end'})"
        raise StoreCorruption(msg, path=path, operation="read")

    try:
        pid = int(values["pid"])
    except ValueError as e:
        msg = f"Invalid pid in PID record: {values['pid']!r}"
        raise StoreCorruption(msg, path=path, operation="read", cause=e) from e

    if pid <= 0:
        msg = f"Invalid pid in PID record: {pid}"
        raise StoreCorruption(msg, path=path, operation="read")

    return PIDEntry(
        pid=pid,
        fingerprint=values["fingerprint"],
        recorded_at=values["recorded_at"],
        handle=values.get("handle") or None,
    )


@final
class PIDStore:
    """File-backed mapping of (service, kind) to PIDEntry.

    Keeps a write-through in-memory cache that is rebuilt from disk on
    construction and by `reload()`. The files stay the source of truth for
    other processes.

    Attributes:
        directory: Directory holding the record files.
    """

    __slots__ = ("_cache", "_logger", "directory")

    def __init__(
        self,
        directory: Path,
        *,
        create: bool = True,
        logger: "FilteringBoundLogger | None" = None,
    ) -> None:
        """Initialize the store and load existing records.

        Args:
            directory: Directory for record files.
            create: Create `directory` if it is missing. Readers pass False
                and see an empty store instead.
            logger: Logger for corruption and I/O warnings.
        """
        self.directory = directory
        self._logger = logger if logger is not None else create_null_logger()
        self._cache: dict[tuple[str, PIDKind], PIDEntry] = {}
        if create:
            self.directory.mkdir(parents=True, exist_ok=True)
        self.reload()

    def _path(self, service_name: str, kind: PIDKind) -> Path:
        return self.directory / f"{service_name}.{kind.value}{_SUFFIX}"

    def _read_file(self, path: Path) -> PIDEntry | None:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            self._logger.warning("pid_record_unreadable", path=str(path), error=str(e))
            return None

        try:
            return _parse_entry(path, content)
        except StoreCorruption as e:
            # Fail safe: a record we cannot trust is treated as absent
            self._logger.warning("pid_record_corrupt", path=str(path), error=str(e))
            return None

    def reload(self) -> None:
        """Rebuild the in-memory cache from the record files on disk."""
        self._cache.clear()
        for path in self.directory.glob(f"*{_SUFFIX}"):
            parsed = self._split_name(path)
            if parsed is None:
                continue
            entry = self._read_file(path)
            if entry is not None:
                self._cache[parsed] = entry

    @staticmethod
    def _split_name(path: Path) -> tuple[str, PIDKind] | None:
        stem = path.name.removesuffix(_SUFFIX)
        service_name, _, kind_value = stem.rpartition(".")
        if not service_name:
            return None
        try:
            return service_name, PIDKind(kind_value)
        except ValueError:
            return None

    def write(
        self,
        service_name: str,
        kind: PIDKind,
        pid: int,
        fingerprint: str,
        *,
        handle: str | None = None,
    ) -> PIDEntry:
        """Atomically replace the record for (service, kind).

        Args:
            service_name: The service name.
            kind: Which process the record describes.
            pid: OS process identifier.
            fingerprint: Identity fingerprint captured at launch.
            handle: Session handle, if any.

        Returns:
            The entry that was written.

        Raises:
            PIDStoreError: If the record cannot be written.
        """
        entry = PIDEntry(
            pid=pid,
            fingerprint=fingerprint,
            recorded_at=get_timestamp(),
            handle=handle,
        )
        path = self._path(service_name, kind)
        content = _format_entry(service_name, kind, entry)

        temp_path: Path | None = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                dir=self.directory,
                delete=False,
                prefix=f".{path.name}.",
                suffix=".tmp",
                encoding="utf-8",
            ) as f:
                temp_path = Path(f.name)
                _ = f.write(content)
                f.flush()
                os.fsync(f.fileno())

            # Path.replace() is atomic on both POSIX and Windows
            _ = temp_path.replace(path)

        except OSError as e:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
            msg = f"Failed to write PID record: {e}"
            raise PIDStoreError(msg, path=path, operation="write", cause=e) from e

        self._cache[service_name, kind] = entry
        return entry

    def read(
        self,
        service_name: str,
        kind: PIDKind = PIDKind.PRIMARY,
        *,
        fresh: bool = False,
    ) -> PIDEntry | None:
        """Return the record for (service, kind), or None if absent.

        Args:
            service_name: The service name.
            kind: Which process record to read.
            fresh: Bypass the cache and read the file.
        """
        key = (service_name, kind)
        if not fresh:
            return self._cache.get(key)

        entry = self._read_file(self._path(service_name, kind))
        if entry is None:
            _ = self._cache.pop(key, None)
        else:
            self._cache[key] = entry
        return entry

    def remove(self, service_name: str, kind: PIDKind) -> None:
        """Delete the record for (service, kind). Absent records are fine.

        Raises:
            PIDStoreError: If an existing record cannot be deleted.
        """
        path = self._path(service_name, kind)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            msg = f"Failed to remove PID record: {e}"
            raise PIDStoreError(msg, path=path, operation="remove", cause=e) from e
        _ = self._cache.pop((service_name, kind), None)

    def remove_all(self, service_name: str) -> None:
        """Delete every record of a service."""
        for kind in PIDKind:
            self.remove(service_name, kind)

    def list_services(self) -> set[str]:
        """Return names of services with at least one record."""
        return {service_name for service_name, _ in self._cache}
