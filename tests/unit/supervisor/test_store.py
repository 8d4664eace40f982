from pathlib import Path

import pytest

from pidwarden.exceptions import PIDStoreError
from pidwarden.supervisor import PIDKind, PIDStore


class TestPIDStoreWrite:
    def test_write_then_read_returns_entry(self, state_dir: Path) -> None:
        store = PIDStore(state_dir)

        written = store.write("api", PIDKind.PRIMARY, 4242, "1700000000.123", handle="pgid:4242")

        entry = store.read("api", PIDKind.PRIMARY)
        assert entry == written
        assert entry is not None
        assert entry.pid == 4242
        assert entry.fingerprint == "1700000000.123"
        assert entry.handle == "pgid:4242"

    def test_record_file_is_plain_key_value_text(self, state_dir: Path) -> None:
        store = PIDStore(state_dir)

        _ = store.write("api", PIDKind.SESSION, 7, "fp")

        content = (state_dir / "api.session.pid").read_text()
        assert "pid=7\n" in content
        assert "fingerprint=fp\n" in content
        assert content.endswith("end=1\n")

    def test_write_replaces_previous_record(self, state_dir: Path) -> None:
        store = PIDStore(state_dir)
        _ = store.write("api", PIDKind.PRIMARY, 1, "a")

        _ = store.write("api", PIDKind.PRIMARY, 2, "b")

        entry = PIDStore(state_dir).read("api")
        assert entry is not None
        assert entry.pid == 2
        assert entry.fingerprint == "b"

    def test_write_leaves_no_temporary_files(self, state_dir: Path) -> None:
        store = PIDStore(state_dir)

        for pid in range(1, 6):
            _ = store.write("api", PIDKind.PRIMARY, pid, "fp")

        assert sorted(p.name for p in state_dir.iterdir()) == ["api.primary.pid"]

    def test_write_failure_raises_store_error(
        self, state_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        store = PIDStore(state_dir)

        def fail_replace(self: Path, target: Path) -> Path:
            raise PermissionError("read-only")

        monkeypatch.setattr(Path, "replace", fail_replace)

        with pytest.raises(PIDStoreError) as exc_info:
            _ = store.write("api", PIDKind.PRIMARY, 1, "fp")

        assert exc_info.value.operation == "write"
        assert store.read("api") is None
        assert not any(p.name.endswith(".tmp") for p in state_dir.iterdir())


class TestPIDStoreRead:
    def test_missing_record_reads_as_none(self, state_dir: Path) -> None:
        store = PIDStore(state_dir)

        assert store.read("ghost") is None
        assert store.read("ghost", fresh=True) is None

    def test_records_survive_a_new_store_instance(self, state_dir: Path) -> None:
        _ = PIDStore(state_dir).write("etl", PIDKind.PRIMARY, 1001, "fp-1001")

        entry = PIDStore(state_dir).read("etl")

        assert entry is not None
        assert entry.pid == 1001

    @pytest.mark.parametrize(
        "content",
        [
            "",
            "pid=12\nfingerprint=fp\n",
            "pid=12\nfingerprint=fp\nrecorded_at=2024-01-01T00:00:00Z\n",
            "pid=twelve\nfingerprint=fp\nrecorded_at=2024-01-01T00:00:00Z\nend=1\n",
            "pid=-4\nfingerprint=fp\nrecorded_at=2024-01-01T00:00:00Z\nend=1\n",
            "garbage without separator\n",
        ],
        ids=["empty", "truncated", "no-end-marker", "non-numeric", "negative", "garbage"],
    )
    def test_corrupt_record_reads_as_absent(self, state_dir: Path, content: str) -> None:
        (state_dir / "api.primary.pid").write_text(content)

        store = PIDStore(state_dir)

        assert store.read("api") is None
        assert store.read("api", fresh=True) is None

    def test_fresh_read_sees_changes_from_another_writer(self, state_dir: Path) -> None:
        reader = PIDStore(state_dir)
        assert reader.read("api") is None

        _ = PIDStore(state_dir).write("api", PIDKind.PRIMARY, 55, "fp")

        assert reader.read("api") is None
        entry = reader.read("api", fresh=True)
        assert entry is not None
        assert entry.pid == 55

    def test_reload_rebuilds_cache_from_disk(self, state_dir: Path) -> None:
        store = PIDStore(state_dir)
        _ = PIDStore(state_dir).write("api", PIDKind.PRIMARY, 9, "fp")

        store.reload()

        assert store.list_services() == {"api"}

    def test_reader_does_not_create_missing_directory(self, tmp_path: Path) -> None:
        missing = tmp_path / "no-such-state"

        store = PIDStore(missing, create=False)

        assert store.read("api") is None
        assert store.list_services() == set()
        assert not missing.exists()


class TestPIDStoreRemove:
    def test_remove_deletes_file_and_cache(self, state_dir: Path) -> None:
        store = PIDStore(state_dir)
        _ = store.write("api", PIDKind.PRIMARY, 1, "fp")

        store.remove("api", PIDKind.PRIMARY)

        assert store.read("api") is None
        assert not (state_dir / "api.primary.pid").exists()

    def test_remove_absent_record_is_a_no_op(self, state_dir: Path) -> None:
        store = PIDStore(state_dir)

        store.remove("api", PIDKind.PRIMARY)

        assert store.list_services() == set()

    def test_remove_all_clears_every_kind(self, state_dir: Path) -> None:
        store = PIDStore(state_dir)
        _ = store.write("api", PIDKind.PRIMARY, 1, "fp")
        _ = store.write("api", PIDKind.SESSION, 1, "fp")
        _ = store.write("db", PIDKind.PRIMARY, 2, "fp")

        store.remove_all("api")

        assert store.list_services() == {"db"}
        assert sorted(p.name for p in state_dir.iterdir()) == ["db.primary.pid"]


class TestPIDStoreListServices:
    def test_lists_names_with_dots(self, state_dir: Path) -> None:
        store = PIDStore(state_dir)
        _ = store.write("etl.stage-1", PIDKind.PRIMARY, 1, "fp")

        assert PIDStore(state_dir).list_services() == {"etl.stage-1"}

    def test_ignores_unrelated_files(self, state_dir: Path) -> None:
        (state_dir / "notes.txt").write_text("hello")
        (state_dir / "api.weird.pid").write_text("pid=1\n")

        assert PIDStore(state_dir).list_services() == set()
