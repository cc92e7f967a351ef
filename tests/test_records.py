"""Tests for durable record implementations."""

import threading
from pathlib import Path

import pytest

from infraworker.core import FileRecord, MemoryRecord


@pytest.fixture(params=["file", "memory"])
def record(request, tmp_path: Path):
    """Both record kinds, so they are held to the same contract."""
    if request.param == "file":
        return FileRecord(tmp_path / "state" / "record.json")
    return MemoryRecord()


@pytest.mark.unit
class TestRecordContract:
    """Behaviour shared by every DurableRecord."""

    def test_read_missing_returns_none(self, record) -> None:
        """A record that was never written reads as None."""
        assert record.read() is None

    def test_write_then_read(self, record) -> None:
        """Written data is read back unchanged."""
        record.write('{"a": 1}')
        assert record.read() == '{"a": 1}'

    def test_compare_and_swap_requires_absence(self, record) -> None:
        """expected=None only succeeds while the record does not exist."""
        assert record.compare_and_swap(None, "first") is True
        assert record.compare_and_swap(None, "second") is False
        assert record.read() == "first"

    def test_compare_and_swap_mismatch_leaves_record(self, record) -> None:
        """A stale expected value is rejected."""
        record.write("current")
        assert record.compare_and_swap("stale", "new") is False
        assert record.read() == "current"

    def test_compare_and_swap_to_none_deletes(self, record) -> None:
        """Swapping to None removes the record."""
        record.write("current")
        assert record.compare_and_swap("current", None) is True
        assert record.read() is None

    def test_delete_is_idempotent(self, record) -> None:
        """Deleting a missing record is not an error."""
        record.delete()
        record.write("x")
        record.delete()
        assert record.read() is None


@pytest.mark.unit
class TestFileRecord:
    """Tests specific to file-backed records."""

    def test_write_creates_parent_dirs(self, tmp_path: Path) -> None:
        """Parent directories are created on first write."""
        path = tmp_path / "a" / "b" / "status.json"
        FileRecord(path).write("{}")
        assert path.read_text() == "{}"

    def test_undecodable_bytes_still_swap(self, tmp_path: Path) -> None:
        """Bytes that are not UTF-8 read back as text that compare-and-swap accepts."""
        path = tmp_path / "lock"
        path.write_bytes(b"\xff\xfe{bad")
        record = FileRecord(path)
        raw = record.read()
        assert raw is not None
        assert record.compare_and_swap(raw, "owner-a") is True
        assert record.read() == "owner-a"

    def test_write_leaves_no_temp_files(self, tmp_path: Path) -> None:
        """Atomic writes clean up after themselves."""
        path = tmp_path / "status.json"
        record = FileRecord(path)
        record.write("one")
        record.write("two")
        leftovers = [p.name for p in tmp_path.iterdir() if p.suffix == ".tmp"]
        assert leftovers == []

    def test_two_instances_share_state(self, tmp_path: Path) -> None:
        """Separate FileRecord objects on one path see each other's writes."""
        path = tmp_path / "lock"
        FileRecord(path).write("owner-a")
        assert FileRecord(path).compare_and_swap("owner-a", "owner-b") is True
        assert path.read_text() == "owner-b"

    @pytest.mark.slow
    def test_concurrent_compare_and_swap_has_single_winner(self, tmp_path: Path) -> None:
        """Only one of many racing creators wins the swap."""
        path = tmp_path / "lock"
        barrier = threading.Barrier(8)
        wins: list[int] = []

        def contend(n: int) -> None:
            record = FileRecord(path)
            barrier.wait()
            if record.compare_and_swap(None, f"owner-{n}"):
                wins.append(n)

        threads = [threading.Thread(target=contend, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1
        assert path.read_text() == f"owner-{wins[0]}"
