"""Unit tests for the migration coordination lock."""

import json
from pathlib import Path

import pytest

from dns_sync.errors import LockTimeout
from dns_sync.locks import FileLock
from dns_sync.models import to_db_timestamp


class TestFileLock:
    def test_acquire_writes_holder_and_release_removes_file(self, tmp_path: Path, clock) -> None:
        path = tmp_path / "dns-sync.lock"
        lock = FileLock(str(path), holder="host:1:1", clock=clock)

        with lock:
            assert lock.owned
            info = lock.read()
            assert info.holder == "host:1:1"
            assert info.acquired_at == clock()

        assert not lock.owned
        assert not path.exists()

    def test_second_holder_times_out(self, tmp_path: Path, clock) -> None:
        path = str(tmp_path / "dns-sync.lock")
        first = FileLock(path, holder="first", clock=clock)
        first.acquire()

        second = FileLock(path, timeout=0, holder="second", clock=clock)
        with pytest.raises(LockTimeout, match="first"):
            second.acquire()
        assert not second.owned
        first.release()

    def test_stale_lock_is_reclaimed(self, tmp_path: Path, clock) -> None:
        path = tmp_path / "dns-sync.lock"
        path.write_text(
            json.dumps({"holder": "crashed", "acquired_at": to_db_timestamp(clock())}), "utf-8"
        )
        clock.advance(minutes=5)

        lock = FileLock(str(path), timeout=0, stale_after=120, holder="fresh", clock=clock)
        lock.acquire()

        assert lock.owned
        assert lock.read().holder == "fresh"
        lock.release()

    def test_unreadable_lock_file_is_stale(self, tmp_path: Path, clock) -> None:
        path = tmp_path / "dns-sync.lock"
        path.write_text("garbage", "utf-8")

        lock = FileLock(str(path), timeout=0, holder="fresh", clock=clock)
        lock.acquire()

        assert lock.owned
        lock.release()

    def test_release_leaves_lock_taken_over_by_another_holder(self, tmp_path: Path, clock) -> None:
        path = tmp_path / "dns-sync.lock"
        lock = FileLock(str(path), holder="mine", clock=clock)
        lock.acquire()
        path.write_text(
            json.dumps({"holder": "theirs", "acquired_at": to_db_timestamp(clock())}), "utf-8"
        )

        lock.release()

        assert path.exists()
        assert lock.read().holder == "theirs"

    def test_acquire_is_idempotent_for_owner(self, tmp_path: Path, clock) -> None:
        lock = FileLock(str(tmp_path / "dns-sync.lock"), timeout=0, clock=clock)
        lock.acquire()
        lock.acquire()

        assert lock.owned
        lock.release()
