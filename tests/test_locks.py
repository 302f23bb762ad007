"""Tests for trak.locks workspace lock manager."""

import json
import os
from datetime import timedelta

from trak.errors import ErrorKind
from trak.locks import LockManager, pid_alive


class TestAcquire:
    """Acquisition, conflict and expiry."""

    def test_acquire_then_conflict_then_expiry(self, lock_manager, clock, temp_dir):
        repo = temp_dir / "repo"

        first = lock_manager.acquire(repo, "trak-aaaaaa", agent="alice", pid=100)
        assert first.acquired
        assert first.lock["taskId"] == "trak-aaaaaa"

        second = lock_manager.acquire(repo, "trak-bbbbbb", agent="bob", pid=200)
        assert second.blocked
        assert second.holder["taskId"] == "trak-aaaaaa"
        assert second.holder["agent"] == "alice"

        clock.now += timedelta(minutes=31)
        third = lock_manager.acquire(repo, "trak-bbbbbb", agent="bob", pid=200)
        assert third.acquired
        assert third.lock["taskId"] == "trak-bbbbbb"

    def test_same_task_reenters(self, lock_manager, temp_dir):
        first = lock_manager.acquire(temp_dir, "trak-aaaaaa", pid=100)
        again = lock_manager.acquire(temp_dir, "trak-aaaaaa", pid=999)
        assert again.acquired
        assert again.lock == first.lock

    def test_dead_owner_is_reclaimed(self, lock_manager, liveness, temp_dir):
        lock_manager.acquire(temp_dir, "trak-aaaaaa", pid=100)
        liveness.dead.add(100)

        result = lock_manager.acquire(temp_dir, "trak-bbbbbb", pid=200)
        assert result.acquired
        assert [e["reason"] for e in lock_manager.read_audit_log() if e["action"] == "reclaim"] == ["dead_owner"]

    def test_lock_file_fields(self, lock_manager, temp_dir):
        lock_manager.acquire(temp_dir, "trak-aaaaaa", agent="alice", pid=100)
        with open(lock_manager.lock_path(temp_dir)) as f:
            data = json.load(f)
        assert set(data) == {"taskId", "repoPath", "timestamp", "pid", "agent", "expiresAt"}
        assert data["repoPath"] == str(temp_dir.resolve())

    def test_lock_path_is_stable(self, lock_manager, temp_dir):
        assert lock_manager.lock_path(temp_dir) == lock_manager.lock_path(temp_dir / "sub" / "..")
        assert lock_manager.lock_path(temp_dir) != lock_manager.lock_path(temp_dir / "other")

    def test_as_result(self, lock_manager, temp_dir):
        lock_manager.acquire(temp_dir, "trak-aaaaaa", agent="alice", pid=100)
        result = lock_manager.acquire(temp_dir, "trak-bbbbbb", pid=200).as_result()
        assert not result.ok
        assert result.kind == ErrorKind.LOCK_CONFLICT
        assert result.value["agent"] == "alice"


class TestReleaseAndList:
    """Release, break, renew and the pruning list."""

    def test_release_is_unconditional(self, lock_manager, temp_dir):
        lock_manager.acquire(temp_dir, "trak-aaaaaa", pid=100)
        assert lock_manager.release(temp_dir) is True
        assert lock_manager.release(temp_dir) is False
        assert lock_manager.read_lock(temp_dir) is None

    def test_list_prunes_stale(self, lock_manager, liveness, clock, temp_dir):
        lock_manager.acquire(temp_dir / "a", "trak-aaaaaa", pid=100)
        lock_manager.acquire(temp_dir / "b", "trak-bbbbbb", pid=200)
        liveness.dead.add(200)

        locks = lock_manager.list_locks()
        assert [lock["taskId"] for lock in locks] == ["trak-aaaaaa"]
        assert not lock_manager.lock_path(temp_dir / "b").exists()

        clock.now += timedelta(hours=1)
        assert lock_manager.list_locks() == []
        assert list(lock_manager.locks_dir.glob("*.lock")) == []

    def test_list_without_dir(self, trak_dir):
        assert LockManager(trak_dir / "nowhere").list_locks() == []

    def test_corrupt_file_is_pruned(self, lock_manager, temp_dir):
        path = lock_manager.lock_path(temp_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("{not json")

        assert lock_manager.read_lock(temp_dir) is None
        assert not path.exists()
        assert lock_manager.acquire(temp_dir, "trak-aaaaaa", pid=100).acquired

    def test_break_lock(self, lock_manager, temp_dir):
        lock_manager.acquire(temp_dir, "trak-aaaaaa", pid=100)
        broken = lock_manager.break_lock(temp_dir)
        assert broken["taskId"] == "trak-aaaaaa"
        assert lock_manager.break_lock(temp_dir) is None

    def test_renew_extends_expiry(self, lock_manager, clock, temp_dir):
        lock = lock_manager.acquire(temp_dir, "trak-aaaaaa", pid=100).lock
        clock.now += timedelta(minutes=20)

        renewed = lock_manager.renew(temp_dir, "trak-aaaaaa")
        assert renewed["expiresAt"] > lock["expiresAt"]
        assert lock_manager.renew(temp_dir, "trak-bbbbbb") is None

        clock.now += timedelta(minutes=20)
        assert lock_manager.read_lock(temp_dir) is not None

    def test_check_conflict(self, lock_manager, temp_dir):
        lock_manager.acquire(temp_dir, "trak-aaaaaa", pid=100)
        assert lock_manager.check_conflict(temp_dir, "trak-aaaaaa") is None
        assert lock_manager.check_conflict(temp_dir, "trak-bbbbbb")["taskId"] == "trak-aaaaaa"

    def test_audit_log_records_actions(self, lock_manager, temp_dir):
        lock_manager.acquire(temp_dir, "trak-aaaaaa", pid=100)
        lock_manager.acquire(temp_dir, "trak-bbbbbb", pid=200)
        lock_manager.release(temp_dir)

        actions = [entry["action"] for entry in lock_manager.read_audit_log()]
        assert actions == ["acquire", "blocked", "release"]
        assert len(lock_manager.read_audit_log(limit=1)) == 1


class TestPidAlive:
    """The default liveness check."""

    def test_current_process_is_alive(self):
        assert pid_alive(os.getpid())

    def test_unused_pid_is_dead(self):
        # PIDs are bounded well below this on Linux and macOS
        assert not pid_alive(2 ** 22 + 12345)
