"""Workspace locks: advisory, crash-tolerant exclusion on a repository path.

One JSON lock file per repository, named by a hash of its absolute path,
under ``.trak/locks/``. Every read checks expiry and owner liveness and
deletes stale files, so a crashed agent never wedges a directory.

Every mutation is appended to ``.trak/locks/audit.jsonl``.
"""

import fcntl
import hashlib
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Generator

from . import config
from .db import Store, format_timestamp, parse_timestamp
from .errors import ErrorKind, Result

logger = logging.getLogger(__name__)

# Returns True while the process with the given PID exists
LivenessCheck = Callable[[int], bool]


def pid_alive(pid: int) -> bool:
    """Return True if the process with the given PID is running."""
    try:
        os.kill(pid, 0)
        return True
    except PermissionError:
        return True  # exists, owned by someone else
    except (OSError, ProcessLookupError):
        return False


@dataclass
class LockResult:
    """Outcome of an acquire: either ``lock`` (acquired) or ``holder`` (blocked)."""
    acquired: bool
    lock: dict[str, Any] | None = None
    holder: dict[str, Any] | None = None

    @property
    def blocked(self) -> bool:
        return not self.acquired

    def as_result(self) -> Result:
        if self.acquired:
            return Result.success(self.lock)
        holder = self.holder or {}
        return Result.failure(
            ErrorKind.LOCK_CONFLICT,
            f"Workspace locked by {holder.get('taskId')} (agent: {holder.get('agent')})",
            value=holder,
        )


class LockManager:
    """File-backed lock records keyed by repository path hash.

    Args:
        locks_dir: Directory for lock files and the audit log
        timeout_minutes: Lifetime of a fresh lock
        liveness: Check deciding whether a lock owner PID still exists
        clock: Returns the current aware datetime
    """

    def __init__(
        self,
        locks_dir: Path,
        timeout_minutes: int = config.DEFAULT_LOCK_TIMEOUT_MINUTES,
        liveness: LivenessCheck = pid_alive,
        clock: Callable[[], datetime] | None = None,
    ):
        self.locks_dir = Path(locks_dir)
        self.timeout_minutes = timeout_minutes
        self.liveness = liveness
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def for_store(cls, store: Store, **kwargs) -> "LockManager":
        """Lock manager using the store's trak dir and ``lock.timeout``."""
        kwargs.setdefault("timeout_minutes", config.get_lock_timeout(store.trak_dir))
        return cls(config.get_locks_dir(store.trak_dir), **kwargs)

    @property
    def audit_path(self) -> Path:
        return self.locks_dir / "audit.jsonl"

    def lock_path(self, repo_path: Path | str) -> Path:
        digest = hashlib.sha256(str(Path(repo_path).resolve()).encode()).hexdigest()[:12]
        return self.locks_dir / f"{digest}.lock"

    @contextmanager
    def _guard(self) -> Generator[None, None, None]:
        """Serialize read-check-write of lock files across processes."""
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.locks_dir / ".guard"), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    # -------------------------------------------------------------------------
    # Reading and pruning
    # -------------------------------------------------------------------------

    def _load(self, path: Path) -> dict[str, Any] | None:
        """Read a lock file, deleting it if corrupt, expired or orphaned."""
        if not path.exists():
            return None

        try:
            with open(path) as f:
                lock = json.load(f)
            expires_at = parse_timestamp(lock["expiresAt"])
            pid = int(lock["pid"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, OSError):
            self._prune(path, None, "corrupt")
            return None

        if expires_at < self.clock():
            self._prune(path, lock, "expired")
            return None

        if not self.liveness(pid):
            self._prune(path, lock, "dead_owner")
            return None

        return lock

    def _prune(self, path: Path, lock: dict[str, Any] | None, reason: str) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        logger.debug("Reclaimed lock %s (%s)", path.name, reason)
        self._audit("reclaim", lock, reason=reason)

    def read_lock(self, repo_path: Path | str) -> dict[str, Any] | None:
        """The live lock on ``repo_path``, or None."""
        with self._guard():
            return self._load(self.lock_path(repo_path))

    def list_locks(self) -> list[dict[str, Any]]:
        """Every live lock. Stale entries are deleted as a side effect."""
        if not self.locks_dir.exists():
            return []
        with self._guard():
            locks = []
            for path in sorted(self.locks_dir.glob("*.lock")):
                lock = self._load(path)
                if lock is not None:
                    locks.append(lock)
            return locks

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def acquire(
        self,
        repo_path: Path | str,
        task_id: str,
        agent: str = "unknown",
        pid: int | None = None,
    ) -> LockResult:
        """Try to lock ``repo_path`` for ``task_id``. Never waits.

        Re-acquiring for the same task succeeds with the existing lock. A
        live lock held by another task blocks and reports the holder.
        """
        path = self.lock_path(repo_path)
        with self._guard():
            existing = self._load(path)
            if existing is not None:
                if existing.get("taskId") == task_id:
                    return LockResult(acquired=True, lock=existing)
                self._audit("blocked", existing, reason=f"requested by {task_id}")
                return LockResult(acquired=False, holder=existing)

            now = self.clock()
            lock = {
                "taskId": task_id,
                "repoPath": str(Path(repo_path).resolve()),
                "timestamp": format_timestamp(now),
                "pid": pid if pid is not None else os.getpid(),
                "agent": agent,
                "expiresAt": format_timestamp(now + timedelta(minutes=self.timeout_minutes)),
            }
            self._write(path, lock)
            self._audit("acquire", lock)
            logger.debug("Lock acquired on %s by %s", lock["repoPath"], task_id)
            return LockResult(acquired=True, lock=lock)

    def release(self, repo_path: Path | str) -> bool:
        """Delete the lock file unconditionally. True if one existed."""
        path = self.lock_path(repo_path)
        with self._guard():
            try:
                with open(path) as f:
                    lock = json.load(f)
            except (OSError, json.JSONDecodeError):
                lock = None
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            self._audit("release", lock)
            return True

    def break_lock(self, repo_path: Path | str) -> dict[str, Any] | None:
        """Force-remove a live lock, returning what was removed."""
        path = self.lock_path(repo_path)
        with self._guard():
            lock = self._load(path)
            if lock is None:
                return None
            path.unlink(missing_ok=True)
            self._audit("break", lock)
            return lock

    def renew(self, repo_path: Path | str, task_id: str) -> dict[str, Any] | None:
        """Push out the expiry of a lock held by ``task_id``.

        Returns:
            The renewed lock, or None if the task does not hold it
        """
        path = self.lock_path(repo_path)
        with self._guard():
            lock = self._load(path)
            if lock is None or lock.get("taskId") != task_id:
                return None
            lock["expiresAt"] = format_timestamp(self.clock() + timedelta(minutes=self.timeout_minutes))
            self._write(path, lock)
            self._audit("renew", lock)
            return lock

    def check_conflict(self, repo_path: Path | str, task_id: str) -> dict[str, Any] | None:
        """The holder if another task holds ``repo_path``, else None."""
        lock = self.read_lock(repo_path)
        if lock is not None and lock.get("taskId") != task_id:
            return lock
        return None

    def _write(self, path: Path, lock: dict[str, Any]) -> None:
        """Write a lock file atomically (write to temp file, then rename)."""
        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".lock_", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(lock, f, indent=2)
            os.rename(temp_path, path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    # -------------------------------------------------------------------------
    # Audit log
    # -------------------------------------------------------------------------

    def _audit(self, action: str, lock: dict[str, Any] | None, reason: str = "") -> None:
        """Append a structured entry to the lock audit log."""
        entry = {
            "ts": format_timestamp(self.clock()),
            "action": action,
            "taskId": (lock or {}).get("taskId", ""),
            "repoPath": (lock or {}).get("repoPath", ""),
            "agent": (lock or {}).get("agent", ""),
            "pid": (lock or {}).get("pid"),
            "reason": reason,
        }
        try:
            with open(self.audit_path, "a") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            logger.warning("Could not write lock audit entry: %s", e)

    def read_audit_log(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent audit entries, oldest first."""
        if not self.audit_path.exists():
            return []
        entries = []
        with open(self.audit_path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return entries[-limit:]
