"""Task lifecycle operations.

Each public function validates, writes the Store in one transaction,
journals what happened, rewrites the portable log and returns a
``Result``. Missing tasks and illegal state changes come back as failed
results rather than exceptions so batch callers can keep going.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from . import config
from .db import Store, format_timestamp, utcnow
from .errors import ErrorKind, Result
from .graph import is_ready
from .locks import LockManager

logger = logging.getLogger(__name__)

# Allowed status changes; moving back to open is always allowed
TRANSITIONS: dict[str, set[str]] = {
    "open": {"wip", "blocked", "review", "done", "failed"},
    "wip": {"open", "blocked", "review", "done", "failed"},
    "blocked": {"open", "wip", "review", "done", "failed"},
    "review": {"open", "wip", "blocked", "done", "failed"},
    "done": {"open", "archived"},
    "archived": {"open"},
    "failed": {"open"},
}


def _not_found(task_id: str) -> Result:
    return Result.failure(ErrorKind.NOT_FOUND, f"Task not found: {task_id}")


def _invalid(message: str) -> Result:
    return Result.failure(ErrorKind.INVALID_TRANSITION, message)


# =============================================================================
# Creation and dependencies
# =============================================================================


def create_task(store: Store, title: str, author: str = "human", **fields: Any) -> dict[str, Any]:
    """Create a task and export.

    Args:
        store: Store handle
        title: Task title
        author: Journal author of the creation entry
        **fields: Other task columns (priority, project, autonomy, ...)

    Returns:
        Created task as dictionary
    """
    task = store.insert_task(title, author=author, **fields)
    store.after_write()
    return task


def add_dependency(store: Store, child_id: str, parent_id: str) -> Result:
    """Make ``child_id`` wait on ``parent_id``.

    A duplicate edge is a successful no-op (``value`` False).
    """
    if child_id == parent_id:
        return _invalid(f"A task cannot depend on itself: {child_id}")

    with store.connection() as conn:
        child = store.get_task(child_id, conn=conn)
        parent = store.get_task(parent_id, conn=conn)
        if child is None:
            return _not_found(child_id)
        if parent is None:
            return _not_found(parent_id)

        if not store.insert_dependency(child_id, parent_id, conn=conn):
            return Result.success(False)

        store.append_journal(
            child_id, f"Added dependency on {parent_id} ({parent['title']})", author="system", conn=conn
        )
        store.update_task(child_id, conn=conn, updated_at=utcnow())

    store.after_write()
    return Result.success(True)


def remove_dependency(store: Store, child_id: str, parent_id: str) -> Result:
    with store.connection() as conn:
        if not store.delete_dependency(child_id, parent_id, conn=conn):
            return Result.failure(
                ErrorKind.NOT_FOUND, f"No dependency {child_id} -> {parent_id}"
            )
        store.append_journal(child_id, f"Removed dependency on {parent_id}", author="system", conn=conn)
        store.update_task(child_id, conn=conn, updated_at=utcnow())

    store.after_write()
    return Result.success(True)


# =============================================================================
# Journal and accounting
# =============================================================================


def log_work(
    store: Store,
    task_id: str,
    entry: str,
    author: str = "human",
    cost_usd: float = 0.0,
    tokens: int = 0,
    tokens_in: int = 0,
    tokens_out: int = 0,
    model: str | None = None,
    duration_seconds: float = 0.0,
) -> Result:
    """Append a journal entry and add any reported usage to the task.

    Accounting fields only ever grow; ``model`` replaces model_used.

    Returns:
        Result with the stored journal entry
    """
    with store.connection() as conn:
        if store.get_task(task_id, conn=conn) is None:
            return _not_found(task_id)

        journal_entry = store.append_journal(task_id, entry, author=author, conn=conn)
        conn.execute(
            """
            UPDATE tasks SET
                cost_usd = cost_usd + ?,
                tokens_used = tokens_used + ?,
                tokens_in = tokens_in + ?,
                tokens_out = tokens_out + ?,
                duration_seconds = duration_seconds + ?,
                model_used = COALESCE(?, model_used),
                updated_at = ?
            WHERE id = ?
            """,
            (cost_usd, tokens, tokens_in, tokens_out, duration_seconds, model or None, utcnow(), task_id),
        )

    store.after_write()
    return Result.success(journal_entry)


# =============================================================================
# Status
# =============================================================================


def set_status(store: Store, task_id: str, status: str, author: str = "system") -> Result:
    """Move a task to ``status`` if the state machine allows it."""
    if status not in config.STATUSES:
        return _invalid(f"Unknown status: {status}")

    with store.connection() as conn:
        task = store.get_task(task_id, conn=conn)
        if task is None:
            return _not_found(task_id)

        old = task["status"]
        if old == status:
            return Result.success(task)
        if status not in TRANSITIONS.get(old, set()):
            return _invalid(f"Cannot move {task_id} from {old} to {status}")

        task = store.update_task(task_id, conn=conn, status=status)
        store.append_journal(task_id, f"Status: {old} → {status}", author=author, conn=conn)

    store.after_write()
    return Result.success(task)


def close_task(
    store: Store,
    task_id: str,
    author: str = "system",
    cost_usd: float = 0.0,
    tokens: int = 0,
) -> Result:
    """Mark a task done, adding any final usage.

    Dispatching dependents that this unblocks is left to the caller
    (see ``trak.dispatch.close_and_cascade``).
    """
    with store.connection() as conn:
        task = store.get_task(task_id, conn=conn)
        if task is None:
            return _not_found(task_id)
        if task["status"] in config.TERMINAL_STATUSES:
            return _invalid(f"Task {task_id} is already {task['status']}")

        conn.execute(
            """
            UPDATE tasks SET
                status = 'done',
                cost_usd = cost_usd + ?,
                tokens_used = tokens_used + ?,
                updated_at = ?
            WHERE id = ?
            """,
            (cost_usd, tokens, utcnow(), task_id),
        )
        store.append_journal(task_id, f"Closed (was: {task['status']})", author=author, conn=conn)
        task = store.get_task(task_id, conn=conn)

    logger.debug("Closed %s", task_id)
    store.after_write()
    return Result.success(task)


def archive_task(store: Store, task_id: str) -> Result:
    task = store.get_task(task_id)
    if task is None:
        return _not_found(task_id)
    if task["status"] != "done":
        return _invalid(f"Only done tasks can be archived ({task_id} is {task['status']})")
    return set_status(store, task_id, "archived")


# =============================================================================
# Assignment and claims
# =============================================================================


def _project_lock(locks: LockManager, task: dict[str, Any], agent: str) -> dict[str, Any] | None:
    """A live lock by another agent on a repository matching the task's project."""
    if not task.get("project"):
        return None
    for lock in locks.list_locks():
        if lock.get("agent") == agent or lock.get("taskId") == task["id"]:
            continue
        if task["project"].lower() in str(lock.get("repoPath", "")).lower():
            return lock
    return None


def assign_task(
    store: Store,
    task_id: str,
    agent: str,
    locks: LockManager | None = None,
) -> Result:
    """Assign a task to an agent, moving open/review work to wip.

    When a lock manager is given, a workspace lock held by another agent on
    the task's project is reported. With ``lock.enforce`` set the
    assignment is refused; otherwise it goes ahead with a warning message.
    """
    task = store.get_task(task_id)
    if task is None:
        return _not_found(task_id)

    warning = ""
    if locks is not None:
        holder = _project_lock(locks, task, agent)
        if holder is not None:
            enforce = store.config_value("lock.enforce", False)
            if enforce is True or enforce == "block":
                return Result.failure(
                    ErrorKind.LOCK_CONFLICT,
                    f"Project {task['project']!r} is locked by {holder['taskId']} (agent: {holder['agent']})",
                    value=holder,
                )
            warning = f"Project {task['project']!r} has an active lock by {holder['agent']} (task {holder['taskId']})"
            logger.warning(warning)

    old = task["status"]
    new = "wip" if old in ("open", "review") else old

    with store.connection() as conn:
        task = store.update_task(task_id, conn=conn, assigned_to=agent, status=new)
        store.append_journal(task_id, f"{agent} assigned to this task", author="system", conn=conn)
        if new != old:
            store.append_journal(task_id, f"Status: {old} → {new}", author="system", conn=conn)

    store.after_write()
    result = Result.success(task)
    result.message = warning
    return result


def claim_task(store: Store, task_id: str, agent: str, model: str = "") -> Result:
    """Record that ``agent`` is working the task.

    A claim by the same agent is kept as-is. A claim by another agent is
    released and the takeover journaled.

    Returns:
        Result with the active claim
    """
    with store.connection() as conn:
        if store.get_task(task_id, conn=conn) is None:
            return _not_found(task_id)

        existing = store.get_active_claim(task_id, conn=conn)
        if existing is not None and existing["agent"] == agent:
            return Result.success(existing)

        entry = f"Claimed by {agent}" + (f" (model: {model})" if model else "")
        if existing is not None:
            store.mark_claim_released(existing["id"], conn=conn)
            entry += f", taking over from {existing['agent']}"

        store.insert_claim(task_id, agent, model=model, conn=conn)
        store.append_journal(task_id, entry, author="system", conn=conn)
        claim = store.get_active_claim(task_id, conn=conn)

    store.after_write()
    return Result.success(claim)


def release_claim(store: Store, task_id: str) -> Result:
    with store.connection() as conn:
        if store.get_task(task_id, conn=conn) is None:
            return _not_found(task_id)

        active = store.get_active_claim(task_id, conn=conn)
        if active is None:
            return _invalid(f"No active claim on {task_id}")

        store.mark_claim_released(active["id"], conn=conn)
        store.append_journal(task_id, f"Claim released by {active['agent']}", author="system", conn=conn)

    store.after_write()
    return Result.success(active)


# =============================================================================
# Failure and retry
# =============================================================================


def retry_delay(attempt: int) -> timedelta:
    """Backoff before retry number ``attempt``: 1, 2, 4, 8 ... minutes."""
    return timedelta(minutes=2 ** max(attempt - 1, 0))


def fail_task(
    store: Store,
    task_id: str,
    reason: str = "No reason provided",
    now: datetime | None = None,
) -> Result:
    """Record a failed attempt.

    Below ``max_retries`` the task goes back to open with a ``retry_after``
    backoff; at the limit it becomes permanently ``failed``.

    Returns:
        Result whose value has requeued, retry_count, max_retries, task
    """
    now = now or datetime.now(timezone.utc)

    with store.connection() as conn:
        task = store.get_task(task_id, conn=conn)
        if task is None:
            return _not_found(task_id)
        if task["status"] in config.TERMINAL_STATUSES:
            return _invalid(f"Task {task_id} is already {task['status']}")

        count = (task["retry_count"] or 0) + 1
        max_retries = task["max_retries"] if task["max_retries"] is not None else config.DEFAULT_MAX_RETRIES
        requeued = count < max_retries

        if requeued:
            retry_after = format_timestamp(now + retry_delay(count))
            task = store.update_task(
                task_id,
                conn=conn,
                status="open",
                retry_count=count,
                last_failure_reason=reason,
                retry_after=retry_after,
            )
            entry = f"Failed (attempt {count}/{max_retries}): {reason}. Re-queued, retry after {retry_after}"
        else:
            task = store.update_task(
                task_id,
                conn=conn,
                status="failed",
                retry_count=count,
                last_failure_reason=reason,
                retry_after=None,
            )
            entry = f"Permanently failed after {count} attempts: {reason}"

        store.append_journal(task_id, entry, author="system", conn=conn)

    store.after_write()
    return Result.success({
        "requeued": requeued,
        "retry_count": count,
        "max_retries": max_retries,
        "task": task,
    })


def retry_task(store: Store, task_id: str, reset_count: bool = True) -> Result:
    """Manually put a failed or stuck task back in the queue."""
    with store.connection() as conn:
        task = store.get_task(task_id, conn=conn)
        if task is None:
            return _not_found(task_id)
        if task["status"] in config.TERMINAL_STATUSES:
            return _invalid(f"Task {task_id} is already {task['status']}, nothing to retry")

        fields: dict[str, Any] = {"status": "open", "retry_after": None}
        if reset_count:
            fields["retry_count"] = 0
        task = store.update_task(task_id, conn=conn, **fields)
        store.append_journal(
            task_id,
            "Manually re-queued" + (" (retry count reset)" if reset_count else ""),
            author="system",
            conn=conn,
        )

    store.after_write()
    return Result.success(task)


# =============================================================================
# Convoys and epics
# =============================================================================


def create_convoy(store: Store, name: str) -> dict[str, Any]:
    return store.insert_convoy(name)


def add_to_convoy(store: Store, convoy_id: str, task_ids: list[str]) -> Result:
    """Put tasks in a convoy. Nothing changes if any id is unknown."""
    with store.connection() as conn:
        if store.get_convoy(convoy_id, conn=conn) is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"Convoy not found: {convoy_id}")
        for task_id in task_ids:
            if store.get_task(task_id, conn=conn) is None:
                return _not_found(task_id)
        for task_id in task_ids:
            store.update_task(task_id, conn=conn, convoy=convoy_id)
            store.append_journal(task_id, f"Added to convoy {convoy_id}", author="system", conn=conn)

    store.after_write()
    return Result.success(len(task_ids))


def convoy_tasks(store: Store, convoy_id: str) -> list[dict[str, Any]]:
    return store.list_tasks(convoy=convoy_id, include_archived=True)


def _progress(tasks: list[dict[str, Any]]) -> dict[str, Any]:
    by_status: dict[str, int] = {}
    for task in tasks:
        by_status[task["status"]] = by_status.get(task["status"], 0) + 1
    done = sum(by_status.get(s, 0) for s in config.TERMINAL_STATUSES)
    total = len(tasks)
    return {
        "total": total,
        "done": done,
        "percent": round(100 * done / total) if total else 0,
        "by_status": by_status,
    }


def convoy_progress(store: Store, convoy_id: str) -> Result:
    """Completion summary for a convoy, including which members are ready."""
    convoy = store.get_convoy(convoy_id)
    if convoy is None:
        return Result.failure(ErrorKind.NOT_FOUND, f"Convoy not found: {convoy_id}")

    tasks = convoy_tasks(store, convoy_id)
    progress = _progress(tasks)
    progress["convoy"] = convoy
    progress["ready"] = [t["id"] for t in tasks if is_ready(store, t["id"])]
    return Result.success(progress)


def epic_children(store: Store, epic_id: str) -> list[dict[str, Any]]:
    with store.connection() as conn:
        cursor = conn.execute(
            "SELECT * FROM tasks WHERE epic_id = ? ORDER BY created_at ASC",
            (epic_id,),
        )
        return [dict(row) for row in cursor.fetchall()]


def epic_progress(store: Store, epic_id: str) -> Result:
    """Roll an epic's children up into aggregate progress."""
    epic = store.get_task(epic_id)
    if epic is None:
        return _not_found(epic_id)
    progress = _progress(epic_children(store, epic_id))
    progress["epic"] = epic
    return Result.success(progress)


# =============================================================================
# Staleness
# =============================================================================


def stale_tasks(
    store: Store,
    days: int = config.DEFAULT_STALE_DAYS,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Unfinished tasks with no activity for more than ``days`` days, oldest first."""
    cutoff = format_timestamp((now or datetime.now(timezone.utc)) - timedelta(days=days))
    placeholders = ", ".join("?" for _ in config.TERMINAL_STATUSES)
    with store.connection() as conn:
        cursor = conn.execute(
            f"""
            SELECT * FROM tasks
            WHERE status NOT IN ({placeholders}) AND updated_at < ?
            ORDER BY updated_at ASC
            """,
            [*config.TERMINAL_STATUSES, cutoff],
        )
        return [dict(row) for row in cursor.fetchall()]


# =============================================================================
# Mailbox
# =============================================================================


def send_mail(
    store: Store,
    to_agent: str,
    message: str,
    task_id: str | None = None,
    from_agent: str | None = None,
) -> Result:
    """Leave a message for another agent, or for ``all``.

    Mail stays in the local Store; it is not part of the portable log.

    Returns:
        Result carrying the stored message
    """
    if not message.strip():
        return _invalid("Message must not be empty")
    if task_id and store.get_task(task_id) is None:
        return _not_found(task_id)

    sender = from_agent or config.get_agent_name()
    stored = store.insert_message(sender, to_agent or config.BROADCAST_AGENT, message, task_id=task_id or None)
    logger.debug("Mail #%s from %s to %s", stored["id"], sender, stored["to_agent"])
    return Result.success(stored)


def check_mail(store: Store, agent: str | None = None) -> list[dict[str, Any]]:
    """Unread messages for ``agent`` (default: this process's agent), newest first."""
    return store.get_messages(agent or config.get_agent_name(), unread_only=True)


def list_mail(
    store: Store,
    agent: str | None = None,
    include_all: bool = False,
    limit: int = config.MAIL_LIST_LIMIT,
) -> list[dict[str, Any]]:
    """Recent messages for ``agent``, read or not; every agent's with ``include_all``."""
    recipient = None if include_all else (agent or config.get_agent_name())
    return store.get_messages(recipient, limit=limit)


def mark_read(store: Store, message_id: int) -> Result:
    if not store.mark_message_read(message_id):
        return Result.failure(ErrorKind.NOT_FOUND, f"Message not found: {message_id}")
    return Result.success(message_id)
