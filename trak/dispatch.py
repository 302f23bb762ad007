"""Dispatch ready tasks to the execution gateway.

Per task: claim (Store write, no network) -> build instruction -> spawn
-> journal the outcome. A failed spawn leaves the task claimed in wip;
the caller decides whether to reset it.

Batch dispatch pings the gateway once. Closing a task cascades to the
auto tasks it unblocks; if the gateway is down at that point an
``UNBLOCKED`` event line is emitted instead, for an outside supervisor.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import yaml

from . import config
from .db import Store
from .errors import ErrorKind, Result
from .gateway import Gateway, SpawnRequest
from .graph import in_backoff, ready_tasks, unblocked_dependents
from .tasks import close_task

logger = logging.getLogger(__name__)

# Receives one structured event line
EventSink = Callable[[str], None]

DEFAULT_AGENT = "dispatch"
GATEWAY_UNREACHABLE = "Gateway not reachable"


def print_event(line: str) -> None:
    print(line, flush=True)


def emit_unblocked(task: dict[str, Any], sink: EventSink = print_event) -> None:
    sink(f"TRAK_EVENT:UNBLOCKED:{task['id']}:{task['title']}")


def task_label(task_id: str) -> str:
    return f"trak-{task_id}"


# =============================================================================
# Instruction
# =============================================================================


def build_instruction(task: dict[str, Any], workdir: Path | str | None = None, worker: bool = False) -> str:
    """Work instruction text for a task.

    Args:
        task: Task dictionary
        workdir: Working directory to mention, if any
        worker: Instruction for an ephemeral worker, which closes the task
            itself instead of asking the agent to

    Returns:
        Instruction text; the same inputs always give the same text
    """
    lines = [f"## Task: {task['title']} ({task['id']})", ""]
    if task.get("description"):
        lines += [f"**Details:** {task['description']}", ""]
    lines.append(f"**Project:** {task.get('project') or 'default'}")
    if workdir is not None:
        lines.append(f"**Working directory:** {workdir}")

    lines += [
        "",
        "## Instructions",
        "1. Do the work described above",
        f'2. Log progress: `trak log {task["id"]} "what you did"`',
    ]
    if worker:
        lines += [
            "3. When done, exit cleanly; the task is closed for you",
            "4. Do NOT work on anything else",
            "5. If stuck, exit non-zero with an error message",
        ]
    else:
        lines += [
            f"3. When finished: `trak close {task['id']}`",
            f'4. If blocked: `trak log {task["id"]} "BLOCKED: reason"` and stop',
        ]
    return "\n".join(lines)


# =============================================================================
# Claim and reset
# =============================================================================


def claim_for_dispatch(store: Store, task_id: str, agent: str = DEFAULT_AGENT) -> Result:
    """Set the task to wip, assigned to ``agent``, before any gateway call."""
    with store.connection() as conn:
        task = store.get_task(task_id, conn=conn)
        if task is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"Task not found: {task_id}")
        if task["status"] in config.TERMINAL_STATUSES:
            return Result.failure(
                ErrorKind.INVALID_TRANSITION, f"Task {task_id} is already {task['status']}"
            )

        task = store.update_task(task_id, conn=conn, status="wip", assigned_to=agent)
        store.append_journal(task_id, f"Claimed for dispatch (agent: {agent})", author="system", conn=conn)

    store.after_write()
    return Result.success(task)


def reset_task(store: Store, task_id: str, reason: str, author: str = "system") -> Result:
    """Put a claimed task back to open, unassigned, journaling why."""
    with store.connection() as conn:
        task = store.get_task(task_id, conn=conn)
        if task is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"Task not found: {task_id}")
        if task["status"] in config.TERMINAL_STATUSES:
            return Result.failure(
                ErrorKind.INVALID_TRANSITION, f"Task {task_id} is already {task['status']}"
            )
        task = store.update_task(task_id, conn=conn, status="open", assigned_to="")
        store.append_journal(task_id, f"{reason}; task reset to open", author=author, conn=conn)

    store.after_write()
    return Result.success(task)


# =============================================================================
# Dispatch
# =============================================================================


@dataclass
class DispatchResult:
    task_id: str
    title: str = ""
    label: str = ""
    ok: bool = False
    session_key: str | None = None
    error: str | None = None
    kind: ErrorKind | None = None

    def as_result(self) -> Result:
        if self.ok:
            return Result.success(self)
        return Result.failure(self.kind or ErrorKind.GATEWAY_ERROR, self.error or "", value=self)


def _unreachable(task_id: str, title: str = "") -> DispatchResult:
    return DispatchResult(
        task_id=task_id,
        title=title,
        label=task_label(task_id),
        error=GATEWAY_UNREACHABLE,
        kind=ErrorKind.GATEWAY_UNREACHABLE,
    )


def dispatch_task(
    store: Store,
    task_id: str,
    gateway: Gateway,
    agent: str = DEFAULT_AGENT,
    model: str | None = None,
    timeout: int | str | None = None,
    cleanup: str = "delete",
    workdir: Path | str | None = None,
    preflight: bool = True,
) -> DispatchResult:
    """Claim one task and hand it to the gateway.

    Args:
        store: Store handle
        task_id: Task to dispatch
        gateway: Execution gateway
        agent: Name recorded as assignee
        model: Model override; falls back to ``dispatch.model``
        timeout: Per-call timeout override (seconds or ``30m`` style)
        cleanup: Session cleanup policy passed to the gateway
        workdir: Working directory named in the instruction
        preflight: Ping the gateway before claiming

    Returns:
        DispatchResult; never raises for gateway problems
    """
    task = store.get_task(task_id)
    if task is None:
        return DispatchResult(task_id=task_id, error=f"Task not found: {task_id}", kind=ErrorKind.NOT_FOUND)

    if preflight and not gateway.ping():
        return _unreachable(task_id, task["title"])

    # Settings are resolved before the claim so a bad value never strands a wip task
    try:
        timeout_seconds = config.resolve_timeout(timeout, task, config.get_dispatch_timeout(store.trak_dir))
        model = model or store.config_value("dispatch.model")
    except (ValueError, yaml.YAMLError) as e:
        logger.warning("Not dispatching %s: %s", task_id, e)
        return DispatchResult(
            task_id=task_id,
            title=task["title"],
            error=f"Invalid dispatch settings: {e}",
            kind=ErrorKind.CONFIG_ERROR,
        )

    claimed = claim_for_dispatch(store, task_id, agent)
    if not claimed.ok:
        return DispatchResult(task_id=task_id, title=task["title"], error=claimed.message, kind=claimed.kind)
    task = claimed.value

    label = task_label(task_id)
    request = SpawnRequest(
        instruction=build_instruction(task, workdir),
        label=label,
        cleanup=cleanup,
        timeout_seconds=timeout_seconds,
        model=model,
    )

    result = DispatchResult(task_id=task_id, title=task["title"], label=label)
    try:
        response = gateway.spawn(request)
    except Exception as e:
        logger.exception("Gateway spawn raised for %s", task_id)
        store.append_journal(task_id, f"Dispatch error: {e}", author="system")
        result.error = str(e)
        result.kind = ErrorKind.GATEWAY_ERROR
    else:
        if response.ok:
            store.update_task(task_id, agent_session=response.session_key or "")
            store.append_journal(
                task_id,
                f"Dispatched: spawned sub-agent (label: {label}, session: {response.session_key or 'pending'})",
                author="system",
            )
            result.ok = True
            result.session_key = response.session_key
        else:
            store.append_journal(task_id, f"Dispatch failed: {response.error}", author="system")
            result.error = response.error
            result.kind = ErrorKind.GATEWAY_ERROR

    store.after_write()
    logger.info("Dispatch %s: %s", task_id, "ok" if result.ok else result.error)
    return result


def dispatch_batch(
    store: Store,
    task_ids: list[str],
    gateway: Gateway,
    **options: Any,
) -> list[DispatchResult]:
    """Dispatch tasks one after another after a single reachability ping.

    If the gateway is down, every task fails with the same reason and no
    task is claimed.
    """
    if not task_ids:
        return []

    if not gateway.ping():
        logger.warning("Gateway unreachable, skipping batch of %d", len(task_ids))
        results = []
        for task_id in task_ids:
            task = store.get_task(task_id)
            results.append(_unreachable(task_id, task["title"] if task else ""))
        return results

    return [dispatch_task(store, task_id, gateway, preflight=False, **options) for task_id in task_ids]


def dispatch_ready(
    store: Store,
    gateway: Gateway,
    project: str | None = None,
    limit: int | None = None,
    now: datetime | None = None,
    **options: Any,
) -> list[DispatchResult]:
    """Dispatch open ready tasks, highest priority first.

    Tasks already in wip are taken, and tasks waiting out a retry backoff
    are left for later.
    """
    now = now or datetime.now(timezone.utc)
    candidates = [
        task["id"]
        for task in ready_tasks(store, project)
        if task["status"] == "open" and not in_backoff(task, now)
    ]
    if limit is not None:
        candidates = candidates[:limit]
    return dispatch_batch(store, candidates, gateway, **options)


# =============================================================================
# Cascade
# =============================================================================


def auto_dispatch_unblocked(
    store: Store,
    closed_id: str,
    gateway: Gateway | None,
    sink: EventSink = print_event,
    **options: Any,
) -> list[DispatchResult]:
    """Dispatch auto tasks whose last open dependency was ``closed_id``.

    Tasks are dispatched sequentially. With no gateway, or an unreachable
    one, an UNBLOCKED event is emitted per task and nothing is dispatched.
    """
    candidates = unblocked_dependents(store, closed_id)
    if not candidates:
        return []

    if gateway is None or not gateway.ping():
        for task in candidates:
            emit_unblocked(task, sink)
        logger.info("Gateway unavailable; emitted %d unblocked events", len(candidates))
        return []

    return [dispatch_task(store, task["id"], gateway, preflight=False, **options) for task in candidates]


def close_and_cascade(
    store: Store,
    task_id: str,
    gateway: Gateway | None = None,
    sink: EventSink = print_event,
    author: str = "system",
    **options: Any,
) -> Result:
    """Close a task, then dispatch whatever it unblocked.

    Returns:
        Result whose value has ``task`` and ``dispatched`` (DispatchResults)
    """
    closed = close_task(store, task_id, author=author)
    if not closed.ok:
        return closed

    dispatched = auto_dispatch_unblocked(store, task_id, gateway, sink=sink, **options)
    return Result.success({"task": closed.value, "dispatched": dispatched})
