"""Readiness, heat scoring and traversal over the dependency graph.

Edges are queried per node and nothing materialises the whole graph.
Every walk carries a visited set, so cyclic data terminates with a marker
node instead of recursing forever.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from . import config
from .db import Store, parse_timestamp

logger = logging.getLogger(__name__)


def _sql_list(values: list[str]) -> str:
    return ", ".join(f"'{v}'" for v in values)


# Readiness for the task aliased as ``t``
READY_CONDITION = f"""
    t.status IN ({_sql_list(config.READY_STATUSES)})
    AND t.autonomy = 'auto'
    AND COALESCE(t.blocked_by, '') = ''
    AND (t.budget_usd IS NULL OR t.cost_usd <= t.budget_usd)
    AND NOT EXISTS (
        SELECT 1 FROM dependencies d
        JOIN tasks p ON p.id = d.parent_id
        WHERE d.child_id = t.id
          AND p.status NOT IN ({_sql_list(config.TERMINAL_STATUSES)})
    )
"""


# =============================================================================
# Readiness
# =============================================================================


def is_ready(store: Store, task_id: str) -> bool:
    """Check whether a task is eligible for unattended work.

    Ready means status open/wip, autonomy auto, no blocked_by override,
    budget not exceeded, and every direct parent done or archived.
    """
    with store.connection() as conn:
        cursor = conn.execute(
            f"SELECT 1 FROM tasks t WHERE t.id = ? AND {READY_CONDITION}",
            (task_id,),
        )
        return cursor.fetchone() is not None


def ready_tasks(store: Store, project: str | None = None) -> list[dict[str, Any]]:
    """All ready tasks, ordered by priority then creation time."""
    params: list[Any] = []
    project_clause = ""
    if project:
        project_clause = "AND t.project = ?"
        params.append(project)

    with store.connection() as conn:
        cursor = conn.execute(
            f"""
            SELECT t.* FROM tasks t
            WHERE {READY_CONDITION} {project_clause}
            ORDER BY t.priority ASC, t.created_at ASC
            """,
            params,
        )
        return [dict(row) for row in cursor.fetchall()]


def in_backoff(task: dict[str, Any], now: datetime | None = None) -> bool:
    """True while a requeued task is waiting for its retry_after time."""
    retry_after = task.get("retry_after")
    if not retry_after:
        return False
    return parse_timestamp(retry_after) > (now or datetime.now(timezone.utc))


def next_task(
    store: Store,
    project: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    """Highest-priority ready task that is not waiting out a retry backoff."""
    now = now or datetime.now(timezone.utc)
    for task in ready_tasks(store, project):
        if not in_backoff(task, now):
            return task
    return None


def unblocked_dependents(store: Store, closed_id: str) -> list[dict[str, Any]]:
    """Auto tasks depending directly on ``closed_id`` whose deps are now all terminal.

    Tasks already in wip are left out; they have been picked up already.
    """
    with store.connection() as conn:
        cursor = conn.execute(
            f"""
            SELECT t.* FROM tasks t
            JOIN dependencies edge ON edge.child_id = t.id
            WHERE edge.parent_id = ?
              AND t.status IN ('open', 'blocked')
              AND t.autonomy = 'auto'
              AND COALESCE(t.blocked_by, '') = ''
              AND (t.budget_usd IS NULL OR t.cost_usd <= t.budget_usd)
              AND NOT EXISTS (
                  SELECT 1 FROM dependencies d
                  JOIN tasks p ON p.id = d.parent_id
                  WHERE d.child_id = t.id
                    AND p.status NOT IN ({_sql_list(config.TERMINAL_STATUSES)})
              )
            ORDER BY t.priority ASC, t.created_at ASC
            """,
            (closed_id,),
        )
        return [dict(row) for row in cursor.fetchall()]


# =============================================================================
# Neighbours
# =============================================================================


def get_parents(store: Store, task_id: str) -> list[dict[str, Any]]:
    """Tasks that ``task_id`` depends on."""
    with store.connection() as conn:
        cursor = conn.execute(
            """
            SELECT t.* FROM tasks t
            JOIN dependencies d ON d.parent_id = t.id
            WHERE d.child_id = ?
            ORDER BY t.created_at ASC
            """,
            (task_id,),
        )
        return [dict(row) for row in cursor.fetchall()]


def get_children(store: Store, task_id: str) -> list[dict[str, Any]]:
    """Tasks that depend on ``task_id``."""
    with store.connection() as conn:
        cursor = conn.execute(
            """
            SELECT t.* FROM tasks t
            JOIN dependencies d ON d.child_id = t.id
            WHERE d.parent_id = ?
            ORDER BY t.created_at ASC
            """,
            (task_id,),
        )
        return [dict(row) for row in cursor.fetchall()]


def count_dependents(store: Store, task_id: str) -> int:
    with store.connection() as conn:
        cursor = conn.execute(
            "SELECT COUNT(*) AS cnt FROM dependencies WHERE parent_id = ?",
            (task_id,),
        )
        return cursor.fetchone()["cnt"]


# =============================================================================
# Heat
# =============================================================================


def heat(store: Store, task: dict[str, Any], now: datetime | None = None) -> int:
    """Attention score for a task.

    ``2 * dependents + min(age_weeks, 3) + recency + priority``, where the
    age term only applies to unfinished tasks and recency is 2 for a journal
    entry under a day old, 1 under three days. Blocked tasks lose 2,
    floored at 0.

    Args:
        store: Store handle
        task: Task dictionary (needs id, status, priority, created_at)
        now: Reference time, defaults to the current UTC time

    Returns:
        Integer heat score
    """
    now = now or datetime.now(timezone.utc)
    score = count_dependents(store, task["id"]) * 2

    if task["status"] not in config.TERMINAL_STATUSES:
        age_days = (now - parse_timestamp(task["created_at"])).total_seconds() / 86400
        score += min(int(age_days // 7), 3)

    with store.connection() as conn:
        cursor = conn.execute(
            "SELECT timestamp FROM task_log WHERE task_id = ? ORDER BY timestamp DESC LIMIT 1",
            (task["id"],),
        )
        last_log = cursor.fetchone()

    if last_log:
        log_age_days = (now - parse_timestamp(last_log["timestamp"])).total_seconds() / 86400
        if log_age_days < 1:
            score += 2
        elif log_age_days < 3:
            score += 1

    score += task["priority"]

    if task["status"] == "blocked":
        score = max(score - 2, 0)

    return score


def heat_ranking(
    store: Store,
    project: str | None = None,
    now: datetime | None = None,
) -> list[tuple[dict[str, Any], int]]:
    """Unfinished tasks with their heat, hottest first.

    Equal scores keep insertion order.
    """
    params: list[Any] = []
    project_clause = ""
    if project:
        project_clause = "AND project = ?"
        params.append(project)

    with store.connection() as conn:
        cursor = conn.execute(
            f"""
            SELECT * FROM tasks
            WHERE status NOT IN ({_sql_list(config.TERMINAL_STATUSES)}) {project_clause}
            ORDER BY created_at ASC, rowid ASC
            """,
            params,
        )
        tasks = [dict(row) for row in cursor.fetchall()]

    scored = [(task, heat(store, task, now)) for task in tasks]
    # sorted() is stable, so ties stay in insertion order
    return sorted(scored, key=lambda pair: pair[1], reverse=True)


# =============================================================================
# Traversal
# =============================================================================


@dataclass
class TraceNode:
    """One node of a dependency walk.

    ``cycle`` marks a node already on the current path; ``repeated`` marks a
    node reached earlier through another branch. Neither is expanded.
    """
    task_id: str
    title: str = ""
    status: str = ""
    children: list["TraceNode"] = field(default_factory=list)
    cycle: bool = False
    repeated: bool = False
    truncated: bool = False

    def walk(self):
        """Yield this node and all nodes below it, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()

    def has_cycle(self) -> bool:
        return any(node.cycle for node in self.walk())


def _trace(
    store: Store,
    task: dict[str, Any],
    neighbours,
    visited: set[str],
    path: set[str],
    depth: int,
    max_depth: int | None,
) -> TraceNode:
    node = TraceNode(task_id=task["id"], title=task["title"], status=task["status"])
    visited.add(task["id"])

    if max_depth is not None and depth >= max_depth:
        node.truncated = bool(neighbours(store, task["id"]))
        return node

    path.add(task["id"])
    for nxt in neighbours(store, task["id"]):
        if nxt["id"] in path:
            node.children.append(
                TraceNode(task_id=nxt["id"], title=nxt["title"], status=nxt["status"], cycle=True)
            )
        elif nxt["id"] in visited:
            node.children.append(
                TraceNode(task_id=nxt["id"], title=nxt["title"], status=nxt["status"], repeated=True)
            )
        else:
            node.children.append(
                _trace(store, nxt, neighbours, visited, path, depth + 1, max_depth)
            )
    path.discard(task["id"])
    return node


def trace_ancestors(store: Store, task_id: str, max_depth: int | None = None) -> TraceNode | None:
    """Walk backwards: what does this task wait on, transitively.

    Returns:
        Root TraceNode for the task, or None if it does not exist
    """
    task = store.get_task(task_id)
    if task is None:
        return None
    return _trace(store, task, get_parents, set(), set(), 0, max_depth)


def trace_descendants(store: Store, task_id: str, max_depth: int | None = None) -> TraceNode | None:
    """Walk forwards: what is waiting on this task, transitively."""
    task = store.get_task(task_id)
    if task is None:
        return None
    return _trace(store, task, get_children, set(), set(), 0, max_depth)


def find_roots(store: Store, task_id: str, max_depth: int = 10) -> list[str]:
    """Ids of the parentless ancestors reached by walking up from ``task_id``.

    A task without parents is its own root. Walks at most ``max_depth``
    levels; nodes at the depth limit are reported as roots.
    """
    roots: list[str] = []
    visited: set[str] = set()
    frontier = [(task_id, 0)]

    while frontier:
        current, depth = frontier.pop(0)
        if current in visited:
            continue
        visited.add(current)

        parents = get_parents(store, current)
        if not parents or depth >= max_depth:
            if current not in roots:
                roots.append(current)
            continue

        for parent in parents:
            if parent["id"] not in visited:
                frontier.append((parent["id"], depth + 1))

    return roots
