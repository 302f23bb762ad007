"""Goal decomposition.

A free-text goal is matched against a small set of step templates and
turned into a convoy of auto tasks. Steps are independent unless
``chain`` is set, in which case each step waits on the one before it.
"""

import logging
import re
from typing import Any

from .db import Store, generate_id
from .errors import ErrorKind, Result

logger = logging.getLogger(__name__)

# (pattern, steps); first match wins
TEMPLATES: list[tuple[re.Pattern, list[str]]] = [
    (
        re.compile(r"landing\s*page", re.I),
        ["Design layout and wireframes", "Write copy and content", "Build the page",
         "Test and review", "Deploy to production"],
    ),
    (
        re.compile(r"fix\s*bug|bugfix|debug", re.I),
        ["Reproduce the bug", "Identify root cause", "Implement fix", "Test the fix"],
    ),
    (
        re.compile(r"write\s*(an?\s+)?article|blog\s*post|write\s*up", re.I),
        ["Research topic and gather sources", "Create outline", "Write first draft",
         "Edit and revise", "Publish"],
    ),
    (
        re.compile(r"api|endpoint|backend|server", re.I),
        ["Design API schema/routes", "Implement endpoints", "Add validation and error handling",
         "Write tests", "Document the API"],
    ),
    (
        re.compile(r"test|testing", re.I),
        ["Identify test scenarios", "Write unit tests", "Write integration tests",
         "Run full test suite and fix failures"],
    ),
    (
        re.compile(r"deploy|release|ship", re.I),
        ["Pre-deployment checks", "Update configuration", "Deploy to staging",
         "Verify staging", "Deploy to production"],
    ),
    (
        re.compile(r"refactor|clean\s*up|reorganize", re.I),
        ["Audit current code", "Plan refactoring approach", "Implement refactoring",
         "Test for regressions"],
    ),
    (
        re.compile(r"design|ui|ux|interface", re.I),
        ["Research and gather inspiration", "Create wireframes", "Design high-fidelity mockups",
         "Review and iterate", "Hand off to development"],
    ),
    (
        re.compile(r"migrate|migration", re.I),
        ["Analyze current state", "Plan migration strategy", "Implement migration",
         "Validate data integrity", "Switch over"],
    ),
]

DEFAULT_STEPS = ["Plan approach", "Implement", "Test", "Document"]

GOAL_PREVIEW_CHARS = 40


def template_steps(goal: str) -> list[str]:
    """Step titles for the first template matching ``goal``."""
    for pattern, steps in TEMPLATES:
        if pattern.search(goal):
            return list(steps)
    return list(DEFAULT_STEPS)


def step_titles(goal: str, steps: list[str]) -> list[str]:
    """Suffix each step with a short form of the goal."""
    short = goal if len(goal) <= GOAL_PREVIEW_CHARS else goal[:GOAL_PREVIEW_CHARS] + "..."
    return [f"{step}: {short}" for step in steps]


def decompose(
    store: Store,
    goal: str,
    project: str = "",
    chain: bool = False,
    steps: list[str] | None = None,
    author: str = "system",
) -> Result:
    """Create a convoy of auto tasks for a goal.

    Args:
        store: Store handle
        goal: Free-text goal; also the convoy name
        project: Project label for the created tasks
        chain: Make each step depend on the previous one
        steps: Explicit step titles instead of a template match
        author: Journal author

    Returns:
        Result whose value has ``convoy`` and ``tasks`` (in step order)
    """
    goal = goal.strip()
    if not goal:
        return Result.failure(ErrorKind.INVALID_TRANSITION, "Goal must not be empty")

    titles = step_titles(goal, steps) if steps else step_titles(goal, template_steps(goal))
    convoy_id = generate_id("convoy")

    tasks: list[dict[str, Any]] = []
    with store.connection() as conn:
        convoy = store.insert_convoy(goal, convoy_id=convoy_id, conn=conn)
        for title in titles:
            task = store.insert_task(
                title,
                author=author,
                conn=conn,
                description=f"Part of: {goal}",
                priority=1,
                project=project,
                autonomy="auto",
                convoy=convoy_id,
                tags="auto,do",
                created_from="decompose",
            )
            store.append_journal(task["id"], f"Created from goal: {goal}", author=author, conn=conn)
            tasks.append(task)

        if chain:
            for previous, current in zip(tasks, tasks[1:]):
                store.insert_dependency(current["id"], previous["id"], conn=conn)

    store.after_write()
    logger.info("Decomposed %r into %d tasks (convoy %s)", goal, len(tasks), convoy_id)
    return Result.success({"convoy": convoy, "tasks": tasks})
