"""Verification methods for finished work.

Each method is its own type; ``verify_task`` picks the handler by type.

- ManualVerdict: a reviewer says pass or fail
- CommandCheck: run a shell command, exit code 0 passes
- DiffReview: journal a read-only summary of changes since the wip snapshot
- Checklist: journal the items to check, no verdict
- AutoCheck: the task's own verify_command, then a diff review

A failing verdict reverts the task to open and journals the reason.
"""

import logging
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Union

from . import config
from .db import Store
from .errors import ErrorKind, Result
from .git_sync import run_git

logger = logging.getLogger(__name__)

# Journal keeps the tail of command output
MAX_OUTPUT_CHARS = 1000


@dataclass(frozen=True)
class ManualVerdict:
    passed: bool
    reason: str = ""


@dataclass(frozen=True)
class CommandCheck:
    command: str
    timeout: int | None = None
    cwd: Path | None = None


@dataclass(frozen=True)
class DiffReview:
    repo_path: Path
    since: str | None = None


@dataclass(frozen=True)
class Checklist:
    items: tuple[str, ...] = ()


@dataclass(frozen=True)
class AutoCheck:
    repo_path: Path | None = None
    timeout: int | None = None


VerificationMethod = Union[ManualVerdict, CommandCheck, DiffReview, Checklist, AutoCheck]


@dataclass
class VerifyOutcome:
    """What a verification found.

    ``passed`` is None for methods that only record information.
    """
    method: str
    passed: bool | None
    summary: str
    details: list[str] = field(default_factory=list)


def _truncate(output: str) -> str:
    output = output.strip()
    if len(output) <= MAX_OUTPUT_CHARS:
        return output
    return "..." + output[-MAX_OUTPUT_CHARS:]


def _record_verdict(store: Store, task: dict[str, Any], passed: bool, agent: str, reason: str) -> None:
    """Apply a pass/fail verdict to the task and journal it."""
    with store.connection() as conn:
        if passed:
            store.update_task(task["id"], conn=conn, verification_status="passed", verified_by=agent)
            entry = f"Verification passed ({agent})"
            if reason:
                entry += f": {reason}"
        else:
            store.update_task(
                task["id"], conn=conn, verification_status="failed", verified_by=agent, status="open"
            )
            entry = f"Verification failed ({agent}): {reason or 'no reason given'}"
            if task["status"] != "open":
                entry += ". Status reverted to open after failed verification"
        store.append_journal(task["id"], entry, author=agent, conn=conn)


# =============================================================================
# Handlers
# =============================================================================


def _verify_manual(store: Store, task: dict[str, Any], method: ManualVerdict, agent: str) -> VerifyOutcome:
    _record_verdict(store, task, method.passed, agent, method.reason)
    return VerifyOutcome("manual", method.passed, method.reason or ("passed" if method.passed else "failed"))


def _verify_command(store: Store, task: dict[str, Any], method: CommandCheck, agent: str) -> VerifyOutcome:
    timeout = method.timeout or config.get_verify_timeout(store.trak_dir)
    started = time.monotonic()

    try:
        proc = subprocess.run(
            method.command,
            shell=True,
            cwd=method.cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        exit_code = proc.returncode
        output = _truncate((proc.stdout or "") + (proc.stderr or ""))
        passed = exit_code == 0
        summary = f"`{method.command}` exited {exit_code}"
    except subprocess.TimeoutExpired:
        exit_code = None
        output = ""
        passed = False
        summary = f"`{method.command}` timed out after {timeout}s"
    except OSError as e:
        exit_code = None
        output = str(e)
        passed = False
        summary = f"`{method.command}` could not be run"

    duration = time.monotonic() - started
    details = [f"Command: {method.command}", f"Exit code: {exit_code}", f"Duration: {duration:.1f}s"]
    if output:
        details.append(f"Output:\n{output}")

    store.append_journal(task["id"], "Verification run\n" + "\n".join(details), author=agent)
    _record_verdict(store, task, passed, agent, summary)
    return VerifyOutcome("command", passed, summary, details)


def _verify_diff(store: Store, task: dict[str, Any], method: DiffReview, agent: str) -> VerifyOutcome:
    since = method.since or task.get("wip_snapshot") or "HEAD"
    result = run_git(["diff", "--stat", since], cwd=method.repo_path, check=False)

    if result.returncode != 0:
        summary = f"Diff review unavailable: {(result.stderr or '').strip()}"
    else:
        stat = result.stdout.strip()
        last_line = stat.splitlines()[-1].strip() if stat else "no changes"
        summary = f"Diff review since {since[:12]}: {last_line}"

    store.append_journal(task["id"], summary, author=agent)
    return VerifyOutcome("diff", None, summary)


def _verify_checklist(store: Store, task: dict[str, Any], method: Checklist, agent: str) -> VerifyOutcome:
    lines = [f"- [ ] {item}" for item in method.items]
    store.append_journal(task["id"], "Verification checklist:\n" + "\n".join(lines), author=agent)
    return VerifyOutcome("checklist", None, f"{len(lines)} items", lines)


def _verify_auto(store: Store, task: dict[str, Any], method: AutoCheck, agent: str) -> VerifyOutcome:
    command_outcome = _verify_command(
        store,
        task,
        CommandCheck(task["verify_command"], timeout=method.timeout, cwd=method.repo_path),
        agent,
    )
    details = list(command_outcome.details)
    if method.repo_path is not None:
        diff_outcome = _verify_diff(store, task, DiffReview(method.repo_path), agent)
        details.append(diff_outcome.summary)
    return VerifyOutcome("auto", command_outcome.passed, command_outcome.summary, details)


_HANDLERS: dict[type, Callable[..., VerifyOutcome]] = {
    ManualVerdict: _verify_manual,
    CommandCheck: _verify_command,
    DiffReview: _verify_diff,
    Checklist: _verify_checklist,
    AutoCheck: _verify_auto,
}


def verify_task(store: Store, task_id: str, method: VerificationMethod, agent: str = "human") -> Result:
    """Verify a task with one method.

    Args:
        store: Store handle
        task_id: Task to verify
        method: One of the verification method types
        agent: Who is verifying; recorded as verified_by

    Returns:
        Result with a VerifyOutcome. Verifying done or archived work, or
        auto-verifying a task with no verify_command, is an invalid
        transition.
    """
    handler = _HANDLERS.get(type(method))
    if handler is None:
        raise TypeError(f"Unknown verification method: {type(method).__name__}")

    task = store.get_task(task_id)
    if task is None:
        return Result.failure(ErrorKind.NOT_FOUND, f"Task not found: {task_id}")
    if task["status"] in config.TERMINAL_STATUSES:
        return Result.failure(ErrorKind.INVALID_TRANSITION, f"Task {task_id} is already {task['status']}")
    if isinstance(method, AutoCheck) and not task.get("verify_command"):
        return Result.failure(ErrorKind.INVALID_TRANSITION, f"Task {task_id} has no verify_command")

    outcome = handler(store, task, method, agent)
    logger.debug("Verified %s with %s: %s", task_id, outcome.method, outcome.summary)
    store.after_write()
    return Result.success(outcome)
