"""Moving the portable log through git.

The log is the only file trak commits. Pulling may leave conflict markers
in it; those are resolved by the merge resolver and the Store rebuilt.
"""

import logging
import subprocess
from pathlib import Path

from .db import Store
from .errors import ErrorKind, Result
from .merge import resolve_log
from .sync import export_log

logger = logging.getLogger(__name__)


def run_git(args: list[str], cwd: Path | str | None = None, check: bool = True) -> subprocess.CompletedProcess:
    """Run a git command.

    Args:
        args: Git command arguments (without 'git')
        cwd: Working directory for the command
        check: Raise exception on non-zero exit

    Returns:
        CompletedProcess instance
    """
    cmd = ["git"] + args
    return subprocess.run(
        cmd,
        cwd=cwd,
        capture_output=True,
        text=True,
        check=check,
        timeout=120,
    )


def head_commit(cwd: Path | str) -> str | None:
    """Current HEAD sha, or None outside a repository."""
    result = run_git(["rev-parse", "HEAD"], cwd=cwd, check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def _vcs_failure(action: str, error: subprocess.CalledProcessError) -> Result:
    detail = (error.stderr or error.stdout or "").strip()
    return Result.failure(ErrorKind.VCS_ERROR, f"git {action} failed: {detail}")


def commit_log(store: Store, message: str = "trak: sync tasks", push: bool = False) -> Result:
    """Export, stage and commit the portable log.

    Returns:
        Result whose value is True if a commit was made, False if the log
        was unchanged
    """
    export_log(store)
    repo = store.trak_dir.parent
    log_path = str(store.log_path)

    try:
        run_git(["add", log_path], cwd=repo)
        staged = run_git(["diff", "--cached", "--quiet", "--", log_path], cwd=repo, check=False)
        if staged.returncode == 0:
            return Result.success(False)
        run_git(["commit", "-m", message, "--", log_path], cwd=repo)
        if push:
            run_git(["push"], cwd=repo)
    except subprocess.CalledProcessError as e:
        return _vcs_failure(" ".join(e.cmd[1:2]), e)

    logger.info("Committed %s", log_path)
    return Result.success(True)


def pull_log(store: Store) -> Result:
    """Pull, resolve any conflict in the log, and rebuild the Store.

    Returns:
        Result carrying the MergeReport
    """
    repo = store.trak_dir.parent
    pulled = run_git(["pull", "--no-rebase"], cwd=repo, check=False)

    report = resolve_log(store)
    if report.had_conflicts:
        try:
            run_git(["add", str(store.log_path)], cwd=repo)
        except subprocess.CalledProcessError as e:
            return _vcs_failure("add", e)
        logger.info("Resolved log conflict, %d tasks by last-write-wins", report.lww_count)
    elif pulled.returncode != 0:
        detail = (pulled.stderr or pulled.stdout).strip()
        return Result.failure(ErrorKind.VCS_ERROR, f"git pull failed: {detail}", value=report)

    return Result.success(report)
