"""Configuration loading and constants for trak."""

import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml


# ---------------------------------------------------------------------------
# Task states
# ---------------------------------------------------------------------------

TaskStatus = Literal[
    "open",
    "wip",
    "blocked",
    "review",
    "done",
    "archived",
    "failed",
]

STATUSES: list[TaskStatus] = ["open", "wip", "blocked", "review", "done", "archived", "failed"]

# Statuses a task must be in to count as ready work
READY_STATUSES: list[TaskStatus] = ["open", "wip"]

# Statuses that satisfy a dependency edge
TERMINAL_STATUSES: list[TaskStatus] = ["done", "archived"]

Autonomy = Literal["manual", "auto"]

VerificationStatus = Literal["", "passed", "failed"]

ClaimStatus = Literal["claimed", "released"]


# ---------------------------------------------------------------------------
# Files and defaults
# ---------------------------------------------------------------------------

TRAK_DIR_NAME = ".trak"
DB_FILE = "trak.db"
LOG_FILE = "trak.jsonl"
CONFIG_FILE = "config.yaml"

DEFAULT_PRIORITY = 1
DEFAULT_MAX_RETRIES = 3
DEFAULT_LOCK_TIMEOUT_MINUTES = 30
DEFAULT_VERIFY_TIMEOUT_SECONDS = 15 * 60
DEFAULT_DISPATCH_TIMEOUT_SECONDS = 15 * 60
DEFAULT_WORKER_TIMEOUT_SECONDS = 300
DEFAULT_GATEWAY_URL = "http://127.0.0.1:18789"
DEFAULT_STALE_DAYS = 7
DEFAULT_AGENT_NAME = "human"
MAIL_LIST_LIMIT = 50

# Recipient that reaches every agent
BROADCAST_AGENT = "all"


def find_db_path(start: Path | None = None) -> Path | None:
    """Walk up from ``start`` looking for an existing ``.trak/trak.db``.

    Returns:
        Path to the database file, or None if no ancestor has one
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / TRAK_DIR_NAME / DB_FILE
        if candidate.exists():
            return candidate
        if current == current.parent:
            return None
        current = current.parent


def get_db_path(start: Path | None = None) -> Path:
    """Resolve the database path for the current working copy.

    Can be overridden via the TRAK_DB environment variable, which lets
    nested working directories share one Store. Falls back to
    ``<cwd>/.trak/trak.db`` when nothing is found, for initialisation.
    """
    env_override = os.environ.get("TRAK_DB")
    if env_override:
        return Path(env_override)

    found = find_db_path(start)
    if found:
        return found
    return (start or Path.cwd()) / TRAK_DIR_NAME / DB_FILE


def get_agent_name() -> str:
    """Name of the agent running this process (TRAK_AGENT, default ``human``)."""
    return os.environ.get("TRAK_AGENT") or DEFAULT_AGENT_NAME


def get_log_path(db_path: Path) -> Path:
    """The portable log always sits next to the database file."""
    return db_path.parent / LOG_FILE


def get_locks_dir(trak_dir: Path) -> Path:
    return trak_dir / "locks"


def get_config_path(trak_dir: Path) -> Path:
    return trak_dir / CONFIG_FILE


# ---------------------------------------------------------------------------
# config.yaml
# ---------------------------------------------------------------------------


def load_config(trak_dir: Path) -> dict[str, Any]:
    """Load config.yaml from the trak directory.

    Returns:
        Parsed mapping, empty if the file is missing or empty
    """
    path = get_config_path(trak_dir)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def save_config(trak_dir: Path, config: dict[str, Any]) -> None:
    path = get_config_path(trak_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(config, f, default_flow_style=False, sort_keys=True)


def get_config_value(trak_dir: Path, key: str, default: Any = None) -> Any:
    """Read a dotted key such as ``lock.timeout`` from config.yaml.

    Args:
        trak_dir: Directory holding config.yaml
        key: Dotted key path
        default: Returned when any segment is missing

    Returns:
        The configured value or ``default``
    """
    node: Any = load_config(trak_dir)
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def set_config_value(trak_dir: Path, key: str, value: Any) -> None:
    """Write a dotted key into config.yaml, creating intermediate mappings."""
    config = load_config(trak_dir)
    node = config
    parts = key.split(".")
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value
    save_config(trak_dir, config)


def get_lock_timeout(trak_dir: Path) -> int:
    """Workspace lock timeout in minutes (``lock.timeout``)."""
    return int(get_config_value(trak_dir, "lock.timeout", DEFAULT_LOCK_TIMEOUT_MINUTES))


def get_verify_timeout(trak_dir: Path) -> int:
    """Command verification timeout in seconds (``verify.timeout``)."""
    value = get_config_value(trak_dir, "verify.timeout", DEFAULT_VERIFY_TIMEOUT_SECONDS)
    return parse_duration(value)


def get_dispatch_timeout(trak_dir: Path) -> int:
    """Default gateway run timeout in seconds (``dispatch.timeout``)."""
    value = get_config_value(trak_dir, "dispatch.timeout", DEFAULT_DISPATCH_TIMEOUT_SECONDS)
    return parse_duration(value)


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smh]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: int | str) -> int:
    """Parse seconds given as an int or a string like ``90``, ``30m``, ``2h``.

    Raises:
        ValueError: If the string is not a recognised duration
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)

    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return int(amount) * _DURATION_UNITS[unit]


def resolve_timeout(
    override: int | str | None,
    task: dict[str, Any] | None,
    default: int,
) -> int:
    """Pick the effective timeout in seconds.

    An explicit per-call override wins over the task's ``timeout_seconds``,
    which wins over the system default.
    """
    if override is not None and override != "":
        return parse_duration(override)
    if task and task.get("timeout_seconds"):
        return int(task["timeout_seconds"])
    return default
