"""Portable log codec: the Store mirrored as one JSON task record per line.

Export is a full deterministic rewrite ordered by creation time. Import
rebuilds the Store from a list of records and is idempotent: importing the
same log twice leaves the same state as importing it once.

Record layout::

    {"id": ..., "title": ..., <other task columns>,
     "journal": [{"timestamp", "entry", "author"}],
     "deps": [parent_id, ...],
     "claims": [{"agent", "model", "status", "claimed_at", "released_at"}]}
"""

import json
import logging
import os
import sqlite3
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .db import TASK_COLUMNS, TASK_DEFAULTS, Store, parse_timestamp, utcnow
from .errors import ImportParseError

logger = logging.getLogger(__name__)


# =============================================================================
# Export
# =============================================================================


def task_record(store: Store, task: dict[str, Any], conn: sqlite3.Connection | None = None) -> dict[str, Any]:
    """Build the portable record for one task, nested collections included."""
    record = {column: task.get(column) for column in TASK_COLUMNS}
    record["journal"] = [
        {"timestamp": e["timestamp"], "entry": e["entry"], "author": e["author"]}
        for e in store.get_journal(task["id"], conn=conn)
    ]
    record["deps"] = store.get_dependency_ids(task["id"], conn=conn)
    record["claims"] = [
        {
            "agent": c["agent"],
            "model": c["model"],
            "status": c["status"],
            "claimed_at": c["claimed_at"],
            "released_at": c["released_at"],
        }
        for c in store.get_claims(task["id"], conn=conn)
    ]
    return record


def export_records(store: Store) -> list[dict[str, Any]]:
    """Every task as a portable record, oldest first."""
    with store.connection() as conn:
        cursor = conn.execute("SELECT * FROM tasks ORDER BY created_at ASC, id ASC")
        tasks = [dict(row) for row in cursor.fetchall()]
        return [task_record(store, task, conn=conn) for task in tasks]


def render_log(records: list[dict[str, Any]]) -> str:
    """Serialise records one per line, with a trailing newline when non-empty."""
    if not records:
        return ""
    return "\n".join(json.dumps(r, ensure_ascii=False) for r in records) + "\n"


def write_log(path: Path, content: str) -> None:
    """Write the log atomically (write to temp file, then rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".trak_", suffix=".jsonl.tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.rename(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def export_log(store: Store, path: Path | None = None) -> int:
    """Rewrite the portable log from the Store.

    Args:
        store: Store handle
        path: Destination, defaults to the log next to the database

    Returns:
        Number of task records written
    """
    path = path or store.log_path
    records = export_records(store)
    write_log(path, render_log(records))
    logger.debug("Exported %d tasks to %s", len(records), path)
    return len(records)


# =============================================================================
# Parse
# =============================================================================


@dataclass
class ParsedLog:
    """Records read from a log plus the lines that could not be used."""
    records: list[dict[str, Any]] = field(default_factory=list)
    errors: list[ImportParseError] = field(default_factory=list)


def parse_record(line: str, line_no: int) -> dict[str, Any]:
    """Parse one log line into a task record.

    Raises:
        ImportParseError: If the line is not a JSON object with id and title
    """
    try:
        record = json.loads(line)
    except json.JSONDecodeError as e:
        raise ImportParseError(line_no, f"invalid JSON ({e.msg})")

    if not isinstance(record, dict):
        raise ImportParseError(line_no, "record is not an object")
    if not isinstance(record.get("id"), str) or not record["id"]:
        raise ImportParseError(line_no, "record has no id")
    if not isinstance(record.get("title"), str):
        raise ImportParseError(line_no, "record has no title")
    validate_record(record, line_no)
    return record


def _is_timestamp(value: Any) -> bool:
    if value is None or value == "":
        return True
    if not isinstance(value, str):
        return False
    try:
        parse_timestamp(value)
    except ValueError:
        return False
    return True


def validate_record(record: dict[str, Any], line_no: int = 0) -> None:
    """Check the nested collections and timestamps of a task record.

    Raises:
        ImportParseError: If any of them has the wrong shape
    """
    task_id = record.get("id")

    def fail(message: str) -> ImportParseError:
        return ImportParseError(line_no, f"{task_id}: {message}")

    for column in ("created_at", "updated_at"):
        if record.get(column) is not None and not _is_timestamp(record[column]):
            raise fail(f"invalid {column} {record[column]!r}")

    deps = record.get("deps") or []
    if not isinstance(deps, list) or not all(isinstance(d, str) and d for d in deps):
        raise fail("deps must be a list of task ids")

    journal = record.get("journal") or []
    if not isinstance(journal, list):
        raise fail("journal must be a list")
    for entry in journal:
        if not isinstance(entry, dict) or not isinstance(entry.get("entry", ""), str):
            raise fail(f"invalid journal entry {entry!r}")
        if not _is_timestamp(entry.get("timestamp")):
            raise fail(f"invalid journal timestamp {entry.get('timestamp')!r}")

    claims = record.get("claims") or []
    if not isinstance(claims, list):
        raise fail("claims must be a list")
    for claim in claims:
        if not isinstance(claim, dict) or not isinstance(claim.get("agent", ""), str):
            raise fail(f"invalid claim {claim!r}")
        if not (_is_timestamp(claim.get("claimed_at")) and _is_timestamp(claim.get("released_at"))):
            raise fail(f"invalid claim timestamps {claim!r}")


def parse_log(text: str) -> ParsedLog:
    """Parse log text; blank lines are ignored, bad lines are collected."""
    parsed = ParsedLog()
    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            parsed.records.append(parse_record(line, line_no))
        except ImportParseError as e:
            parsed.errors.append(e)
    return parsed


# =============================================================================
# Import
# =============================================================================


@dataclass
class ImportReport:
    """Counts of rows written by an import."""
    tasks: int = 0
    deps: int = 0
    journal: int = 0
    claims: int = 0
    skipped: int = 0
    dangling_deps: int = 0
    errors: list[str] = field(default_factory=list)


def _task_row(record: dict[str, Any]) -> dict[str, Any]:
    validate_record(record)
    row = dict(TASK_DEFAULTS)
    row.update({k: v for k, v in record.items() if k in TASK_COLUMNS})
    now = utcnow()
    row["created_at"] = row.get("created_at") or now
    row["updated_at"] = row.get("updated_at") or row["created_at"]
    try:
        row["priority"] = int(row["priority"])
    except (TypeError, ValueError):
        raise ImportParseError(0, f"{record['id']}: invalid priority {row['priority']!r}")
    row["is_epic"] = int(bool(row["is_epic"]))
    for column in ("description", "project", "blocked_by", "tags", "assigned_to"):
        if row[column] is None:
            row[column] = ""
    return row


def _upsert_task(conn: sqlite3.Connection, row: dict[str, Any]) -> None:
    columns = TASK_COLUMNS
    updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
    conn.execute(
        f"""
        INSERT INTO tasks ({', '.join(columns)})
        VALUES ({', '.join('?' for _ in columns)})
        ON CONFLICT(id) DO UPDATE SET {updates}
        """,
        [row[c] for c in columns],
    )


def import_records(
    store: Store,
    records: list[dict[str, Any]],
    replace: bool = True,
) -> ImportReport:
    """Rebuild the Store from portable records in one transaction.

    Tasks are upserted by id. Dependency rows are inserted after every task
    so records may arrive in any order; edges whose endpoint is missing are
    counted as dangling and dropped. Journal entries are appended unless an
    identical (timestamp, entry) already exists for the task. Claims are
    ignored when (agent, claimed_at) is already present.

    Args:
        store: Store handle
        records: Parsed task records
        replace: Clear existing rows first so the Store mirrors the log exactly

    Returns:
        ImportReport with row counts
    """
    report = ImportReport()

    with store.connection() as conn:
        if replace:
            conn.execute("DELETE FROM task_claims")
            conn.execute("DELETE FROM task_log")
            conn.execute("DELETE FROM dependencies")
            conn.execute("DELETE FROM tasks")

        imported: list[dict[str, Any]] = []
        for record in records:
            try:
                row = _task_row(record)
            except ImportParseError as e:
                report.skipped += 1
                report.errors.append(str(e))
                logger.warning("Skipping task record: %s", e)
                continue
            _upsert_task(conn, row)
            imported.append(record)
            report.tasks += 1

        known = {row["id"] for row in conn.execute("SELECT id FROM tasks").fetchall()}

        for record in imported:
            task_id = record["id"]

            for parent_id in record.get("deps") or []:
                if parent_id not in known:
                    report.dangling_deps += 1
                    continue
                if store.insert_dependency(task_id, parent_id, conn=conn):
                    report.deps += 1

            for entry in record.get("journal") or []:
                timestamp = entry.get("timestamp") or utcnow()
                text = entry.get("entry", "")
                cursor = conn.execute(
                    """
                    INSERT INTO task_log (task_id, timestamp, entry, author)
                    SELECT ?, ?, ?, ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM task_log
                        WHERE task_id = ? AND timestamp = ? AND entry = ?
                    )
                    """,
                    (task_id, timestamp, text, entry.get("author") or "human", task_id, timestamp, text),
                )
                report.journal += cursor.rowcount

            for claim in record.get("claims") or []:
                if not claim.get("agent") or not claim.get("claimed_at"):
                    continue
                inserted = store.insert_claim(
                    task_id,
                    claim["agent"],
                    model=claim.get("model") or "",
                    status=claim.get("status") or "claimed",
                    claimed_at=claim["claimed_at"],
                    released_at=claim.get("released_at"),
                    conn=conn,
                )
                if inserted:
                    report.claims += 1

    logger.debug(
        "Imported %d tasks, %d deps, %d journal entries, %d claims",
        report.tasks, report.deps, report.journal, report.claims,
    )
    return report


def import_text(store: Store, text: str, replace: bool = True) -> ImportReport:
    """Parse log text and import it; malformed lines are skipped and counted."""
    parsed = parse_log(text)
    for error in parsed.errors:
        logger.warning("Skipping log line %s", error)

    report = import_records(store, parsed.records, replace=replace)
    report.skipped += len(parsed.errors)
    report.errors = [str(e) for e in parsed.errors] + report.errors
    return report


def import_log(store: Store, path: Path | None = None, replace: bool = True) -> ImportReport:
    """Rebuild the Store from the portable log file.

    A missing log imports nothing and leaves the Store untouched.
    """
    path = path or store.log_path
    if not path.exists():
        return ImportReport()
    return import_text(store, path.read_text(encoding="utf-8"), replace=replace)
