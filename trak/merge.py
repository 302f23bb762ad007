"""Conflict resolution for the portable log after a textual merge.

When version control cannot auto-merge ``trak.jsonl`` it leaves conflict
markers around two divergent runs of records. This module splits the text
into the two sides, merges records per task id and writes a clean log,
which is then re-imported to rebuild the Store.

Per task id:
- present on one side only: kept as-is
- present on both: scalar fields come from the later ``updated_at``
  (ours on a tie); journal, deps and claims are unioned
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .db import Store, timestamp_key
from .errors import ImportParseError
from .sync import ImportReport, import_records, import_text, parse_record, render_log, write_log

logger = logging.getLogger(__name__)

OURS_MARKER = "<<<<<<<"
BASE_MARKER = "|||||||"
SEPARATOR_MARKER = "======="
THEIRS_MARKER = ">>>>>>>"


def has_conflict_markers(content: str) -> bool:
    """Detect whether log content still carries merge conflict markers."""
    return OURS_MARKER in content and SEPARATOR_MARKER in content and THEIRS_MARKER in content


@dataclass
class ConflictSides:
    """Records on each side of a conflicted log.

    Unconflicted context lines appear on both sides.
    """
    ours: list[dict[str, Any]] = field(default_factory=list)
    theirs: list[dict[str, Any]] = field(default_factory=list)
    skipped: int = 0


def parse_conflicted(content: str) -> ConflictSides:
    """Split conflicted log text into ours/theirs record lists.

    Lines that are not valid records are skipped and counted.
    """
    sides = ConflictSides()
    section = "both"

    for line_no, line in enumerate(content.splitlines(), start=1):
        stripped = line.strip()
        if not stripped:
            continue

        if stripped.startswith(OURS_MARKER):
            section = "ours"
            continue
        if stripped.startswith(BASE_MARKER) and section == "ours":
            # diff3 style: the common ancestor runs until the separator
            section = "base"
            continue
        if stripped.startswith(SEPARATOR_MARKER) and section in ("ours", "base"):
            section = "theirs"
            continue
        if section == "base":
            continue
        if stripped.startswith(THEIRS_MARKER) and section == "theirs":
            section = "both"
            continue

        try:
            record = parse_record(stripped, line_no)
        except ImportParseError as e:
            logger.warning("Skipping conflicted log line %s", e)
            sides.skipped += 1
            continue

        if section in ("both", "ours"):
            sides.ours.append(record)
        if section in ("both", "theirs"):
            sides.theirs.append(record)

    return sides


# =============================================================================
# Record merge
# =============================================================================


@dataclass
class Resolution:
    """How one task present on both sides was decided."""
    task_id: str
    winner: str
    ours_updated: str | None
    theirs_updated: str | None

    @property
    def last_write_wins(self) -> bool:
        return self.ours_updated != self.theirs_updated


@dataclass
class MergeResult:
    records: list[dict[str, Any]]
    resolutions: list[Resolution] = field(default_factory=list)

    @property
    def lww_count(self) -> int:
        """Tasks on both sides whose updated_at differed."""
        return sum(1 for r in self.resolutions if r.last_write_wins)


def _union_journal(a: list[dict], b: list[dict]) -> list[dict]:
    seen = set()
    merged = []
    for entry in a + b:
        key = (entry.get("timestamp"), entry.get("entry"))
        if key in seen:
            continue
        seen.add(key)
        merged.append(entry)
    return sorted(merged, key=lambda e: timestamp_key(e.get("timestamp")))


def _union_claims(a: list[dict], b: list[dict]) -> list[dict]:
    by_key: dict[tuple, dict] = {}
    for claim in a + b:
        key = (claim.get("agent"), claim.get("claimed_at"))
        existing = by_key.get(key)
        # A claim only moves from claimed to released; keep the released copy
        if existing is None or (not existing.get("released_at") and claim.get("released_at")):
            by_key[key] = claim
    return sorted(by_key.values(), key=lambda c: timestamp_key(c.get("claimed_at")))


def merge_pair(ours: dict[str, Any], theirs: dict[str, Any]) -> tuple[dict[str, Any], str]:
    """Merge two versions of the same task record.

    Returns:
        (merged record, "ours" or "theirs" for the side supplying scalars)
    """
    if timestamp_key(theirs.get("updated_at")) > timestamp_key(ours.get("updated_at")):
        winner, side = theirs, "theirs"
    else:
        winner, side = ours, "ours"

    merged = dict(winner)
    merged["journal"] = _union_journal(ours.get("journal") or [], theirs.get("journal") or [])
    merged["deps"] = sorted(set(ours.get("deps") or []) | set(theirs.get("deps") or []))
    merged["claims"] = _union_claims(ours.get("claims") or [], theirs.get("claims") or [])
    return merged, side


def _collapse(records: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """Index one side by id, merging repeated ids within the side."""
    by_id: dict[str, dict[str, Any]] = {}
    for record in records:
        previous = by_id.get(record["id"])
        by_id[record["id"]] = record if previous is None else merge_pair(previous, record)[0]
    return by_id


def merge_records(ours: list[dict[str, Any]], theirs: list[dict[str, Any]]) -> MergeResult:
    """Reconcile two record lists into one, sorted by created_at."""
    ours_by_id = _collapse(ours)
    theirs_by_id = _collapse(theirs)

    merged: dict[str, dict[str, Any]] = {}
    resolutions: list[Resolution] = []

    for task_id in list(ours_by_id) + [i for i in theirs_by_id if i not in ours_by_id]:
        mine = ours_by_id.get(task_id)
        other = theirs_by_id.get(task_id)

        if mine is not None and other is not None:
            record, side = merge_pair(mine, other)
            resolutions.append(Resolution(
                task_id=task_id,
                winner=side,
                ours_updated=mine.get("updated_at"),
                theirs_updated=other.get("updated_at"),
            ))
            merged[task_id] = record
        else:
            merged[task_id] = mine if mine is not None else other

    records = sorted(merged.values(), key=lambda r: timestamp_key(r.get("created_at")))
    return MergeResult(records=records, resolutions=resolutions)


# =============================================================================
# Resolve on disk
# =============================================================================


@dataclass
class MergeReport:
    """What resolving the on-disk log did."""
    had_conflicts: bool
    tasks: int
    lww_count: int = 0
    skipped_lines: int = 0
    imported: ImportReport | None = None


def resolve_log(store: Store, path: Path | None = None) -> MergeReport:
    """Resolve conflict markers in the log, write it back, rebuild the Store.

    Clean input is simply re-imported, so running this twice is harmless.
    """
    path = path or store.log_path
    if not path.exists():
        return MergeReport(had_conflicts=False, tasks=0)
    content = path.read_text(encoding="utf-8")

    if not has_conflict_markers(content):
        imported = import_text(store, content)
        return MergeReport(
            had_conflicts=False,
            tasks=imported.tasks,
            skipped_lines=imported.skipped,
            imported=imported,
        )

    sides = parse_conflicted(content)
    result = merge_records(sides.ours, sides.theirs)

    write_log(path, render_log(result.records))
    imported = import_records(store, result.records)

    logger.info(
        "Resolved %s: %d tasks, %d by last-write-wins, %d lines skipped",
        path.name, len(result.records), result.lww_count, sides.skipped,
    )
    return MergeReport(
        had_conflicts=True,
        tasks=len(result.records),
        lww_count=result.lww_count,
        skipped_lines=sides.skipped,
        imported=imported,
    )
