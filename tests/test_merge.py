"""Tests for trak.merge conflict resolution."""

import json

from trak.merge import (
    has_conflict_markers,
    merge_records,
    parse_conflicted,
    resolve_log,
)
from trak.sync import render_log


def _record(task_id, updated_at, created_at="2025-01-01T00:00:00.000000Z", **fields):
    record = {
        "id": task_id,
        "title": fields.pop("title", task_id),
        "status": fields.pop("status", "open"),
        "created_at": created_at,
        "updated_at": updated_at,
        "journal": fields.pop("journal", []),
        "deps": fields.pop("deps", []),
        "claims": fields.pop("claims", []),
    }
    record.update(fields)
    return record


def _entry(timestamp, text, author="human"):
    return {"timestamp": timestamp, "entry": text, "author": author}


def _conflicted(context, ours, theirs, trailing=()):
    lines = [json.dumps(r) for r in context]
    lines.append("<<<<<<< HEAD")
    lines += [json.dumps(r) for r in ours]
    lines.append("=======")
    lines += [json.dumps(r) for r in theirs]
    lines.append(">>>>>>> origin/main")
    lines += [json.dumps(r) for r in trailing]
    return "\n".join(lines) + "\n"


T1 = "2025-01-01T10:00:00.000000Z"
T2 = "2025-01-02T10:00:00.000000Z"
T3 = "2025-01-03T10:00:00.000000Z"


class TestParseConflicted:
    """Splitting conflicted text into sides."""

    def test_context_goes_to_both_sides(self):
        shared = _record("trak-shared", T1)
        tail = _record("trak-tail01", T1)
        text = _conflicted([shared], [_record("trak-x00001", T2)], [_record("trak-x00001", T3)], [tail])

        sides = parse_conflicted(text)

        assert [r["id"] for r in sides.ours] == ["trak-shared", "trak-x00001", "trak-tail01"]
        assert [r["id"] for r in sides.theirs] == ["trak-shared", "trak-x00001", "trak-tail01"]
        assert sides.skipped == 0

    def test_malformed_lines_skipped(self):
        text = _conflicted([], [_record("trak-x00001", T2)], []).replace("=======", "not json\n=======")
        sides = parse_conflicted(text)
        assert sides.skipped == 1
        assert len(sides.ours) == 1

    def test_has_conflict_markers(self):
        assert has_conflict_markers(_conflicted([], [], []))
        assert not has_conflict_markers(render_log([_record("trak-x00001", T1)]))


class TestMergeRecords:
    """Last-write-wins for scalars, union for collections."""

    def test_later_side_wins_scalars_and_collections_union(self):
        ours = _record(
            "trak-x00001", T2, title="Ours", status="wip",
            journal=[_entry(T1, "Created"), _entry(T2, "ours work")],
            deps=["trak-a00001"],
            claims=[{"agent": "a", "model": "", "status": "claimed", "claimed_at": T2, "released_at": None}],
        )
        theirs = _record(
            "trak-x00001", T3, title="Theirs", status="done",
            journal=[_entry(T1, "Created"), _entry(T3, "their work")],
            deps=["trak-b00001", "trak-a00001"],
            claims=[{"agent": "b", "model": "", "status": "claimed", "claimed_at": T1, "released_at": None}],
        )

        result = merge_records([ours], [theirs])

        assert len(result.records) == 1
        merged = result.records[0]
        assert merged["title"] == "Theirs"
        assert merged["status"] == "done"
        assert [e["entry"] for e in merged["journal"]] == ["Created", "ours work", "their work"]
        assert merged["deps"] == ["trak-a00001", "trak-b00001"]
        assert [c["agent"] for c in merged["claims"]] == ["b", "a"]
        assert result.lww_count == 1
        assert result.resolutions[0].winner == "theirs"

    def test_ours_wins_ties(self):
        result = merge_records([_record("trak-x00001", T2, title="Ours")], [_record("trak-x00001", T2, title="Theirs")])
        assert result.records[0]["title"] == "Ours"
        assert result.lww_count == 0

    def test_one_sided_records_kept(self):
        result = merge_records(
            [_record("trak-ours01", T1, created_at=T2)],
            [_record("trak-thrs01", T1, created_at=T1)],
        )
        assert [r["id"] for r in result.records] == ["trak-thrs01", "trak-ours01"]
        assert result.lww_count == 0

    def test_released_claim_preferred(self):
        claimed = {"agent": "a", "model": "", "status": "claimed", "claimed_at": T1, "released_at": None}
        released = dict(claimed, status="released", released_at=T2)

        result = merge_records([_record("trak-x00001", T3, claims=[released])],
                               [_record("trak-x00001", T2, claims=[claimed])])

        assert result.records[0]["claims"] == [released]

    def test_merge_is_idempotent(self):
        ours = [_record("trak-x00001", T2, journal=[_entry(T1, "a")])]
        theirs = [_record("trak-x00001", T3, journal=[_entry(T2, "b")])]

        once = merge_records(ours, theirs).records
        again = merge_records(once, once).records
        assert again == once


class TestResolveLog:
    """Resolving the on-disk log and rebuilding the Store."""

    def test_resolves_and_rebuilds(self, quiet_store):
        shared = _record("trak-shared", T1, journal=[_entry(T1, "Created")])
        ours = _record("trak-x00001", T2, title="Ours", journal=[_entry(T1, "Created"), _entry(T2, "mine")])
        theirs = _record("trak-x00001", T3, title="Theirs", journal=[_entry(T1, "Created"), _entry(T3, "yours")])
        quiet_store.log_path.write_text(_conflicted([shared], [ours], [theirs]))

        report = resolve_log(quiet_store)

        assert report.had_conflicts
        assert report.tasks == 2
        assert report.lww_count == 1

        content = quiet_store.log_path.read_text()
        assert not has_conflict_markers(content)
        assert len(content.splitlines()) == 2

        task = quiet_store.get_task("trak-x00001")
        assert task["title"] == "Theirs"
        assert [e["entry"] for e in quiet_store.get_journal("trak-x00001")] == ["Created", "mine", "yours"]

    def test_second_run_is_noop(self, quiet_store):
        ours = _record("trak-x00001", T2, journal=[_entry(T2, "mine")])
        theirs = _record("trak-x00001", T3, journal=[_entry(T3, "yours")])
        quiet_store.log_path.write_text(_conflicted([], [ours], [theirs]))

        resolve_log(quiet_store)
        content = quiet_store.log_path.read_text()
        journal = quiet_store.get_journal("trak-x00001")

        report = resolve_log(quiet_store)

        assert not report.had_conflicts
        assert quiet_store.log_path.read_text() == content
        assert [e["entry"] for e in quiet_store.get_journal("trak-x00001")] == [e["entry"] for e in journal]

    def test_missing_log(self, quiet_store):
        quiet_store.insert_task("Keep me")
        report = resolve_log(quiet_store)
        assert report.tasks == 0
        assert len(quiet_store.list_tasks()) == 1


class TestMalformedConflicts:
    """Odd input inside a conflicted log never aborts the merge."""

    def test_non_string_updated_at_is_skipped(self, quiet_store):
        good = _record("trak-x00001", T2, title="Ours")
        bad = dict(_record("trak-x00001", T3, title="Theirs"), updated_at=5)
        quiet_store.log_path.write_text(_conflicted([], [good], [bad]))

        report = resolve_log(quiet_store)

        assert report.skipped_lines == 1
        assert quiet_store.get_task("trak-x00001")["title"] == "Ours"

    def test_bad_journal_entry_is_skipped(self, quiet_store):
        shared = _record("trak-shared", T1)
        bad = dict(_record("trak-x00001", T3), journal=["oops"])
        quiet_store.log_path.write_text(_conflicted([shared], [bad], [_record("trak-x00001", T2)]))

        report = resolve_log(quiet_store)

        assert report.skipped_lines == 1
        assert report.tasks == 2
        assert quiet_store.get_task("trak-shared") is not None

    def test_diff3_base_section_ignored(self):
        base = _record("trak-base01", T1, title="Base")
        text = _conflicted([], [_record("trak-x00001", T2, title="Ours")], [_record("trak-x00001", T3, title="Theirs")])
        text = text.replace("=======", "||||||| merged common ancestors\n" + json.dumps(base) + "\n=======")

        sides = parse_conflicted(text)

        assert [r["title"] for r in sides.ours] == ["Ours"]
        assert [r["title"] for r in sides.theirs] == ["Theirs"]
        assert sides.skipped == 0
