"""Tests for trak.db and trak.config."""

import sqlite3
from datetime import datetime, timezone

import pytest

from trak import config
from trak.db import (
    SCHEMA_VERSION,
    Store,
    format_timestamp,
    generate_id,
    parse_timestamp,
    timestamp_key,
)
from trak.errors import TaskNotFoundError


class TestSchema:
    """Tests for database schema initialization."""

    def test_init_schema_creates_tables(self, store):
        with store.connection() as conn:
            names = {
                row["name"]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        assert {"tasks", "dependencies", "task_log", "task_claims", "convoys", "mailbox", "schema_info"} <= names

    def test_get_schema_version(self, store):
        assert store.get_schema_version() == SCHEMA_VERSION

    def test_get_schema_version_no_db(self, trak_dir):
        assert Store(trak_dir / "missing.db").get_schema_version() is None

    def test_migrate_is_noop_when_current(self, store):
        assert store.migrate_schema() is False

    def test_migrate_from_v1_adds_columns(self, trak_dir):
        db_path = trak_dir / "old.db"
        conn = sqlite3.connect(db_path)
        conn.executescript("""
            CREATE TABLE tasks (
                id TEXT PRIMARY KEY, title TEXT NOT NULL, description TEXT DEFAULT '',
                status TEXT DEFAULT 'open', priority INTEGER DEFAULT 1,
                project TEXT DEFAULT '', blocked_by TEXT DEFAULT '', parent_id TEXT,
                created_at TEXT NOT NULL, updated_at TEXT NOT NULL,
                agent_session TEXT DEFAULT '', tokens_used INTEGER DEFAULT 0,
                cost_usd REAL DEFAULT 0.0, tags TEXT DEFAULT ''
            );
            CREATE TABLE dependencies (child_id TEXT, parent_id TEXT, PRIMARY KEY (child_id, parent_id));
            CREATE TABLE task_log (id INTEGER PRIMARY KEY AUTOINCREMENT, task_id TEXT,
                timestamp TEXT, entry TEXT, author TEXT DEFAULT 'human');
            CREATE TABLE schema_info (key TEXT PRIMARY KEY, value TEXT);
            INSERT INTO schema_info VALUES ('version', '1');
            INSERT INTO tasks (id, title, created_at, updated_at)
                VALUES ('trak-old001', 'Legacy', '2025-01-01T00:00:00Z', '2025-01-01T00:00:00Z');
        """)
        conn.commit()
        conn.close()

        old = Store(db_path, export_on_write=False)
        assert old.migrate_schema() is True
        assert old.get_schema_version() == SCHEMA_VERSION

        task = old.get_task("trak-old001")
        assert task["autonomy"] == "manual"
        assert task["max_retries"] == 3
        assert old.insert_claim("trak-old001", "agent-a") is True

    def test_migrate_from_v2_adds_mailbox(self, store):
        with store.connection() as conn:
            conn.execute("DROP TABLE mailbox")
            conn.execute("UPDATE schema_info SET value = '2' WHERE key = 'version'")

        assert store.migrate_schema() is True
        message = store.insert_message("agent-a", "agent-b", "hello")
        assert message["read"] == 0
        assert store.get_messages("agent-b") == [message]


class TestTaskOperations:
    """Tests for task row operations."""

    def test_insert_task_defaults(self, quiet_store):
        task = quiet_store.insert_task("Write docs")

        assert task["id"].startswith("trak-")
        assert task["status"] == "open"
        assert task["priority"] == 1
        assert task["autonomy"] == "manual"
        assert task["created_at"] == task["updated_at"]

    def test_insert_task_journals_creation(self, quiet_store):
        task = quiet_store.insert_task("Write docs", author="alice")
        journal = quiet_store.get_journal(task["id"])

        assert [(e["entry"], e["author"]) for e in journal] == [("Created", "alice")]

    def test_insert_task_with_fields(self, quiet_store):
        task = quiet_store.insert_task(
            "Ship it", task_id="trak-abc123", priority=0, project="web", autonomy="auto"
        )
        assert task["id"] == "trak-abc123"
        assert task["priority"] == 0
        assert task["project"] == "web"
        assert task["autonomy"] == "auto"

    def test_insert_task_rejects_unknown_field(self, quiet_store):
        with pytest.raises(ValueError, match="Unknown task fields"):
            quiet_store.insert_task("Bad", colour="red")

    def test_insert_task_rejects_bad_priority(self, quiet_store):
        with pytest.raises(ValueError, match="Priority"):
            quiet_store.insert_task("Bad", priority=7)

    def test_update_task_touches_updated_at(self, quiet_store):
        task = quiet_store.insert_task("Edit me")
        updated = quiet_store.update_task(task["id"], title="Edited")

        assert updated["title"] == "Edited"
        assert updated["updated_at"] >= task["updated_at"]

    def test_update_task_rejects_bad_status(self, quiet_store):
        task = quiet_store.insert_task("Edit me")
        with pytest.raises(ValueError, match="Invalid status"):
            quiet_store.update_task(task["id"], status="finished")

    def test_get_task_missing(self, quiet_store):
        assert quiet_store.get_task("trak-nope00") is None

    def test_require_task_raises(self, quiet_store):
        with pytest.raises(TaskNotFoundError):
            quiet_store.require_task("trak-nope00")

    def test_list_tasks_filters(self, quiet_store):
        quiet_store.insert_task("A", project="web", priority=2)
        quiet_store.insert_task("B", project="api", priority=0)
        archived = quiet_store.insert_task("C", project="web")
        quiet_store.update_task(archived["id"], status="archived")

        assert [t["title"] for t in quiet_store.list_tasks()] == ["B", "A"]
        assert [t["title"] for t in quiet_store.list_tasks(project="web")] == ["A"]
        assert [t["title"] for t in quiet_store.list_tasks(status="archived")] == ["C"]
        assert len(quiet_store.list_tasks(include_archived=True)) == 3


class TestDependenciesAndClaims:
    """Tests for edges, journal and claim rows."""

    def test_insert_dependency_duplicate(self, quiet_store):
        a = quiet_store.insert_task("A")
        b = quiet_store.insert_task("B")

        assert quiet_store.insert_dependency(b["id"], a["id"]) is True
        assert quiet_store.insert_dependency(b["id"], a["id"]) is False
        assert quiet_store.get_dependency_ids(b["id"]) == [a["id"]]

    def test_delete_dependency(self, quiet_store):
        a = quiet_store.insert_task("A")
        b = quiet_store.insert_task("B")
        quiet_store.insert_dependency(b["id"], a["id"])

        assert quiet_store.delete_dependency(b["id"], a["id"]) is True
        assert quiet_store.delete_dependency(b["id"], a["id"]) is False

    def test_claim_rows(self, quiet_store):
        task = quiet_store.insert_task("Claimable")
        assert quiet_store.insert_claim(task["id"], "agent-a", claimed_at="2025-01-01T00:00:00Z")
        assert not quiet_store.insert_claim(task["id"], "agent-a", claimed_at="2025-01-01T00:00:00Z")

        active = quiet_store.get_active_claim(task["id"])
        assert active["agent"] == "agent-a"

        quiet_store.mark_claim_released(active["id"])
        assert quiet_store.get_active_claim(task["id"]) is None
        assert quiet_store.get_claims(task["id"])[0]["status"] == "released"

    def test_convoy_rows(self, quiet_store):
        convoy = quiet_store.insert_convoy("Launch")
        assert convoy["id"].startswith("convoy-")
        assert quiet_store.get_convoy(convoy["id"])["name"] == "Launch"
        assert [c["id"] for c in quiet_store.list_convoys()] == [convoy["id"]]


class TestExportOnWrite:
    """Tests for the after_write hook."""

    def test_after_write_exports_log(self, store):
        store.insert_task("Exported")
        store.after_write()
        assert "Exported" in store.log_path.read_text()

    def test_after_write_disabled(self, quiet_store):
        quiet_store.insert_task("Not exported")
        quiet_store.after_write()
        assert not quiet_store.log_path.exists()


class TestTimestamps:
    """Tests for timestamp helpers."""

    def test_parse_z_suffix(self):
        moment = parse_timestamp("2026-01-05T10:00:00.000000Z")
        assert moment == datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)

    def test_parse_sqlite_form_is_utc(self):
        moment = parse_timestamp("2026-01-05 10:00:00")
        assert moment.tzinfo is not None
        assert moment.hour == 10

    def test_format_round_trip(self):
        moment = datetime(2026, 1, 5, 10, 0, 0, 123456, tzinfo=timezone.utc)
        assert parse_timestamp(format_timestamp(moment)) == moment

    def test_timestamp_key_handles_garbage(self):
        assert timestamp_key(None) < timestamp_key("2020-01-01T00:00:00Z")
        assert timestamp_key("not a date") == timestamp_key("")
        assert timestamp_key(5) == timestamp_key(None)
        assert timestamp_key(["2020-01-01T00:00:00Z"]) == timestamp_key(None)

    def test_generate_id(self):
        assert generate_id().startswith("trak-")
        assert len(generate_id("convoy")) == len("convoy-") + 6


class TestConfig:
    """Tests for path discovery and config.yaml."""

    def test_find_db_path_walks_up(self, store, temp_dir):
        nested = temp_dir / "src" / "deep"
        nested.mkdir(parents=True)
        assert config.find_db_path(nested) == store.db_path.resolve()

    def test_get_db_path_env_override(self, temp_dir, monkeypatch):
        monkeypatch.setenv("TRAK_DB", str(temp_dir / "elsewhere.db"))
        assert config.get_db_path(temp_dir) == temp_dir / "elsewhere.db"

    def test_get_db_path_default(self, temp_dir):
        assert config.get_db_path(temp_dir) == temp_dir / ".trak" / "trak.db"

    def test_discover_initializes(self, temp_dir):
        discovered = Store.discover(temp_dir)
        assert discovered.get_schema_version() == SCHEMA_VERSION

    def test_config_values(self, trak_dir):
        assert config.get_config_value(trak_dir, "lock.timeout", 30) == 30

        config.set_config_value(trak_dir, "lock.timeout", 5)
        config.set_config_value(trak_dir, "gateway.url", "http://gw:1")

        assert config.get_lock_timeout(trak_dir) == 5
        assert config.get_config_value(trak_dir, "gateway.url") == "http://gw:1"
        assert config.load_config(trak_dir)["lock"] == {"timeout": 5}

    def test_verify_timeout_accepts_suffix(self, trak_dir):
        config.set_config_value(trak_dir, "verify.timeout", "2m")
        assert config.get_verify_timeout(trak_dir) == 120

    @pytest.mark.parametrize("value,expected", [(90, 90), ("90", 90), ("30m", 1800), ("2h", 7200)])
    def test_parse_duration(self, value, expected):
        assert config.parse_duration(value) == expected

    def test_parse_duration_invalid(self):
        with pytest.raises(ValueError):
            config.parse_duration("soon")

    def test_resolve_timeout_precedence(self):
        task = {"timeout_seconds": 600}
        assert config.resolve_timeout("5m", task, 900) == 300
        assert config.resolve_timeout(None, task, 900) == 600
        assert config.resolve_timeout(None, {"timeout_seconds": None}, 900) == 900
