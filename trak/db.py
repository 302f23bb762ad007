"""SQLite store for tasks, dependencies, journals, claims, convoys and mail.

A ``Store`` is an explicit handle on one working copy's database file.
Every operation goes through a handle, so several stores (for example in
tests) can coexist in one process.
"""

import logging
import secrets
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

from . import config
from .errors import TaskNotFoundError

logger = logging.getLogger(__name__)


# Schema version for migrations
SCHEMA_VERSION = 3

# Scalar task columns in portable log order
TASK_COLUMNS = [
    "id",
    "title",
    "description",
    "status",
    "priority",
    "project",
    "blocked_by",
    "parent_id",
    "epic_id",
    "is_epic",
    "created_at",
    "updated_at",
    "agent_session",
    "tokens_used",
    "cost_usd",
    "tags",
    "assigned_to",
    "verified_by",
    "verification_status",
    "created_from",
    "verify_command",
    "wip_snapshot",
    "autonomy",
    "budget_usd",
    "tokens_in",
    "tokens_out",
    "model_used",
    "duration_seconds",
    "retry_count",
    "max_retries",
    "last_failure_reason",
    "retry_after",
    "timeout_seconds",
    "convoy",
]

# Defaults used when a record (or a create call) omits a column
TASK_DEFAULTS: dict[str, Any] = {
    "description": "",
    "status": "open",
    "priority": config.DEFAULT_PRIORITY,
    "project": "",
    "blocked_by": "",
    "parent_id": None,
    "epic_id": None,
    "is_epic": 0,
    "agent_session": "",
    "tokens_used": 0,
    "cost_usd": 0.0,
    "tags": "",
    "assigned_to": "",
    "verified_by": "",
    "verification_status": "",
    "created_from": "",
    "verify_command": "",
    "wip_snapshot": "",
    "autonomy": "manual",
    "budget_usd": None,
    "tokens_in": 0,
    "tokens_out": 0,
    "model_used": "",
    "duration_seconds": 0,
    "retry_count": 0,
    "max_retries": config.DEFAULT_MAX_RETRIES,
    "last_failure_reason": "",
    "retry_after": None,
    "timeout_seconds": None,
    "convoy": None,
}

# Columns added in schema v2, applied to v1 databases by migrate_schema
_V2_TASK_COLUMNS = [
    ("epic_id", "TEXT"),
    ("is_epic", "INTEGER DEFAULT 0"),
    ("assigned_to", "TEXT DEFAULT ''"),
    ("verified_by", "TEXT DEFAULT ''"),
    ("verification_status", "TEXT DEFAULT ''"),
    ("created_from", "TEXT DEFAULT ''"),
    ("verify_command", "TEXT DEFAULT ''"),
    ("wip_snapshot", "TEXT DEFAULT ''"),
    ("autonomy", "TEXT DEFAULT 'manual'"),
    ("budget_usd", "REAL"),
    ("tokens_in", "INTEGER DEFAULT 0"),
    ("tokens_out", "INTEGER DEFAULT 0"),
    ("model_used", "TEXT DEFAULT ''"),
    ("duration_seconds", "REAL DEFAULT 0"),
    ("retry_count", "INTEGER DEFAULT 0"),
    ("max_retries", "INTEGER DEFAULT 3"),
    ("last_failure_reason", "TEXT DEFAULT ''"),
    ("retry_after", "TEXT"),
    ("timeout_seconds", "INTEGER"),
    ("convoy", "TEXT"),
]


def utcnow() -> str:
    """Current UTC time as a sortable ISO-8601 string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp into an aware UTC datetime.

    Accepts both ISO-8601 (``2026-01-05T10:00:00.000000Z``) and the
    SQLite ``datetime('now')`` form (``2026-01-05 10:00:00``). Naive values
    are taken as UTC.

    Raises:
        ValueError: If the value is not a timestamp
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def timestamp_key(value: Any) -> datetime:
    """Sort key for timestamps; missing or unparseable values sort first."""
    if not value or not isinstance(value, str):
        return _EPOCH
    try:
        return parse_timestamp(value)
    except ValueError:
        return _EPOCH


def generate_id(prefix: str = "trak") -> str:
    """Generate an id such as ``trak-3fa2c1``."""
    return f"{prefix}-{secrets.token_hex(3)}"


class Store:
    """Handle on one working copy's task database.

    Args:
        db_path: Path to the SQLite file; its directory is the trak dir
        export_on_write: Rewrite the portable log after each lifecycle write
    """

    def __init__(self, db_path: Path | str, export_on_write: bool = True):
        self.db_path = Path(db_path)
        self.export_on_write = export_on_write

    @classmethod
    def discover(cls, start: Path | None = None, **kwargs) -> "Store":
        """Open the store for the working copy containing ``start``.

        Honors TRAK_DB, walks up to find an existing ``.trak/trak.db`` and
        otherwise initialises one under ``start``.
        """
        store = cls(config.get_db_path(start), **kwargs)
        store.migrate_schema()
        return store

    @property
    def trak_dir(self) -> Path:
        return self.db_path.parent

    @property
    def log_path(self) -> Path:
        return config.get_log_path(self.db_path)

    def config_value(self, key: str, default: Any = None) -> Any:
        return config.get_config_value(self.trak_dir, key, default)

    def __repr__(self) -> str:
        return f"Store({str(self.db_path)!r})"

    # =========================================================================
    # Connection and schema
    # =========================================================================

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with proper settings.

        Configures:
        - WAL mode for better concurrent read/write
        - Foreign keys enforcement
        - Row factory for dict-like access

        Yields:
            SQLite connection with transaction management
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row

        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute("PRAGMA synchronous=NORMAL")

            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _using(self, conn: sqlite3.Connection | None) -> Generator[sqlite3.Connection, None, None]:
        """Reuse the caller's connection or open a fresh one."""
        if conn is not None:
            yield conn
        else:
            with self.connection() as new_conn:
                yield new_conn

    def init_schema(self) -> None:
        """Initialize the database schema.

        Creates all required tables if they don't exist.
        Safe to call multiple times.
        """
        with self.connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    status TEXT DEFAULT 'open',
                    priority INTEGER DEFAULT 1,
                    project TEXT DEFAULT '',
                    blocked_by TEXT DEFAULT '',
                    parent_id TEXT,
                    epic_id TEXT,
                    is_epic INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    agent_session TEXT DEFAULT '',
                    tokens_used INTEGER DEFAULT 0,
                    cost_usd REAL DEFAULT 0.0,
                    tags TEXT DEFAULT '',
                    assigned_to TEXT DEFAULT '',
                    verified_by TEXT DEFAULT '',
                    verification_status TEXT DEFAULT '',
                    created_from TEXT DEFAULT '',
                    verify_command TEXT DEFAULT '',
                    wip_snapshot TEXT DEFAULT '',
                    autonomy TEXT DEFAULT 'manual',
                    budget_usd REAL,
                    tokens_in INTEGER DEFAULT 0,
                    tokens_out INTEGER DEFAULT 0,
                    model_used TEXT DEFAULT '',
                    duration_seconds REAL DEFAULT 0,
                    retry_count INTEGER DEFAULT 0,
                    max_retries INTEGER DEFAULT 3,
                    last_failure_reason TEXT DEFAULT '',
                    retry_after TEXT,
                    timeout_seconds INTEGER,
                    convoy TEXT
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_priority ON tasks(priority)")

            # Dependency edges - child waits on parent
            conn.execute("""
                CREATE TABLE IF NOT EXISTS dependencies (
                    child_id TEXT NOT NULL,
                    parent_id TEXT NOT NULL,
                    PRIMARY KEY (child_id, parent_id),
                    FOREIGN KEY (child_id) REFERENCES tasks(id) ON DELETE CASCADE,
                    FOREIGN KEY (parent_id) REFERENCES tasks(id) ON DELETE CASCADE
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_dependencies_parent ON dependencies(parent_id)")

            # Journal - append-only task history
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    entry TEXT NOT NULL,
                    author TEXT DEFAULT 'human',
                    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_task_log_task_id ON task_log(task_id)")

            self._create_v2_tables(conn)
            self._create_v3_tables(conn)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_info (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            conn.execute(
                "INSERT OR REPLACE INTO schema_info (key, value) VALUES (?, ?)",
                ("version", str(SCHEMA_VERSION)),
            )

    @staticmethod
    def _create_v2_tables(conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS task_claims (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id TEXT NOT NULL,
                agent TEXT NOT NULL,
                model TEXT DEFAULT '',
                status TEXT DEFAULT 'claimed',
                claimed_at TEXT NOT NULL,
                released_at TEXT,
                UNIQUE (task_id, agent, claimed_at),
                FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_task_claims_task_id ON task_claims(task_id)")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS convoys (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

    @staticmethod
    def _create_v3_tables(conn: sqlite3.Connection) -> None:
        # task_id is not a foreign key: rebuilding from the log re-creates tasks
        conn.execute("""
            CREATE TABLE IF NOT EXISTS mailbox (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                from_agent TEXT NOT NULL,
                to_agent TEXT NOT NULL DEFAULT 'all',
                task_id TEXT DEFAULT NULL,
                message TEXT NOT NULL,
                read INTEGER DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_mailbox_to_agent ON mailbox(to_agent)")

    def get_schema_version(self) -> int | None:
        """Get current schema version from database.

        Returns:
            Schema version number or None if not initialized
        """
        if not self.db_path.exists():
            return None

        try:
            with self.connection() as conn:
                cursor = conn.execute(
                    "SELECT value FROM schema_info WHERE key = 'version'"
                )
                row = cursor.fetchone()
                return int(row["value"]) if row else None
        except sqlite3.OperationalError:
            return None

    def migrate_schema(self) -> bool:
        """Migrate database schema to current version.

        Returns:
            True if migration was performed, False if already current
        """
        current = self.get_schema_version()
        if current is None:
            self.init_schema()
            return True

        if current >= SCHEMA_VERSION:
            return False

        with self.connection() as conn:
            # Migration from v1 to v2: claims, convoys, accounting and retry columns
            if current < 2:
                for column, decl in _V2_TASK_COLUMNS:
                    try:
                        conn.execute(f"ALTER TABLE tasks ADD COLUMN {column} {decl}")
                    except sqlite3.OperationalError:
                        pass  # Column already exists
                self._create_v2_tables(conn)

            # Migration from v2 to v3: agent mailbox
            if current < 3:
                self._create_v3_tables(conn)

            conn.execute(
                "INSERT OR REPLACE INTO schema_info (key, value) VALUES (?, ?)",
                ("version", str(SCHEMA_VERSION)),
            )

        logger.info("Migrated %s from schema v%s to v%s", self.db_path, current, SCHEMA_VERSION)
        return True

    def after_write(self) -> None:
        """Rewrite the portable log to mirror the current state."""
        if not self.export_on_write:
            return
        from .sync import export_log

        export_log(self)

    # =========================================================================
    # Task Operations
    # =========================================================================

    def insert_task(
        self,
        title: str,
        task_id: str | None = None,
        author: str = "human",
        conn: sqlite3.Connection | None = None,
        **fields: Any,
    ) -> dict[str, Any]:
        """Create a new task and journal its creation.

        Args:
            title: Task title
            task_id: Explicit id, generated when omitted
            author: Journal author for the creation entry
            conn: Existing connection to join its transaction
            **fields: Any other task column

        Returns:
            Created task as dictionary

        Raises:
            ValueError: On unknown columns or out-of-range values
        """
        _validate_fields(fields)
        task_id = task_id or generate_id()
        now = utcnow()

        row = dict(TASK_DEFAULTS)
        row.update(fields)
        row.update({"id": task_id, "title": title, "created_at": now, "updated_at": now})
        row["is_epic"] = int(bool(row["is_epic"]))

        columns = [c for c in TASK_COLUMNS if c in row]
        placeholders = ", ".join("?" for _ in columns)

        with self._using(conn) as conn:
            conn.execute(
                f"INSERT INTO tasks ({', '.join(columns)}) VALUES ({placeholders})",
                [row[c] for c in columns],
            )
            self.append_journal(task_id, "Created", author=author, conn=conn)
            logger.debug("Created task %s: %s", task_id, title)
            return self.get_task(task_id, conn=conn)

    def get_task(self, task_id: str, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
        """Get a task by ID.

        Args:
            task_id: Task identifier

        Returns:
            Task as dictionary or None if not found
        """
        with self._using(conn) as conn:
            cursor = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def require_task(self, task_id: str, conn: sqlite3.Connection | None = None) -> dict[str, Any]:
        """Like get_task, but raises TaskNotFoundError when missing."""
        task = self.get_task(task_id, conn=conn)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def update_task(
        self,
        task_id: str,
        conn: sqlite3.Connection | None = None,
        **fields: Any,
    ) -> dict[str, Any] | None:
        """Update task fields.

        Args:
            task_id: Task identifier
            **fields: Fields to update

        Returns:
            Updated task or None if not found
        """
        if not fields:
            return self.get_task(task_id, conn=conn)

        _validate_fields(fields)
        fields.setdefault("updated_at", utcnow())

        set_clause = ", ".join(f"{k} = ?" for k in fields)
        values = list(fields.values())
        values.append(task_id)

        with self._using(conn) as conn:
            conn.execute(f"UPDATE tasks SET {set_clause} WHERE id = ?", values)
            return self.get_task(task_id, conn=conn)

    def list_tasks(
        self,
        status: str | None = None,
        project: str | None = None,
        convoy: str | None = None,
        include_archived: bool = False,
    ) -> list[dict[str, Any]]:
        """List tasks ordered by priority then creation time.

        Args:
            status: Filter by status
            project: Filter by project label
            convoy: Filter by convoy id
            include_archived: Include archived tasks when no status is given

        Returns:
            List of task dictionaries
        """
        conditions = []
        params: list[Any] = []

        if status:
            conditions.append("status = ?")
            params.append(status)
        elif not include_archived:
            conditions.append("status != 'archived'")

        if project:
            conditions.append("project = ?")
            params.append(project)

        if convoy:
            conditions.append("convoy = ?")
            params.append(convoy)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        with self.connection() as conn:
            cursor = conn.execute(
                f"SELECT * FROM tasks {where} ORDER BY priority ASC, created_at ASC",
                params,
            )
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # Dependencies
    # =========================================================================

    def insert_dependency(
        self,
        child_id: str,
        parent_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Insert an edge; returns False if it already existed."""
        with self._using(conn) as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO dependencies (child_id, parent_id) VALUES (?, ?)",
                (child_id, parent_id),
            )
            return cursor.rowcount > 0

    def delete_dependency(
        self,
        child_id: str,
        parent_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        with self._using(conn) as conn:
            cursor = conn.execute(
                "DELETE FROM dependencies WHERE child_id = ? AND parent_id = ?",
                (child_id, parent_id),
            )
            return cursor.rowcount > 0

    def get_dependency_ids(self, child_id: str, conn: sqlite3.Connection | None = None) -> list[str]:
        """Parent ids the task waits on, sorted for stable output."""
        with self._using(conn) as conn:
            cursor = conn.execute(
                "SELECT parent_id FROM dependencies WHERE child_id = ? ORDER BY parent_id",
                (child_id,),
            )
            return [row["parent_id"] for row in cursor.fetchall()]

    # =========================================================================
    # Journal
    # =========================================================================

    def append_journal(
        self,
        task_id: str,
        entry: str,
        author: str = "human",
        timestamp: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, Any]:
        """Append an immutable journal entry for a task.

        Args:
            task_id: Task identifier
            entry: Free text
            author: Who wrote it (human, system, agent name)
            timestamp: Explicit timestamp, used by import; defaults to now

        Returns:
            The stored entry
        """
        timestamp = timestamp or utcnow()
        with self._using(conn) as conn:
            cursor = conn.execute(
                "INSERT INTO task_log (task_id, timestamp, entry, author) VALUES (?, ?, ?, ?)",
                (task_id, timestamp, entry, author),
            )
            return {
                "id": cursor.lastrowid,
                "task_id": task_id,
                "timestamp": timestamp,
                "entry": entry,
                "author": author,
            }

    def get_journal(self, task_id: str, conn: sqlite3.Connection | None = None) -> list[dict[str, Any]]:
        """Get a task's journal in chronological order."""
        with self._using(conn) as conn:
            cursor = conn.execute(
                """
                SELECT * FROM task_log
                WHERE task_id = ?
                ORDER BY timestamp ASC, id ASC
                """,
                (task_id,),
            )
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # Claims
    # =========================================================================

    def insert_claim(
        self,
        task_id: str,
        agent: str,
        model: str = "",
        status: str = "claimed",
        claimed_at: str | None = None,
        released_at: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Insert a claim row; duplicates by (task, agent, claimed_at) are ignored."""
        with self._using(conn) as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO task_claims
                    (task_id, agent, model, status, claimed_at, released_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (task_id, agent, model or "", status, claimed_at or utcnow(), released_at),
            )
            return cursor.rowcount > 0

    def get_active_claim(self, task_id: str, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
        with self._using(conn) as conn:
            cursor = conn.execute(
                """
                SELECT * FROM task_claims
                WHERE task_id = ? AND status = 'claimed'
                ORDER BY claimed_at DESC LIMIT 1
                """,
                (task_id,),
            )
            row = cursor.fetchone()
            return dict(row) if row else None

    def mark_claim_released(self, claim_id: int, conn: sqlite3.Connection | None = None) -> None:
        with self._using(conn) as conn:
            conn.execute(
                "UPDATE task_claims SET status = 'released', released_at = ? WHERE id = ?",
                (utcnow(), claim_id),
            )

    def get_claims(self, task_id: str, conn: sqlite3.Connection | None = None) -> list[dict[str, Any]]:
        with self._using(conn) as conn:
            cursor = conn.execute(
                "SELECT * FROM task_claims WHERE task_id = ? ORDER BY claimed_at ASC, id ASC",
                (task_id,),
            )
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # Convoys
    # =========================================================================

    def insert_convoy(
        self,
        name: str,
        convoy_id: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, Any]:
        convoy_id = convoy_id or generate_id("convoy")
        with self._using(conn) as conn:
            conn.execute(
                "INSERT INTO convoys (id, name, created_at) VALUES (?, ?, ?)",
                (convoy_id, name, utcnow()),
            )
            return self.get_convoy(convoy_id, conn=conn)

    def get_convoy(self, convoy_id: str, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
        with self._using(conn) as conn:
            cursor = conn.execute("SELECT * FROM convoys WHERE id = ?", (convoy_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def list_convoys(self) -> list[dict[str, Any]]:
        with self.connection() as conn:
            cursor = conn.execute("SELECT * FROM convoys ORDER BY created_at ASC")
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # Mailbox
    # =========================================================================

    def insert_message(
        self,
        from_agent: str,
        to_agent: str,
        message: str,
        task_id: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, Any]:
        with self._using(conn) as conn:
            cursor = conn.execute(
                """
                INSERT INTO mailbox (from_agent, to_agent, task_id, message, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (from_agent, to_agent, task_id, message, utcnow()),
            )
            row = conn.execute("SELECT * FROM mailbox WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return dict(row)

    def get_messages(
        self,
        agent: str | None = None,
        unread_only: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Messages addressed to ``agent`` (or to everyone), newest first.

        With ``agent=None`` every message is returned.
        """
        clauses = []
        params: list[Any] = []
        if agent is not None:
            clauses.append("(to_agent = ? OR to_agent = 'all')")
            params.append(agent)
        if unread_only:
            clauses.append("read = 0")

        query = "SELECT * FROM mailbox"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self.connection() as conn:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    def mark_message_read(self, message_id: int) -> bool:
        with self.connection() as conn:
            cursor = conn.execute("UPDATE mailbox SET read = 1 WHERE id = ?", (message_id,))
            return cursor.rowcount > 0


def _validate_fields(fields: dict[str, Any]) -> None:
    """Reject unknown columns and out-of-range values before they hit SQL."""
    unknown = set(fields) - set(TASK_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")

    if "status" in fields and fields["status"] not in config.STATUSES:
        raise ValueError(f"Invalid status: {fields['status']}")

    if "priority" in fields:
        priority = fields["priority"]
        if not isinstance(priority, int) or not 0 <= priority <= 3:
            raise ValueError(f"Priority must be an integer 0-3, got {priority!r}")

    if "autonomy" in fields and fields["autonomy"] not in ("manual", "auto"):
        raise ValueError(f"Invalid autonomy: {fields['autonomy']}")
