"""SQLite backend for the agent state store."""

from __future__ import annotations

import logging
import secrets
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from .store import (
    AgentStatus,
    AgentStore,
    RUN_FIELDS,
    _status_filter,
    clean_fields,
    normalize_record,
    now,
    sort_by_spawned,
)


logger = logging.getLogger(__name__)

# Messages sqlite3 raises for a damaged file, as opposed to a busy one
CORRUPTION_MARKERS = ("file is not a database", "database disk image is malformed")


_SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER PRIMARY KEY,
    applied_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agents (
    task_id             TEXT PRIMARY KEY,
    status              TEXT NOT NULL DEFAULT 'spawned',
    spawned_at          TEXT,
    ended_at            TEXT,
    pid                 INTEGER,
    exit_code           INTEGER,
    exit_signal         TEXT,
    worktree_path       TEXT,
    branch              TEXT,
    base_branch         TEXT,
    branching           TEXT,
    mission_file        TEXT,
    log_file            TEXT,
    timeout             REAL,
    dirty_worktree      INTEGER,
    uncommitted_files   INTEGER,
    recovered_at        TEXT,
    killed_at           TEXT,
    orphaned_at         TEXT,
    migrated_at         TEXT,
    updated_at          TEXT
);

CREATE TABLE IF NOT EXISTS runs (
    id          TEXT PRIMARY KEY,
    task_id     TEXT NOT NULL,
    started_at  TEXT NOT NULL,
    ended_at    TEXT,
    exit_code   INTEGER,
    log_file    TEXT
);

CREATE INDEX IF NOT EXISTS idx_agents_status ON agents(status);
CREATE INDEX IF NOT EXISTS idx_runs_task ON runs(task_id, started_at);
"""


class SqliteAgentStore(AgentStore):
    """Agent store on an embedded SQLite database in WAL mode.

    Each upsert is a single INSERT ... ON CONFLICT statement, so concurrent
    upserts on the same task never lose each other's fields. A connection is
    bound to the thread that opened it; use one store per thread.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Union[str, Path], timeout: float = 5):
        self._db_path = Path(db_path)
        self._timeout = timeout
        self._conn: Optional[sqlite3.Connection] = None

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=self._timeout)
        conn.row_factory = sqlite3.Row
        self._conn = conn
        conn.execute("PRAGMA journal_mode=WAL")
        self._ensure_schema()
        return conn

    def connect(self) -> sqlite3.Connection:
        """Open the database, creating the schema on first use.

        A busy database (another writer holding the lock past the timeout)
        raises sqlite3.OperationalError and leaves the file alone. Only a
        file sqlite reports as damaged is moved aside to
        ``agents.db.corrupt-<timestamp>`` and replaced by a fresh database.
        """
        if self._conn is not None:
            return self._conn

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            return self._open()
        except sqlite3.OperationalError:
            self.close()
            raise
        except sqlite3.DatabaseError as e:
            self.close()
            if not any(marker in str(e) for marker in CORRUPTION_MARKERS):
                raise
            backup = self._move_aside()
            logger.warning(f"Corrupted agent database moved to {backup}, recreating: {e}")
            return self._open()

    def _move_aside(self) -> Path:
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        backup = self._db_path.with_name(f"{self._db_path.name}.corrupt-{stamp}")
        self._db_path.rename(backup)
        for suffix in ("-wal", "-shm"):
            sidecar = Path(f"{self._db_path}{suffix}")
            if sidecar.exists():
                sidecar.rename(Path(f"{backup}{suffix}"))
        return backup

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        return self.connect()

    def _ensure_schema(self) -> None:
        assert self._conn is not None
        with self._conn:
            self._conn.executescript(_SCHEMA_V1)
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                (self.SCHEMA_VERSION, now()),
            )

    def schema_version(self) -> int:
        row = self.conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] or 0

    # ========================================================================
    # Agents
    # ========================================================================

    def upsert(self, task_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        fields = clean_fields(fields)
        fields["updated_at"] = now()

        insert_values = {
            "status": AgentStatus.SPAWNED.value,
            "spawned_at": fields["updated_at"],
            **fields,
        }
        columns = ["task_id", *insert_values]
        placeholders = ", ".join("?" for _ in columns)
        assignments = ", ".join(f"{name} = excluded.{name}" for name in fields)

        with self.conn:
            self.conn.execute(
                f"INSERT INTO agents ({', '.join(columns)}) VALUES ({placeholders}) "
                f"ON CONFLICT(task_id) DO UPDATE SET {assignments}",
                [task_id, *insert_values.values()],
            )
        return self.get(task_id)

    def get(self, task_id: str) -> Optional[dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM agents WHERE task_id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        return normalize_record(task_id, dict(row))

    def list(self, status=None) -> list[dict[str, Any]]:
        statuses = _status_filter(status)
        if statuses is None:
            rows = self.conn.execute("SELECT * FROM agents").fetchall()
        else:
            placeholders = ", ".join("?" for _ in statuses)
            rows = self.conn.execute(
                f"SELECT * FROM agents WHERE status IN ({placeholders})", statuses
            ).fetchall()
        return sort_by_spawned([normalize_record(row["task_id"], dict(row)) for row in rows])

    def delete(self, task_id: str) -> bool:
        with self.conn:
            cursor = self.conn.execute("DELETE FROM agents WHERE task_id = ?", (task_id,))
        return cursor.rowcount > 0

    def clear(self) -> int:
        with self.conn:
            cursor = self.conn.execute("DELETE FROM agents")
        return cursor.rowcount

    def set_status(self, task_id, status, extra=None) -> bool:
        fields = clean_fields({**(extra or {}), "status": status})
        fields["updated_at"] = now()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self.conn:
            cursor = self.conn.execute(
                f"UPDATE agents SET {assignments} WHERE task_id = ?",
                [*fields.values(), task_id],
            )
        return cursor.rowcount > 0

    # ========================================================================
    # Runs
    # ========================================================================

    def create_run(self, task_id, log_file=None, started_at=None) -> str:
        run_id = secrets.token_hex(8)
        with self.conn:
            self.conn.execute(
                "INSERT INTO runs (id, task_id, started_at, log_file) VALUES (?, ?, ?, ?)",
                (run_id, task_id, started_at or now(), log_file),
            )
        return run_id

    def complete_run(self, run_id, exit_code, ended_at=None) -> bool:
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE runs SET ended_at = ?, exit_code = ? WHERE id = ? AND ended_at IS NULL",
                (ended_at or now(), exit_code, run_id),
            )
        return cursor.rowcount > 0

    def runs_for(self, task_id: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            f"SELECT {', '.join(RUN_FIELDS)} FROM runs WHERE task_id = ? "
            "ORDER BY started_at DESC, rowid DESC",
            (task_id,),
        ).fetchall()
        return [dict(row) for row in rows]

