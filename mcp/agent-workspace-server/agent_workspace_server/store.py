"""
Agent State Store

Persistent records of agents (one per task) and their runs (one per
execution attempt). Two interchangeable backends implement AgentStore:

  - sqlite: agents.db, WAL journal, one atomic INSERT ... ON CONFLICT per upsert
  - json:   agents.json / runs.json document collections behind a file lock

Both are written by the spawning controller and by the agent's own
completion hook, possibly from different processes at the same time.

The store accepts any status write. The lifecycle below is enforced by the
callers in agent_tools, which consult can_transition() before writing:

    spawned -> running -> completed | failed | blocked
    spawned | running -> killed
    spawned | running -> orphaned -> spawned (recovered)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union


logger = logging.getLogger(__name__)


class AgentStatus(str, Enum):
    SPAWNED = "spawned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    KILLED = "killed"
    ORPHANED = "orphaned"


LIVE_STATUSES = frozenset({AgentStatus.SPAWNED, AgentStatus.RUNNING})
TERMINAL_STATUSES = frozenset(set(AgentStatus) - LIVE_STATUSES)

ALLOWED_TRANSITIONS = {
    AgentStatus.SPAWNED: {AgentStatus.RUNNING, AgentStatus.FAILED, AgentStatus.KILLED, AgentStatus.ORPHANED},
    AgentStatus.RUNNING: {
        AgentStatus.COMPLETED, AgentStatus.FAILED, AgentStatus.BLOCKED,
        AgentStatus.KILLED, AgentStatus.ORPHANED,
    },
    # A finished task may be spawned again; the record is overwritten
    AgentStatus.COMPLETED: {AgentStatus.SPAWNED},
    AgentStatus.FAILED: {AgentStatus.SPAWNED},
    AgentStatus.BLOCKED: {AgentStatus.SPAWNED},
    AgentStatus.KILLED: {AgentStatus.SPAWNED},
    AgentStatus.ORPHANED: {AgentStatus.SPAWNED},
}

AGENT_FIELDS = (
    "status",
    "spawned_at",
    "ended_at",
    "pid",
    "exit_code",
    "exit_signal",
    "worktree_path",
    "branch",
    "base_branch",
    "branching",
    "mission_file",
    "log_file",
    "timeout",
    "dirty_worktree",
    "uncommitted_files",
    "recovered_at",
    "killed_at",
    "orphaned_at",
    "migrated_at",
    "updated_at",
)

RUN_FIELDS = ("id", "task_id", "started_at", "ended_at", "exit_code", "log_file")


def can_transition(from_status: Union[str, AgentStatus, None], to_status: Union[str, AgentStatus]) -> bool:
    """Whether the lifecycle allows from_status -> to_status (None = no record yet)."""
    to_status = AgentStatus(to_status)
    if from_status is None:
        return to_status is AgentStatus.SPAWNED
    return to_status in ALLOWED_TRANSITIONS[AgentStatus(from_status)]


def now() -> str:
    return datetime.now().isoformat()


def clean_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Validate agent fields before a write.

    Raises ValueError for unknown field names and unknown status values.
    Enum statuses are stored as their string value.
    """
    unknown = sorted(set(fields) - set(AGENT_FIELDS))
    if unknown:
        raise ValueError(f"Unknown agent field(s): {', '.join(unknown)}")

    cleaned = dict(fields)
    if "status" in cleaned:
        cleaned["status"] = AgentStatus(cleaned["status"]).value
    return cleaned


def normalize_record(task_id: str, data: dict[str, Any]) -> dict[str, Any]:
    record: dict[str, Any] = {"task_id": task_id}
    for name in AGENT_FIELDS:
        record[name] = data.get(name)
    if record["dirty_worktree"] is not None:
        record["dirty_worktree"] = bool(record["dirty_worktree"])
    return record


def sort_by_spawned(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Newest spawn first; records without spawned_at go last."""
    with_time = [r for r in records if r.get("spawned_at")]
    without = [r for r in records if not r.get("spawned_at")]
    return sorted(with_time, key=lambda r: r["spawned_at"], reverse=True) + without


class AgentStore(ABC):
    """Operations shared by both backends."""

    @abstractmethod
    def upsert(self, task_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Merge fields into the task's record, creating it if needed.

        Unspecified fields of an existing record are left untouched. A new
        record defaults to status spawned and spawned_at now. Returns the
        stored record.
        """

    @abstractmethod
    def get(self, task_id: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    def list(self, status: Optional[Union[str, AgentStatus, list]] = None) -> list[dict[str, Any]]:
        """All records (optionally filtered by one or more statuses), newest spawn first."""

    @abstractmethod
    def delete(self, task_id: str) -> bool:
        ...

    @abstractmethod
    def clear(self) -> int:
        """Delete every agent record. Returns how many were removed."""

    @abstractmethod
    def set_status(
        self,
        task_id: str,
        status: Union[str, AgentStatus],
        extra: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Write status (plus extra fields) to an existing record. False if there is none."""

    @abstractmethod
    def create_run(
        self,
        task_id: str,
        log_file: Optional[str] = None,
        started_at: Optional[str] = None,
    ) -> str:
        ...

    @abstractmethod
    def complete_run(self, run_id: str, exit_code: Optional[int], ended_at: Optional[str] = None) -> bool:
        """Set ended_at/exit_code of a run. Only the first completion is recorded."""

    @abstractmethod
    def runs_for(self, task_id: str) -> list[dict[str, Any]]:
        """Runs of a task, most recently started first."""

    def close(self) -> None:
        pass

    def __enter__(self) -> "AgentStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def migrate_from_state(self, agents: dict[str, dict[str, Any]]) -> int:
        """Bulk-import agent records from a legacy {task_id: fields} mapping.

        Unknown legacy keys are dropped. Every imported record is stamped
        with migrated_at.
        """
        migrated_at = now()
        count = 0
        for task_id, data in agents.items():
            fields = {k: v for k, v in data.items() if k in AGENT_FIELDS}
            dropped = sorted(set(data) - set(AGENT_FIELDS) - {"task_id"})
            if dropped:
                logger.info(f"Migrating {task_id}: dropping legacy fields {', '.join(dropped)}")
            fields["migrated_at"] = migrated_at
            self.upsert(task_id, fields)
            count += 1
        return count


def _status_filter(status: Optional[Union[str, AgentStatus, list]]) -> Optional[list[str]]:
    if status is None:
        return None
    values = status if isinstance(status, (list, tuple, set, frozenset)) else [status]
    return [AgentStatus(s).value for s in values]


def open_store(
    backend: str,
    state_dir: Union[str, Path],
    lock_timeout: float = 5,
) -> AgentStore:
    if backend == "sqlite":
        from .sqlite_store import SqliteAgentStore
        return SqliteAgentStore(Path(state_dir) / "agents.db")
    if backend == "json":
        from .json_store import JsonAgentStore
        return JsonAgentStore(state_dir, lock_timeout=lock_timeout)
    raise ValueError(f"Unknown store backend '{backend}'")

