"""JSON-collection backend for the agent state store."""

from __future__ import annotations

import logging
import secrets
from pathlib import Path
from typing import Any, Optional, Union

from .jsondb import Collection
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


class JsonAgentStore(AgentStore):
    """Agent store on agents.json / runs.json, each guarded by its own file lock.

    Upserts are a single locked read-modify-write, so two processes
    upserting disjoint fields of the same task both land.
    """

    def __init__(self, state_dir: Union[str, Path], lock_timeout: float = 5):
        self.state_dir = Path(state_dir)
        self.agents = Collection(self.state_dir / "agents.json", unique=["task_id"], lock_timeout=lock_timeout)
        self.runs = Collection(self.state_dir / "runs.json", unique=["id"], lock_timeout=lock_timeout)

    @staticmethod
    def _record(doc: dict[str, Any]) -> dict[str, Any]:
        record = normalize_record(doc["task_id"], doc)
        if not record["spawned_at"]:
            record["spawned_at"] = doc.get("_created_at")
        return record

    def upsert(self, task_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        fields = clean_fields(fields)
        fields["updated_at"] = now()

        defaults = {
            "status": AgentStatus.SPAWNED.value,
            "spawned_at": fields["updated_at"],
        }
        self.agents.update(
            {"task_id": task_id},
            {
                "$set": fields,
                "$setOnInsert": {k: v for k, v in defaults.items() if k not in fields},
            },
            upsert=True,
        )
        return self.get(task_id)

    def get(self, task_id: str) -> Optional[dict[str, Any]]:
        doc = self.agents.find_one({"task_id": task_id})
        return self._record(doc) if doc else None

    def list(self, status=None) -> list[dict[str, Any]]:
        statuses = _status_filter(status)
        query = {"status": {"$in": statuses}} if statuses is not None else None
        return sort_by_spawned([self._record(doc) for doc in self.agents.find(query)])

    def delete(self, task_id: str) -> bool:
        return self.agents.remove({"task_id": task_id}) > 0

    def clear(self) -> int:
        return self.agents.remove()

    def set_status(self, task_id, status, extra=None) -> bool:
        fields = clean_fields({**(extra or {}), "status": status})
        fields["updated_at"] = now()
        return self.agents.update({"task_id": task_id}, {"$set": fields}) > 0

    def create_run(self, task_id, log_file=None, started_at=None) -> str:
        run_id = secrets.token_hex(8)
        self.runs.insert({
            "id": run_id,
            "task_id": task_id,
            "started_at": started_at or now(),
            "ended_at": None,
            "exit_code": None,
            "log_file": log_file,
        })
        return run_id

    def complete_run(self, run_id, exit_code, ended_at=None) -> bool:
        return self.runs.update(
            {"id": run_id, "ended_at": None},
            {"$set": {"ended_at": ended_at or now(), "exit_code": exit_code}},
        ) > 0

    def runs_for(self, task_id: str) -> list[dict[str, Any]]:
        docs = self.runs.find({"task_id": task_id}, sort=("started_at", -1))
        return [{name: doc.get(name) for name in RUN_FIELDS} for doc in docs]
