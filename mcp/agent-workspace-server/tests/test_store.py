"""
Tests for the agent state store (both backends).

Run with: pytest tests/test_store.py -v
"""

import sqlite3
import threading
import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from agent_workspace_server.json_store import JsonAgentStore
from agent_workspace_server.sqlite_store import SqliteAgentStore
from agent_workspace_server.store import (
    AgentStatus,
    can_transition,
    clean_fields,
    open_store,
    sort_by_spawned,
)


BACKENDS = ["sqlite", "json"]


@pytest.fixture(params=BACKENDS)
def backend(request):
    return request.param


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def store(backend, state_dir):
    agent_store = open_store(backend, state_dir)
    yield agent_store
    agent_store.close()


# ============================================================================
# Lifecycle rules
# ============================================================================

class TestTransitions:
    def test_normal_path(self):
        assert can_transition(None, AgentStatus.SPAWNED)
        assert can_transition("spawned", "running")
        assert can_transition("running", "completed")
        assert can_transition("running", "blocked")

    def test_rejected(self):
        assert not can_transition(None, "running")
        assert not can_transition("completed", "running")
        assert not can_transition("spawned", "completed")
        assert not can_transition("orphaned", "running")

    def test_respawn_and_recovery(self):
        for status in ("completed", "failed", "blocked", "killed", "orphaned"):
            assert can_transition(status, "spawned")

    def test_unknown_status_raises(self):
        with pytest.raises(ValueError):
            can_transition("running", "paused")


class TestHelpers:
    def test_clean_fields_rejects_unknown(self):
        with pytest.raises(ValueError, match="Unknown agent field"):
            clean_fields({"colour": "red"})

    def test_clean_fields_converts_status(self):
        assert clean_fields({"status": AgentStatus.RUNNING}) == {"status": "running"}

    def test_sort_by_spawned(self):
        records = [{"spawned_at": "2024-01-01"}, {"spawned_at": None}, {"spawned_at": "2024-02-01"}]
        assert [r["spawned_at"] for r in sort_by_spawned(records)] == ["2024-02-01", "2024-01-01", None]

    def test_open_store_backends(self, tmp_path):
        assert isinstance(open_store("sqlite", tmp_path), SqliteAgentStore)
        assert isinstance(open_store("json", tmp_path), JsonAgentStore)
        with pytest.raises(ValueError):
            open_store("redis", tmp_path)


# ============================================================================
# Store contract (both backends)
# ============================================================================

class TestUpsert:
    def test_new_record_defaults(self, store):
        record = store.upsert("T001", {"branch": "task/T001"})
        assert record["task_id"] == "T001"
        assert record["status"] == "spawned"
        assert record["spawned_at"]
        assert record["branch"] == "task/T001"
        assert record["pid"] is None

    def test_merges_fields(self, store):
        store.upsert("T001", {"status": "running"})
        store.upsert("T001", {"pid": 123})
        record = store.get("T001")
        assert record["status"] == "running"
        assert record["pid"] == 123

    def test_order_does_not_matter(self, store):
        store.upsert("T001", {"status": "running"})
        store.upsert("T001", {"pid": 123})
        store.upsert("T002", {"pid": 123})
        store.upsert("T002", {"status": "running"})

        first, second = store.get("T001"), store.get("T002")
        assert (first["status"], first["pid"]) == (second["status"], second["pid"]) == ("running", 123)

    def test_spawned_at_kept_on_update(self, store):
        original = store.upsert("T001", {})["spawned_at"]
        assert store.upsert("T001", {"status": "running"})["spawned_at"] == original

    def test_dirty_worktree_is_bool(self, store):
        assert store.upsert("T001", {"dirty_worktree": True})["dirty_worktree"] is True

    def test_unknown_field_rejected(self, store):
        with pytest.raises(ValueError):
            store.upsert("T001", {"phase": "review"})
        assert store.get("T001") is None


class TestReadDelete:
    def test_get_missing(self, store):
        assert store.get("T404") is None

    def test_list_newest_first(self, store):
        store.upsert("T001", {"spawned_at": "2024-01-01T00:00:00"})
        store.upsert("T002", {"spawned_at": "2024-03-01T00:00:00"})
        store.upsert("T003", {"spawned_at": "2024-02-01T00:00:00"})
        assert [r["task_id"] for r in store.list()] == ["T002", "T003", "T001"]

    def test_list_status_filter(self, store):
        store.upsert("T001", {"status": "running"})
        store.upsert("T002", {"status": "completed"})
        store.upsert("T003", {})
        assert [r["task_id"] for r in store.list(status="completed")] == ["T002"]
        assert sorted(r["task_id"] for r in store.list(status=["spawned", "running"])) == ["T001", "T003"]
        assert store.list(status=[]) == []

    def test_delete_and_clear(self, store):
        store.upsert("T001", {})
        store.upsert("T002", {})
        assert store.delete("T001")
        assert not store.delete("T001")
        assert store.clear() == 1
        assert store.list() == []


class TestSetStatus:
    def test_keeps_spawned_at(self, store):
        spawned_at = store.upsert("T001", {})["spawned_at"]
        assert store.set_status("T001", AgentStatus.COMPLETED, {"exit_code": 0})
        record = store.get("T001")
        assert record["status"] == "completed"
        assert record["exit_code"] == 0
        assert record["spawned_at"] == spawned_at

    def test_missing_record(self, store):
        assert not store.set_status("T404", "running")
        assert store.get("T404") is None

    def test_invalid_status(self, store):
        store.upsert("T001", {})
        with pytest.raises(ValueError):
            store.set_status("T001", "paused")


class TestRuns:
    def test_run_lifecycle(self, store):
        run_id = store.create_run("T001", log_file="/tmp/run.log")
        runs = store.runs_for("T001")
        assert len(runs) == 1
        assert runs[0]["id"] == run_id
        assert runs[0]["ended_at"] is None
        assert runs[0]["log_file"] == "/tmp/run.log"

        assert store.complete_run(run_id, 0)
        assert store.runs_for("T001")[0]["exit_code"] == 0

    def test_first_completion_wins(self, store):
        run_id = store.create_run("T001")
        assert store.complete_run(run_id, 1, ended_at="2024-01-01T00:00:00")
        assert not store.complete_run(run_id, 0)
        run = store.runs_for("T001")[0]
        assert run["exit_code"] == 1
        assert run["ended_at"] == "2024-01-01T00:00:00"

    def test_most_recent_first(self, store):
        store.create_run("T001", started_at="2024-01-01T00:00:00")
        latest = store.create_run("T001", started_at="2024-01-02T00:00:00")
        store.create_run("T002")
        runs = store.runs_for("T001")
        assert len(runs) == 2
        assert runs[0]["id"] == latest

    def test_unknown_run(self, store):
        assert not store.complete_run("nope", 0)


class TestMigration:
    def test_migrate_from_state(self, store):
        legacy = {
            "T001": {"status": "completed", "pid": 42, "phase": "done", "notes": "x"},
            "T002": {"status": "orphaned"},
        }
        assert store.migrate_from_state(legacy) == 2
        record = store.get("T001")
        assert record["status"] == "completed"
        assert record["pid"] == 42
        assert record["migrated_at"]
        assert "phase" not in record


class TestPersistence:
    def test_reopen_sees_data(self, backend, state_dir):
        with open_store(backend, state_dir) as first:
            first.upsert("T001", {"status": "running"})
        with open_store(backend, state_dir) as second:
            assert second.get("T001")["status"] == "running"

    def test_concurrent_disjoint_upserts(self, backend, state_dir):
        with open_store(backend, state_dir) as setup:
            setup.list()
        errors = []

        def writer(task_id, fields):
            try:
                with open_store(backend, state_dir) as own:
                    for _ in range(5):
                        own.upsert(task_id, fields)
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=writer, args=("T001", {"status": "running"})),
            threading.Thread(target=writer, args=("T001", {"pid": 123})),
            threading.Thread(target=writer, args=("T001", {"branch": "task/T001"})),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        with open_store(backend, state_dir) as check:
            record = check.get("T001")
        assert record["status"] == "running"
        assert record["pid"] == 123
        assert record["branch"] == "task/T001"


class TestSqliteSpecifics:
    def test_schema_version(self, tmp_path):
        with SqliteAgentStore(tmp_path / "agents.db") as store:
            assert store.schema_version() == 1

    def test_corrupted_database_is_moved_aside(self, tmp_path):
        db_path = tmp_path / "agents.db"
        garbage = b"this is not a sqlite database" * 100
        db_path.write_bytes(garbage)
        with SqliteAgentStore(db_path) as store:
            store.upsert("T001", {})
            assert store.get("T001") is not None

        backups = list(tmp_path.glob("agents.db.corrupt-*"))
        assert len(backups) == 1
        assert backups[0].read_bytes() == garbage

    def test_locked_database_raises_and_keeps_records(self, tmp_path):
        db_path = tmp_path / "agents.db"
        with SqliteAgentStore(db_path) as store:
            store.upsert("T001", {"status": "running"})

        holder = sqlite3.connect(str(db_path))
        holder.execute("BEGIN IMMEDIATE")
        try:
            blocked = SqliteAgentStore(db_path, timeout=0.1)
            with pytest.raises(sqlite3.OperationalError, match="locked"):
                blocked.get("T001")
            blocked.close()
        finally:
            holder.rollback()
            holder.close()

        assert not list(tmp_path.glob("agents.db.corrupt-*"))
        with SqliteAgentStore(db_path) as store:
            assert store.get("T001")["status"] == "running"
