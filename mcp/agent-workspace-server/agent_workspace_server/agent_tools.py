"""
Agent Lifecycle Tools

Status writes for agent records, checked against the lifecycle in
store.ALLOWED_TRANSITIONS before they reach the store:

    spawned -> running -> completed | failed | blocked
    spawned | running -> killed
    spawned | running -> orphaned -> spawned (recovered)

Also reconciles the store with what is actually on disk (sync_agents) and
detects file overlap between agents working in parallel.
"""

import logging
import os
import signal
import time
from itertools import combinations
from pathlib import Path
from typing import Any, Optional, Union

from . import git_tools
from .branch_tools import task_branch
from .store import AgentStatus, AgentStore, LIVE_STATUSES, can_transition, now
from .worktree_tools import WorkspaceManager


logger = logging.getLogger(__name__)

_SUCCESS_MARKERS = ("exit code: 0", "Exit code: 0")


def is_process_alive(pid: Optional[int]) -> bool:
    if not pid:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    except OSError:
        return False
    return True


def transition_agent(
    store: AgentStore,
    task_id: str,
    to_status: Union[str, AgentStatus],
    extra: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Write a status change if the lifecycle allows it."""
    to_status = AgentStatus(to_status)
    record = store.get(task_id)
    if record is None:
        return {"success": False, "error": f"No agent found for task: {task_id}"}
    if not can_transition(record["status"], to_status):
        return {
            "success": False,
            "error": f"Cannot transition {task_id} from {record['status']} to {to_status.value}",
            "status": record["status"],
        }
    store.set_status(task_id, to_status, extra)
    return {"success": True, "task_id": task_id, "from": record["status"], "to": to_status.value}


# ============================================================================
# Lifecycle
# ============================================================================

def register_spawn(
    store: AgentStore,
    task_id: str,
    fields: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Record a new spawn of task_id and open a run for it.

    A second spawn of a task that is still live is refused. Spawning a task
    whose previous agent finished overwrites that record.
    """
    existing = store.get(task_id)
    if existing and not can_transition(existing["status"], AgentStatus.SPAWNED):
        return {
            "success": False,
            "error": f"Agent {task_id} is already {existing['status']}",
            "agent": existing,
        }

    fields = dict(fields or {})
    record = store.upsert(task_id, {
        "ended_at": None,
        "exit_code": None,
        "exit_signal": None,
        "killed_at": None,
        "orphaned_at": None,
        **fields,
        "status": AgentStatus.SPAWNED,
        "spawned_at": now(),
    })
    run_id = store.create_run(task_id, fields.get("log_file"))
    logger.info(f"Registered spawn of {task_id} (run {run_id})")
    return {"success": True, "agent": record, "run_id": run_id}


def mark_running(store: AgentStore, task_id: str, pid: Optional[int] = None) -> dict[str, Any]:
    return transition_agent(store, task_id, AgentStatus.RUNNING, {"pid": pid} if pid else None)


def record_exit(
    store: AgentStore,
    task_id: str,
    exit_code: Optional[int],
    run_id: Optional[str] = None,
    blocked: bool = False,
    exit_signal: Optional[str] = None,
) -> dict[str, Any]:
    """Record the end of an agent process.

    Status is blocked when requested, completed on exit code 0, failed
    otherwise. An agent still marked spawned passes through running first.
    The given run (or the task's latest open run) is completed.
    """
    if blocked:
        status = AgentStatus.BLOCKED
    elif exit_code == 0:
        status = AgentStatus.COMPLETED
    else:
        status = AgentStatus.FAILED

    record = store.get(task_id)
    if record and record["status"] == AgentStatus.SPAWNED.value and status is not AgentStatus.FAILED:
        step = mark_running(store, task_id)
        if not step["success"]:
            return step

    result = transition_agent(store, task_id, status, {
        "ended_at": now(),
        "exit_code": exit_code,
        "exit_signal": exit_signal,
        "pid": None,
    })
    if not result["success"]:
        return result

    if run_id is None:
        open_runs = [run for run in store.runs_for(task_id) if run["ended_at"] is None]
        run_id = open_runs[0]["id"] if open_runs else None
    result["run_completed"] = store.complete_run(run_id, exit_code) if run_id else False
    result["run_id"] = run_id
    return result


def kill_agent(
    store: AgentStore,
    task_id: str,
    grace: float = 5,
    poll_interval: float = 0.1,
) -> dict[str, Any]:
    """SIGTERM the agent process, SIGKILL it if still alive after `grace` seconds."""
    record = store.get(task_id)
    if record is None:
        return {"success": False, "error": f"No agent found for task: {task_id}"}
    pid = record["pid"]
    if not pid:
        return {
            "success": False,
            "error": f"Agent {task_id} has no running process",
            "status": record["status"],
        }
    if not can_transition(record["status"], AgentStatus.KILLED):
        return {
            "success": False,
            "error": f"Cannot kill {task_id}: status is {record['status']}",
            "status": record["status"],
        }

    signal_sent = None
    try:
        os.kill(pid, signal.SIGTERM)
        signal_sent = "SIGTERM"
    except ProcessLookupError:
        logger.info(f"Process {pid} already terminated")
    except PermissionError as e:
        return {"success": False, "error": f"Error killing process {pid}: {e}"}

    if signal_sent:
        deadline = time.monotonic() + grace
        while is_process_alive(pid) and time.monotonic() < deadline:
            time.sleep(poll_interval)
        if is_process_alive(pid):
            try:
                os.kill(pid, signal.SIGKILL)
                signal_sent = "SIGKILL"
            except ProcessLookupError:
                pass

    store.set_status(task_id, AgentStatus.KILLED, {"killed_at": now(), "pid": None, "exit_signal": signal_sent})
    logger.info(f"Killed agent {task_id} (pid {pid}, {signal_sent or 'already gone'})")
    return {
        "success": True,
        "task_id": task_id,
        "pid": pid,
        "signal": signal_sent,
        "status": AgentStatus.KILLED.value,
        "worktree_path": record["worktree_path"],
    }


def recover_agent(store: AgentStore, task_id: str) -> dict[str, Any]:
    """Re-enter spawned from orphaned, stamping recovered_at."""
    record = store.get(task_id)
    if record is None:
        return {"success": False, "error": f"No agent found for task: {task_id}"}
    if record["status"] != AgentStatus.ORPHANED.value:
        return {"success": False, "error": f"Agent {task_id} is {record['status']}, not orphaned"}
    return transition_agent(store, task_id, AgentStatus.SPAWNED, {"recovered_at": now(), "orphaned_at": None})


# ============================================================================
# Reconciliation with disk
# ============================================================================

def sync_agents(
    store: AgentStore,
    worktrees_dir: Union[str, Path],
    agents_dir: Union[str, Path],
    dry_run: bool = False,
) -> dict[str, Any]:
    """Reconcile agent records with worktrees and processes.

    - a task worktree without a record gets one: completed if its run.log
      reports exit code 0, orphaned otherwise
    - a live record whose process is gone becomes orphaned
    - records whose worktree no longer exists are reported as missing
    """
    worktrees_dir = Path(worktrees_dir)
    agents_dir = Path(agents_dir)
    added, updated, missing = [], [], []

    if worktrees_dir.is_dir():
        for worktree in sorted(worktrees_dir.iterdir()):
            if not worktree.is_dir() or not worktree.name.startswith("T"):
                continue
            task_id = worktree.name
            if store.get(task_id) is not None:
                continue

            entry: dict[str, Any] = {
                "status": AgentStatus.ORPHANED,
                "recovered_at": now(),
                "worktree_path": str(worktree),
                "branch": task_branch(task_id),
            }
            mission_file = agents_dir / task_id / "mission.yaml"
            if mission_file.exists():
                entry["mission_file"] = str(mission_file)
            log_file = agents_dir / task_id / "run.log"
            if log_file.exists():
                entry["log_file"] = str(log_file)
                try:
                    log_content = log_file.read_text(encoding="utf-8", errors="replace")
                except OSError as e:
                    logger.warning(f"Cannot read {log_file}: {e}")
                    log_content = ""
                if any(marker in log_content for marker in _SUCCESS_MARKERS):
                    entry["status"] = AgentStatus.COMPLETED

            ok, changes = git_tools.porcelain_status(worktree)
            if ok and changes:
                entry["dirty_worktree"] = True
                entry["uncommitted_files"] = len(changes)

            if not dry_run:
                store.upsert(task_id, entry)
            added.append({"task_id": task_id, "status": AgentStatus(entry["status"]).value})

    for record in store.list(status=list(LIVE_STATUSES)):
        if is_process_alive(record["pid"]):
            continue
        if not dry_run:
            store.set_status(record["task_id"], AgentStatus.ORPHANED, {"orphaned_at": now(), "pid": None})
        updated.append({"task_id": record["task_id"], "from": record["status"], "to": AgentStatus.ORPHANED.value})

    for record in store.list():
        path = record["worktree_path"]
        if path and not Path(path).exists():
            missing.append({"task_id": record["task_id"], "status": record["status"]})

    return {"added": added, "updated": updated, "missing": missing, "dry_run": dry_run}


# ============================================================================
# Conflict detection
# ============================================================================

def build_conflict_matrix(
    store: AgentStore,
    workspace: WorkspaceManager,
    main_branch: str = "main",
) -> dict[str, Any]:
    """Pairwise file overlap between live agents that own a worktree."""
    agents = [r["task_id"] for r in store.list(status=list(LIVE_STATUSES)) if r["worktree_path"]]
    if len(agents) < 2:
        return {"agents": agents, "files_by_agent": {}, "matrix": {}, "conflicts": [], "has_conflicts": False}

    files_by_agent = {task_id: workspace.modified_files(task_id, main_branch) for task_id in agents}
    matrix: dict[str, dict[str, int]] = {task_id: {} for task_id in agents}
    conflicts = []
    for first, second in combinations(agents, 2):
        shared = sorted(set(files_by_agent[first]) & set(files_by_agent[second]))
        matrix[first][second] = len(shared)
        if shared:
            conflicts.append({"agents": [first, second], "files": shared, "count": len(shared)})

    return {
        "agents": agents,
        "files_by_agent": files_by_agent,
        "matrix": matrix,
        "conflicts": conflicts,
        "has_conflicts": bool(conflicts),
    }


def suggest_merge_order(conflict_data: dict[str, Any]) -> list[str]:
    """Fewest modified files first when there are conflicts, else the given order."""
    agents = list(conflict_data.get("agents", []))
    if not conflict_data.get("conflicts"):
        return agents
    files_by_agent = conflict_data.get("files_by_agent", {})
    return sorted(agents, key=lambda task_id: len(files_by_agent.get(task_id, [])))


def can_merge_without_conflict(task_id: str, conflict_data: dict[str, Any]) -> dict[str, Any]:
    conflicts_with = []
    for conflict in conflict_data.get("conflicts", []):
        if task_id in conflict["agents"]:
            conflicts_with.extend(a for a in conflict["agents"] if a != task_id)
    return {"can_merge": not conflicts_with, "conflicts_with": sorted(set(conflicts_with))}
