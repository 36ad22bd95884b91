"""
Orchestration Tools

Composes resolver, branches, worktrees, store and memory into the two
calls a controller makes per agent:

    prepare_agent_workspace()  resolve task -> ensure branch chain -> sync parent
                               -> create worktree on parent branch -> record spawn
    complete_agent()           record exit -> merge task log into epic log

A WorkspaceContext owns one resolver (and its caches) for a controller run.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from . import git_tools
from .agent_tools import record_exit, register_spawn
from .branch_tools import (
    BranchContext,
    context_for_task,
    ensure_hierarchy,
    parent_branch,
    sync_parent_branch,
)
from .config_tools import config_get_digits, config_get_effective, config_get_paths
from .ids import normalize_id
from .memory_tools import MemoryManager
from .resolver import ArtefactResolver
from .store import AgentStatus, AgentStore, TERMINAL_STATUSES, open_store
from .worktree_tools import WorkspaceManager


logger = logging.getLogger(__name__)


@dataclass
class WorkspaceContext:
    resolver: ArtefactResolver
    workspace: WorkspaceManager
    store: AgentStore
    memory: MemoryManager
    repo_root: Path
    agents_dir: Path
    main_branch: str = "main"
    remote: str = "origin"
    fetch_timeout: float = 10
    sync_before_spawn: bool = True
    kill_grace: float = 5
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, project_dir: Optional[str] = None) -> "WorkspaceContext":
        effective = config_get_effective(project_dir=project_dir)
        config = effective["config"]
        paths = config_get_paths(project_dir, config)
        digits = config_get_digits(config=config)
        git = config.get("git", {})
        agents = config.get("agents", {})

        resolver = ArtefactResolver(paths["artefacts"], paths["memory"], digits)
        workspace = WorkspaceManager(
            paths["project_root"],
            paths["worktrees"],
            remote=git.get("remote", "origin"),
            remote_timeout=git.get("fetch_timeout", 10),
            digits=digits,
        )
        store = open_store(agents.get("store", "sqlite"), paths["state"], agents.get("lock_timeout", 5))
        memory = MemoryManager(
            paths["memory"],
            resolver,
            artefacts_dir=paths["artefacts"],
            templates_dir=paths["templates"],
            digits=digits,
            lock_timeout=agents.get("lock_timeout", 5),
        )
        return cls(
            resolver=resolver,
            workspace=workspace,
            store=store,
            memory=memory,
            repo_root=paths["project_root"],
            agents_dir=paths["agents"],
            main_branch=git.get("main_branch", "main"),
            remote=git.get("remote", "origin"),
            fetch_timeout=git.get("fetch_timeout", 10),
            sync_before_spawn=git.get("sync_before_spawn", True),
            kill_grace=agents.get("kill_grace", 5),
            warnings=effective["warnings"],
        )

    def close(self) -> None:
        self.store.close()

    def branch_context(self, task_id: str) -> Optional[BranchContext]:
        return context_for_task(self.resolver, task_id, self.main_branch)


def prepare_agent_workspace(
    ctx: WorkspaceContext,
    task_id: str,
    pid: Optional[int] = None,
    fetch: bool = False,
) -> dict[str, Any]:
    """Set up everything an agent needs before it starts on task_id."""
    task = ctx.resolver.get_task(task_id)
    if task is None:
        return {"success": False, "error": f"Task {task_id} not found"}
    task_id = ctx.resolver.canonical_id(task)

    branch_ctx = ctx.branch_context(task_id)
    if branch_ctx is None:
        return {"success": False, "error": f"Task {task_id} not found"}

    if fetch:
        fetched = git_tools.fetch(ctx.remote, ctx.repo_root, ctx.fetch_timeout)
        if not fetched["success"]:
            logger.warning(f"Fetch from {ctx.remote} failed: {fetched['error']}")

    hierarchy = ensure_hierarchy(branch_ctx, ctx.repo_root)
    if hierarchy["errors"]:
        return {
            "success": False,
            "error": "Cannot create branch hierarchy",
            "task_id": task_id,
            "hierarchy": hierarchy,
        }

    sync = sync_parent_branch(branch_ctx, ctx.repo_root, enabled=ctx.sync_before_spawn)
    if not sync["success"]:
        return {
            "success": False,
            "error": sync["error"],
            "task_id": task_id,
            "hierarchy": hierarchy,
            "sync": sync,
        }

    worktree = ctx.workspace.create(task_id, base_branch=parent_branch(branch_ctx))
    if not worktree["success"]:
        return {
            "success": False,
            "error": worktree["error"],
            "task_id": task_id,
            "hierarchy": hierarchy,
            "worktree": worktree,
        }

    agent_dir = ctx.agents_dir / task_id
    fields: dict[str, Any] = {
        "worktree_path": worktree["path"],
        "branch": worktree["branch"],
        "base_branch": worktree["base_branch"],
        "branching": branch_ctx.strategy.value,
        "log_file": str(agent_dir / "run.log"),
    }
    mission_file = agent_dir / "mission.yaml"
    if mission_file.exists():
        fields["mission_file"] = str(mission_file)
    if pid:
        fields["pid"] = pid

    spawn = register_spawn(ctx.store, task_id, fields)
    if not spawn["success"]:
        return {**spawn, "task_id": task_id, "worktree": worktree}

    return {
        "success": True,
        "task_id": task_id,
        "branch_context": branch_ctx.to_dict(),
        "hierarchy": hierarchy,
        "sync": sync,
        "worktree": worktree,
        "agent": spawn["agent"],
        "run_id": spawn["run_id"],
    }


def complete_agent(
    ctx: WorkspaceContext,
    task_id: str,
    exit_code: Optional[int],
    blocked: bool = False,
    log_path: Optional[str] = None,
) -> dict[str, Any]:
    """Record the agent's exit and fold its task log into the epic log.

    An agent already in a terminal status (killed, orphaned by a sync)
    keeps that status; the exit is reported as rejected but the task log
    is still merged.
    """
    task = ctx.resolver.get_task(task_id)
    agent_id = ctx.resolver.canonical_id(task) if task else (normalize_id(task_id, ctx.resolver.digits) or task_id)

    exit_result = record_exit(ctx.store, agent_id, exit_code, blocked=blocked)
    if not exit_result["success"]:
        record = ctx.store.get(agent_id)
        if record is None or AgentStatus(record["status"]) not in TERMINAL_STATUSES:
            return exit_result
        logger.warning(f"Exit of {agent_id} not recorded: {exit_result['error']}")

    merge = ctx.memory.merge_task_log(task_id, log_path)
    if merge["merged"] or merge["deleted"]:
        ctx.resolver.invalidate()
    return {
        "success": exit_result["success"],
        "task_id": agent_id,
        "exit": exit_result,
        "memory": merge,
    }
