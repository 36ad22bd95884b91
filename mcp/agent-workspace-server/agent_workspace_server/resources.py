"""
MCP Resources for Agent Workspace Server

Provides URI-based access to agent state, worktrees and memory.

Resource URIs:
  - agents://list              - All agent records
  - agents://{task_id}         - One agent record with its runs
  - worktrees://list           - Git worktrees of the repository
  - memory://{id}              - Memory hierarchy for a task or epic
  - config://effective         - Fully merged effective config
"""

import json
from typing import Any

from .config_tools import config_get_effective
from .ids import normalize_id
from .orchestration_tools import WorkspaceContext
from .store import LIVE_STATUSES


def get_agents_list(ctx: WorkspaceContext) -> dict[str, Any]:
    agents = ctx.store.list()
    live = {status.value for status in LIVE_STATUSES}
    return {
        "agents": agents,
        "count": len(agents),
        "live_count": sum(1 for a in agents if a["status"] in live),
    }


def get_agent(ctx: WorkspaceContext, task_id: str) -> dict[str, Any]:
    task_id = normalize_id(task_id, ctx.resolver.digits) or task_id
    record = ctx.store.get(task_id)
    if record is None:
        return {"error": f"No agent found for task: {task_id}"}
    return {"agent": record, "runs": ctx.store.runs_for(task_id)}


def get_worktrees_list(ctx: WorkspaceContext) -> dict[str, Any]:
    worktrees = ctx.workspace.list()
    return {
        "worktrees": worktrees,
        "count": len(worktrees),
        "task_count": sum(1 for wt in worktrees if wt["task_id"]),
        "worktrees_dir": str(ctx.workspace.worktrees_dir),
    }


def get_memory(ctx: WorkspaceContext, id_: str) -> dict[str, Any]:
    id_ = normalize_id(id_, ctx.resolver.digits) or id_
    return {"id": id_, **ctx.memory.hierarchical_memory(id_)}


def resolve_resource(uri: str, ctx: WorkspaceContext) -> str:
    if uri == "agents://list":
        return json.dumps(get_agents_list(ctx), indent=2)

    if uri == "worktrees://list":
        return json.dumps(get_worktrees_list(ctx), indent=2)

    if uri == "config://effective":
        return json.dumps(config_get_effective(), indent=2)

    if uri.startswith("agents://"):
        return json.dumps(get_agent(ctx, uri[len("agents://"):].strip("/")), indent=2)

    if uri.startswith("memory://"):
        return json.dumps(get_memory(ctx, uri[len("memory://"):].strip("/")), indent=2)

    return json.dumps({"error": f"Unknown resource URI: {uri}"})


RESOURCE_DESCRIPTIONS = {
    "agents://list": {
        "name": "All agents",
        "description": "Agent records of every task, most recently spawned first",
        "mimeType": "application/json"
    },
    "worktrees://list": {
        "name": "Worktrees",
        "description": "Git worktrees of the repository with their task IDs",
        "mimeType": "application/json"
    },
    "config://effective": {
        "name": "Effective configuration",
        "description": "Fully merged workspace configuration from all sources",
        "mimeType": "application/json"
    }
}


RESOURCE_TEMPLATES = {
    "agents://{task_id}": {
        "name": "Agent record",
        "description": "Agent record and run history for a specific task",
        "mimeType": "application/json"
    },
    "memory://{id}": {
        "name": "Memory hierarchy",
        "description": "Project, PRD and epic memory documents that apply to a task or epic",
        "mimeType": "application/json"
    }
}
