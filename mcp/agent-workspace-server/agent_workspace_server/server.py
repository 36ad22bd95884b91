#!/usr/bin/env python3
"""
Agent Workspace MCP Server

An MCP server exposing the agent workspace tools: artefact ID resolution,
branch hierarchies, per-task worktrees, agent lifecycle state and memory
log merging.

One WorkspaceContext is built lazily from the effective configuration and
kept for the life of the server. Its artefact indices are never refreshed
automatically; call artefact_invalidate after adding, renaming or removing
artefact files.
"""

import asyncio
import json
import logging
from typing import Any, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    Tool,
    TextContent,
    Resource,
    ResourceTemplate,
)

from .agent_tools import (
    build_conflict_matrix,
    can_merge_without_conflict,
    kill_agent,
    suggest_merge_order,
    sync_agents,
    transition_agent,
)
from .branch_tools import (
    branch_hierarchy,
    ensure_hierarchy,
    parent_branch,
    sync_upward_hierarchy,
)
from .config_tools import config_get_effective, config_get_git, config_get_store
from .ids import ArtefactKind, entity_type, normalize_id
from .orchestration_tools import WorkspaceContext, complete_agent, prepare_agent_workspace
from .resources import RESOURCE_DESCRIPTIONS, RESOURCE_TEMPLATES, resolve_resource

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

server = Server("agent-workspace-server")

_context: Optional[WorkspaceContext] = None


def get_context() -> WorkspaceContext:
    global _context
    if _context is None:
        _context = WorkspaceContext.from_config()
        for warning in _context.warnings:
            logger.warning(f"Config: {warning}")
    return _context


def _task_id(ctx: WorkspaceContext, raw: str) -> str:
    task = ctx.resolver.get_task(raw)
    if task is not None:
        return ctx.resolver.canonical_id(task)
    return normalize_id(raw, ctx.resolver.digits) or raw


def _task_schema(description: str = "Task identifier in any format (e.g. 'T7', 'T007', 'T00039b')") -> dict:
    return {
        "type": "object",
        "properties": {
            "task_id": {"type": "string", "description": description}
        },
        "required": ["task_id"]
    }


TOOLS = [
    Tool(
        name="artefact_resolve",
        description="Resolve a task, epic or PRD ID in any padding/suffix form to its artefact record.",
        inputSchema={
            "type": "object",
            "properties": {
                "kind": {
                    "type": "string",
                    "enum": ["task", "epic", "prd"],
                    "description": "Artefact kind"
                },
                "id": {
                    "type": "string",
                    "description": "Raw ID (e.g. 'T39', 'T00039b', 'E3', 'PRD-1', '1')"
                }
            },
            "required": ["kind", "id"]
        }
    ),
    Tool(
        name="artefact_parent",
        description="Parent of an artefact: the epic of a task (from its 'parent' field) or the PRD of an epic (from its directory).",
        inputSchema={
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "Task or epic ID"}
            },
            "required": ["id"]
        }
    ),
    Tool(
        name="artefact_invalidate",
        description="Drop the cached artefact indices. Call after artefact files were added, renamed or removed.",
        inputSchema={"type": "object", "properties": {}, "required": []}
    ),
    Tool(
        name="branch_hierarchy",
        description="Branch chain (main -> prd -> epic) and parent branch for a task, per its PRD's branching strategy.",
        inputSchema=_task_schema()
    ),
    Tool(
        name="branch_ensure_hierarchy",
        description="Create any missing PRD/epic branches for a task. Idempotent; failures are collected, not raised.",
        inputSchema=_task_schema()
    ),
    Tool(
        name="branch_sync_upward",
        description="After a merge, refresh the shared branches below the merged level from their upstream.",
        inputSchema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string", "description": "Any task of the PRD/epic"},
                "level": {
                    "type": "string",
                    "enum": ["epic", "prd"],
                    "description": "Level that was just merged upward"
                },
                "strategy": {
                    "type": "string",
                    "enum": ["merge", "rebase"],
                    "description": "How to integrate upstream changes (default merge)"
                }
            },
            "required": ["task_id", "level"]
        }
    ),
    Tool(
        name="worktree_create",
        description="Create the task's git worktree on a new task/<TaskID> branch. Fails if the worktree path exists.",
        inputSchema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string", "description": "Task identifier"},
                "base_branch": {
                    "type": "string",
                    "description": "Branch to start from. Defaults to the current branch of the main working tree."
                }
            },
            "required": ["task_id"]
        }
    ),
    Tool(
        name="worktree_remove",
        description="Remove the task's worktree, then delete its branch (best-effort).",
        inputSchema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string", "description": "Task identifier"},
                "force": {"type": "boolean", "description": "Remove even with local changes; force-delete the branch"},
                "keep_branch": {"type": "boolean", "description": "Keep the task branch"}
            },
            "required": ["task_id"]
        }
    ),
    Tool(
        name="worktree_list",
        description="List git worktrees with their branch and task ID (task/<TaskID> branches only).",
        inputSchema={"type": "object", "properties": {}, "required": []}
    ),
    Tool(
        name="worktree_status",
        description="Clean/dirty state and ahead/behind counts (0 without upstream) of a task's worktree.",
        inputSchema=_task_schema()
    ),
    Tool(
        name="worktree_prune",
        description="Prune stale worktree administrative data.",
        inputSchema={"type": "object", "properties": {}, "required": []}
    ),
    Tool(
        name="agent_get",
        description="Get the agent record of a task.",
        inputSchema=_task_schema()
    ),
    Tool(
        name="agent_list",
        description="List agent records, most recently spawned first.",
        inputSchema={
            "type": "object",
            "properties": {
                "status": {
                    "type": "array",
                    "items": {
                        "type": "string",
                        "enum": ["spawned", "running", "completed", "failed", "blocked", "killed", "orphaned"]
                    },
                    "description": "Only agents in these statuses"
                }
            },
            "required": []
        }
    ),
    Tool(
        name="agent_set_status",
        description="Change an agent's status. Rejected if the lifecycle does not allow the transition.",
        inputSchema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string", "description": "Task identifier"},
                "status": {
                    "type": "string",
                    "enum": ["spawned", "running", "completed", "failed", "blocked", "killed", "orphaned"]
                },
                "extra": {"type": "object", "description": "Additional agent fields to write"}
            },
            "required": ["task_id", "status"]
        }
    ),
    Tool(
        name="agent_runs",
        description="Run history of a task, most recent first.",
        inputSchema=_task_schema()
    ),
    Tool(
        name="agent_sync",
        description="Reconcile agent records with worktrees on disk and running processes.",
        inputSchema={
            "type": "object",
            "properties": {
                "dry_run": {"type": "boolean", "description": "Report changes without writing them"}
            },
            "required": []
        }
    ),
    Tool(
        name="agent_kill",
        description="Terminate an agent process (SIGTERM, then SIGKILL after the grace period). The worktree is kept.",
        inputSchema=_task_schema()
    ),
    Tool(
        name="agent_conflicts",
        description="Files modified by more than one live agent, with a suggested merge order.",
        inputSchema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string", "description": "Also report whether this task can merge without conflict"}
            },
            "required": []
        }
    ),
    Tool(
        name="agent_prepare",
        description="Resolve the task, ensure its branch chain, sync the parent branch, create its worktree and record the spawn.",
        inputSchema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string", "description": "Task identifier"},
                "pid": {"type": "integer", "description": "Agent process id, if already known"},
                "fetch": {"type": "boolean", "description": "Fetch from the remote first"}
            },
            "required": ["task_id"]
        }
    ),
    Tool(
        name="agent_complete",
        description="Record an agent's exit and merge its task log into the parent epic log.",
        inputSchema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string", "description": "Task identifier"},
                "exit_code": {"type": "integer", "description": "Process exit code"},
                "blocked": {"type": "boolean", "description": "Agent stopped on a blocker"},
                "log_path": {"type": "string", "description": "Explicit task log path"}
            },
            "required": ["task_id", "exit_code"]
        }
    ),
    Tool(
        name="memory_merge_task_log",
        description="Append a task log to its epic log (lines tagged with the task ID), then delete the task log.",
        inputSchema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string", "description": "Task identifier as written in the log file name"},
                "log_path": {"type": "string", "description": "Explicit task log path"}
            },
            "required": ["task_id"]
        }
    ),
    Tool(
        name="memory_check_pending",
        description="Merge outstanding task logs, then list epic logs not yet consolidated.",
        inputSchema={
            "type": "object",
            "properties": {
                "epic_id": {"type": "string", "description": "Only this epic"}
            },
            "required": []
        }
    ),
    Tool(
        name="memory_hierarchy",
        description="Project, PRD and epic memory documents that apply to a task or epic.",
        inputSchema={
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "Task or epic ID"}
            },
            "required": ["id"]
        }
    ),
    Tool(
        name="memory_log_stats",
        description="Line count and per-level entry counts of a task or epic log.",
        inputSchema={
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "Task or epic ID"}
            },
            "required": ["id"]
        }
    ),
    Tool(
        name="memory_create",
        description="Create the memory document of an epic, a PRD or the project (id PROJECT) from its template.",
        inputSchema={
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "Epic ID, PRD ID or PROJECT"},
                "project_name": {"type": "string", "description": "Project name for the project document"},
                "overwrite": {"type": "boolean", "default": False}
            },
            "required": ["id"]
        }
    ),
    Tool(
        name="memory_update_section",
        description="Replace, append to or prepend to a '## ' section of a memory document and bump its updated date.",
        inputSchema={
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "Epic ID, PRD ID or PROJECT"},
                "section": {"type": "string", "description": "Section heading without the leading '## '"},
                "content": {"type": "string"},
                "operation": {"type": "string", "enum": ["replace", "append", "prepend"], "default": "replace"}
            },
            "required": ["id", "section", "content"]
        }
    ),
    Tool(
        name="config_get_effective",
        description="Get fully merged configuration from all sources (global, project, task).",
        inputSchema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string", "description": "Task identifier for task-level config"},
                "project_dir": {"type": "string", "description": "Project directory. Defaults to the repository root."}
            },
            "required": []
        }
    ),
    Tool(
        name="config_get_git",
        description="Get git settings (main branch, remote, fetch timeout, sync before spawn) with their config sources.",
        inputSchema={
            "type": "object",
            "properties": {
                "task_id": {"type": "string", "description": "Task identifier for task-level config"},
                "project_dir": {"type": "string", "description": "Project directory. Defaults to the repository root."}
            },
            "required": []
        }
    ),
    Tool(
        name="config_get_store",
        description="Get the agent state store backend, its state directory and lock timeout.",
        inputSchema={
            "type": "object",
            "properties": {
                "project_dir": {"type": "string", "description": "Project directory. Defaults to the repository root."}
            },
            "required": []
        }
    ),
]


@server.list_tools()
async def list_tools() -> list[Tool]:
    return TOOLS


def dispatch(name: str, arguments: dict[str, Any], ctx: WorkspaceContext) -> dict[str, Any]:
    if name == "artefact_resolve":
        record = ctx.resolver.resolve(ArtefactKind(arguments["kind"]), arguments["id"])
        if record is None:
            return {"found": False, "error": f"No {arguments['kind']} matches '{arguments['id']}'"}
        return {"found": True, "record": record.to_dict()}

    elif name == "artefact_parent":
        kind = entity_type(arguments["id"])
        if kind == "task":
            parent = ctx.resolver.task_epic(arguments["id"])
        elif kind == "epic":
            parent = ctx.resolver.epic_prd(arguments["id"])
        else:
            return {"error": f"Not a task or epic ID: {arguments['id']}"}
        return {"found": parent is not None, "parent": parent}

    elif name == "artefact_invalidate":
        ctx.resolver.invalidate()
        return {"success": True}

    elif name in ("branch_hierarchy", "branch_ensure_hierarchy", "branch_sync_upward"):
        branch_ctx = ctx.branch_context(arguments["task_id"])
        if branch_ctx is None:
            return {"success": False, "error": f"Task {arguments['task_id']} not found"}
        if name == "branch_hierarchy":
            return {
                "context": branch_ctx.to_dict(),
                "hierarchy": branch_hierarchy(branch_ctx),
                "parent_branch": parent_branch(branch_ctx),
            }
        if name == "branch_ensure_hierarchy":
            return ensure_hierarchy(branch_ctx, ctx.repo_root)
        return sync_upward_hierarchy(
            arguments["level"], branch_ctx, ctx.repo_root, arguments.get("strategy", "merge")
        )

    elif name == "worktree_create":
        return ctx.workspace.create(_task_id(ctx, arguments["task_id"]), arguments.get("base_branch"))

    elif name == "worktree_remove":
        return ctx.workspace.remove(
            _task_id(ctx, arguments["task_id"]),
            force=arguments.get("force", False),
            keep_branch=arguments.get("keep_branch", False)
        )

    elif name == "worktree_list":
        return {"worktrees": ctx.workspace.list()}

    elif name == "worktree_status":
        return ctx.workspace.status(_task_id(ctx, arguments["task_id"]))

    elif name == "worktree_prune":
        return ctx.workspace.prune()

    elif name == "agent_get":
        record = ctx.store.get(_task_id(ctx, arguments["task_id"]))
        return {"found": record is not None, "agent": record}

    elif name == "agent_list":
        agents = ctx.store.list(status=arguments.get("status") or None)
        return {"agents": agents, "count": len(agents)}

    elif name == "agent_set_status":
        return transition_agent(
            ctx.store,
            _task_id(ctx, arguments["task_id"]),
            arguments["status"],
            arguments.get("extra")
        )

    elif name == "agent_runs":
        return {"runs": ctx.store.runs_for(_task_id(ctx, arguments["task_id"]))}

    elif name == "agent_sync":
        return sync_agents(
            ctx.store,
            ctx.workspace.worktrees_dir,
            ctx.agents_dir,
            dry_run=arguments.get("dry_run", False)
        )

    elif name == "agent_kill":
        return kill_agent(ctx.store, _task_id(ctx, arguments["task_id"]), grace=ctx.kill_grace)

    elif name == "agent_conflicts":
        matrix = build_conflict_matrix(ctx.store, ctx.workspace, ctx.main_branch)
        result = {**matrix, "merge_order": suggest_merge_order(matrix)}
        if arguments.get("task_id"):
            result["task"] = can_merge_without_conflict(_task_id(ctx, arguments["task_id"]), matrix)
        return result

    elif name == "agent_prepare":
        return prepare_agent_workspace(
            ctx,
            arguments["task_id"],
            pid=arguments.get("pid"),
            fetch=arguments.get("fetch", False)
        )

    elif name == "agent_complete":
        return complete_agent(
            ctx,
            arguments["task_id"],
            arguments["exit_code"],
            blocked=arguments.get("blocked", False),
            log_path=arguments.get("log_path")
        )

    elif name == "memory_merge_task_log":
        result = ctx.memory.merge_task_log(arguments["task_id"], arguments.get("log_path"))
        if result["merged"] or result["deleted"]:
            ctx.resolver.invalidate()
        return result

    elif name == "memory_check_pending":
        result = ctx.memory.check_pending_memory(arguments.get("epic_id"))
        if result["tasks_merged"]:
            ctx.resolver.invalidate()
        return result

    elif name == "memory_hierarchy":
        return ctx.memory.hierarchical_memory(arguments["id"])

    elif name == "memory_log_stats":
        return ctx.memory.log_stats(arguments["id"])

    elif name == "memory_create":
        result = ctx.memory.create_memory(
            arguments["id"],
            project_name=arguments.get("project_name", ""),
            overwrite=arguments.get("overwrite", False)
        )
        if result["success"]:
            ctx.resolver.invalidate()
        return result

    elif name == "memory_update_section":
        return ctx.memory.update_memory_section(
            arguments["id"],
            arguments["section"],
            arguments["content"],
            arguments.get("operation", "replace")
        )

    elif name == "config_get_effective":
        return config_get_effective(
            task_id=arguments.get("task_id"),
            project_dir=arguments.get("project_dir")
        )

    elif name == "config_get_git":
        return config_get_git(
            task_id=arguments.get("task_id"),
            project_dir=arguments.get("project_dir")
        )

    elif name == "config_get_store":
        return config_get_store(arguments.get("project_dir"))

    return {"error": f"Unknown tool: {name}"}


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    try:
        result = dispatch(name, arguments or {}, get_context())
        return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]

    except Exception as e:
        logger.exception(f"Error executing tool {name}")
        return [TextContent(
            type="text",
            text=json.dumps({"error": str(e), "tool": name}, indent=2)
        )]


@server.list_resources()
async def list_resources() -> list[Resource]:
    resources = []

    for uri, info in RESOURCE_DESCRIPTIONS.items():
        resources.append(Resource(uri=uri, **info))

    for agent in get_context().store.list():
        resources.append(Resource(
            uri=f"agents://{agent['task_id']}",
            name=f"Agent {agent['task_id']}",
            mimeType="application/json",
            description=f"Agent record and runs for task {agent['task_id']} ({agent['status']})"
        ))

    return resources


@server.list_resource_templates()
async def list_resource_templates() -> list[ResourceTemplate]:
    return [
        ResourceTemplate(uriTemplate=template, **info)
        for template, info in RESOURCE_TEMPLATES.items()
    ]


@server.read_resource()
async def read_resource(uri: Any) -> str:
    return resolve_resource(str(uri), get_context())


async def async_main():
    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options()
        )


def main():
    """Entry point for the MCP server."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
