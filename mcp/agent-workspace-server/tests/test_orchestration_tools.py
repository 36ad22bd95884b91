"""
Tests for Orchestration Tools

Run with: pytest tests/test_orchestration_tools.py -v
"""

import pytest
from pathlib import Path
from unittest.mock import patch

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from agent_workspace_server import git_tools
from agent_workspace_server.memory_tools import MemoryManager
from agent_workspace_server.orchestration_tools import (
    WorkspaceContext,
    complete_agent,
    prepare_agent_workspace,
)
from agent_workspace_server.resolver import ArtefactResolver
from agent_workspace_server.store import AgentStatus, open_store
from agent_workspace_server.worktree_tools import WorkspaceManager

from conftest import commit_file, git, write_artefact


@pytest.fixture
def ctx(git_repo, artefacts_dir, tmp_path):
    memory_dir = tmp_path / "memory"
    resolver = ArtefactResolver(artefacts_dir, memory_dir)
    context = WorkspaceContext(
        resolver=resolver,
        workspace=WorkspaceManager(git_repo, tmp_path / "worktrees"),
        store=open_store("sqlite", tmp_path / "state"),
        memory=MemoryManager(memory_dir, resolver),
        repo_root=git_repo,
        agents_dir=tmp_path / "agents",
    )
    yield context
    context.close()


class TestPrepareAgentWorkspace:
    def test_full_preparation(self, ctx, git_repo):
        mission = ctx.agents_dir / "T007" / "mission.yaml"
        mission.parent.mkdir(parents=True)
        mission.write_text("task: T007\n")

        result = prepare_agent_workspace(ctx, "T7", pid=999)

        assert result["success"], result
        assert result["task_id"] == "T007"
        assert result["hierarchy"]["created"] == ["prd/PRD-001", "epic/E003"]
        assert result["worktree"]["branch"] == "task/T007"
        assert result["worktree"]["base_branch"] == "epic/E003"
        assert git_tools.branch_exists("task/T007", git_repo)

        agent = ctx.store.get("T007")
        assert agent["status"] == "spawned"
        assert agent["pid"] == 999
        assert agent["branching"] == "epic"
        assert agent["base_branch"] == "epic/E003"
        assert agent["mission_file"] == str(mission)
        assert agent["log_file"] == str(ctx.agents_dir / "T007" / "run.log")
        assert len(ctx.store.runs_for("T007")) == 1

    def test_unknown_task(self, ctx):
        result = prepare_agent_workspace(ctx, "T404")
        assert not result["success"]
        assert "not found" in result["error"]

    def test_parent_branch_synced_before_worktree(self, ctx, git_repo):
        prepare_agent_workspace(ctx, "T7")
        git(git_repo, "checkout", "-q", "prd/PRD-001")
        commit_file(git_repo, "merged.txt", "from another epic")
        git(git_repo, "checkout", "-q", "main")

        result = prepare_agent_workspace(ctx, "T8")
        assert result["success"], result
        assert result["sync"] == {"success": True, "synced": "epic/E003 ← prd/PRD-001 (1 commits)"}
        assert (Path(result["worktree"]["path"]) / "merged.txt").exists()

    def test_second_prepare_rejected_by_existing_worktree(self, ctx):
        assert prepare_agent_workspace(ctx, "T7")["success"]
        result = prepare_agent_workspace(ctx, "T007")
        assert not result["success"]
        assert "already exists" in result["error"]

    def test_hierarchy_errors_abort(self, ctx):
        failing = {"branches": ["prd/PRD-001"], "created": [], "existed": [], "errors": ["prd/PRD-001: boom"]}
        with patch("agent_workspace_server.orchestration_tools.ensure_hierarchy", return_value=failing):
            result = prepare_agent_workspace(ctx, "T7")
        assert not result["success"]
        assert result["error"] == "Cannot create branch hierarchy"
        assert not ctx.workspace.exists("T7")
        assert ctx.store.get("T007") is None

    def test_flat_prd_uses_main(self, ctx, artefacts_dir, git_repo):
        flat = artefacts_dir / "prds" / "PRD-002-flat"
        write_artefact(flat / "prd.md", {"title": "Flat"})
        write_artefact(flat / "tasks" / "T020-a.md", {"title": "A", "parent": "E005"})
        ctx.resolver.invalidate()

        result = prepare_agent_workspace(ctx, "T20")
        assert result["success"], result
        assert result["worktree"]["base_branch"] == "main"
        assert result["sync"] == {"success": True, "skipped": "flat mode"}

    def test_fetch_failure_is_not_fatal(self, ctx):
        result = prepare_agent_workspace(ctx, "T7", fetch=True)
        assert result["success"], result


class TestCompleteAgent:
    def test_complete_records_exit_and_merges_log(self, ctx):
        prepare_agent_workspace(ctx, "T7")
        ctx.memory.ensure_memory_dir()
        task_log = ctx.memory.memory_dir / "T00007.log"
        task_log.write_text("2024-01-01T00:00:00.000Z [INFO] hi\n")

        result = complete_agent(ctx, "T00007", 0, log_path=str(task_log))

        assert result["success"]
        assert result["task_id"] == "T007"
        assert result["exit"]["to"] == "completed"
        assert result["memory"] == {"merged": True, "epic_id": "E003", "deleted": False}
        assert ctx.store.get("T007")["status"] == "completed"
        epic_log = (ctx.memory.memory_dir / "E003.log").read_text()
        assert "2024-01-01T00:00:00.000Z [T00007] [INFO] hi" in epic_log
        assert not task_log.exists()

    def test_failed_exit(self, ctx):
        prepare_agent_workspace(ctx, "T7")
        result = complete_agent(ctx, "T7", 1)
        assert result["exit"]["to"] == "failed"
        assert result["memory"]["merged"] is False

    def test_killed_agent_log_is_still_merged(self, ctx):
        prepare_agent_workspace(ctx, "T7")
        ctx.store.set_status("T007", AgentStatus.RUNNING)
        ctx.store.set_status("T007", AgentStatus.KILLED)
        ctx.memory.ensure_memory_dir()
        task_log = ctx.memory.memory_dir / "T007.log"
        task_log.write_text("2024-01-01T00:00:00.000Z [WARN] killed mid-run\n")

        result = complete_agent(ctx, "T007", None)

        assert not result["success"]
        assert "Cannot transition T007 from killed" in result["exit"]["error"]
        assert result["memory"] == {"merged": True, "epic_id": "E003", "deleted": False}
        assert ctx.store.get("T007")["status"] == "killed"
        assert not task_log.exists()
        assert "[T007] [WARN] killed mid-run" in (ctx.memory.memory_dir / "E003.log").read_text()

    def test_live_agent_rejection_skips_merge(self, ctx):
        prepare_agent_workspace(ctx, "T7")
        ctx.memory.ensure_memory_dir()
        task_log = ctx.memory.memory_dir / "T007.log"
        task_log.write_text("2024-01-01T00:00:00.000Z [INFO] hi\n")

        with patch(
            "agent_workspace_server.orchestration_tools.record_exit",
            return_value={"success": False, "error": "boom"},
        ):
            result = complete_agent(ctx, "T7", 0)

        assert result == {"success": False, "error": "boom"}
        assert task_log.exists()

    def test_unknown_agent(self, ctx):
        result = complete_agent(ctx, "T8", 0)
        assert not result["success"]
        assert "No agent found" in result["error"]


class TestFromConfig:
    def test_builds_from_project_config(self, tmp_path):
        project = tmp_path / "project"
        config = project / ".claude" / "workspace-config.yaml"
        config.parent.mkdir(parents=True)
        config.write_text("agents:\n  store: json\n  kill_grace: 2\ngit:\n  main_branch: trunk\n")

        with patch("agent_workspace_server.config_tools.Path.home", return_value=tmp_path / "home"):
            context = WorkspaceContext.from_config(str(project))

        try:
            assert context.main_branch == "trunk"
            assert context.kill_grace == 2
            assert type(context.store).__name__ == "JsonAgentStore"
            assert context.resolver.artefacts_dir == project.resolve() / ".workspace" / "artefacts"
            assert context.branch_context("T1") is None
        finally:
            context.close()
