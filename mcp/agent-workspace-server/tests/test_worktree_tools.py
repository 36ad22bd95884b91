"""
Tests for task worktree management.

Run with: pytest tests/test_worktree_tools.py -v
"""

import pytest
from pathlib import Path
from unittest.mock import patch

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from agent_workspace_server import git_tools
from agent_workspace_server.worktree_tools import WorkspaceManager, parse_worktree_list

from conftest import commit_file, git


@pytest.fixture
def workspace(git_repo, tmp_path):
    return WorkspaceManager(git_repo, tmp_path / "worktrees")


class TestParseWorktreeList:
    def test_parses_entries(self):
        output = (
            "worktree /repo\n"
            "HEAD 1111111111111111111111111111111111111111\n"
            "branch refs/heads/main\n"
            "\n"
            "worktree /wt/T001\n"
            "HEAD 2222222222222222222222222222222222222222\n"
            "branch refs/heads/task/T001\n"
            "\n"
            "worktree /wt/scratch\n"
            "HEAD 3333333333333333333333333333333333333333\n"
            "detached\n"
        )
        entries = parse_worktree_list(output)
        assert [e["path"] for e in entries] == ["/repo", "/wt/T001", "/wt/scratch"]
        assert entries[0]["branch"] == "main"
        assert entries[0]["task_id"] is None
        assert entries[1]["branch"] == "task/T001"
        assert entries[1]["task_id"] == "T001"
        assert entries[2]["detached"]
        assert entries[2]["branch"] is None

    def test_non_task_branch_has_no_task_id(self):
        entries = parse_worktree_list("worktree /wt/x\nbranch refs/heads/task/notes\n")
        assert entries[0]["task_id"] is None

    def test_empty(self):
        assert parse_worktree_list("") == []


class TestCreate:
    def test_create_from_current_branch(self, workspace, git_repo):
        result = workspace.create("T1")
        assert result["success"]
        assert result["branch"] == "task/T001"
        assert result["base_branch"] == "main"
        assert Path(result["path"]).name == "T001"
        assert (Path(result["path"]) / "README.md").exists()
        assert git_tools.branch_exists("task/T001", git_repo)

    def test_create_from_explicit_base(self, workspace, git_repo):
        git(git_repo, "branch", "epic/E003")
        result = workspace.create("T001", base_branch="epic/E003")
        assert result["base_branch"] == "epic/E003"

    def test_rejected_when_path_exists(self, workspace):
        workspace.path_for("T001").mkdir(parents=True)
        result = workspace.create("T001")
        assert not result["success"]
        assert "already exists" in result["error"]

    def test_stale_branch_is_recreated(self, workspace, git_repo):
        git(git_repo, "branch", "task/T001")
        result = workspace.create("T001")
        assert result["success"]
        assert result["recreated"] is True

    def test_branch_with_own_commits_is_refused(self, workspace, git_repo):
        git(git_repo, "checkout", "-q", "-b", "task/T001")
        commit_file(git_repo, "work.txt", "unmerged work")
        git(git_repo, "checkout", "-q", "main")

        result = workspace.create("T001")
        assert not result["success"]
        assert "1 commit(s)" in result["error"]
        assert git_tools.branch_exists("task/T001", git_repo)

    def test_unknown_base_leaves_existing_branch(self, workspace, git_repo):
        git(git_repo, "checkout", "-q", "-b", "task/T001")
        commit_file(git_repo, "work.txt", "unmerged work")
        git(git_repo, "checkout", "-q", "main")

        result = workspace.create("T001", base_branch="mian")
        assert not result["success"]
        assert "Base branch not found" in result["error"]
        assert git_tools.branch_exists("task/T001", git_repo)
        assert git_tools.commit_count("main", "task/T001", git_repo) == 1
        assert not workspace.exists("T001")

    def test_unknown_divergence_keeps_branch(self, workspace, git_repo):
        git(git_repo, "branch", "task/T001")
        with patch("agent_workspace_server.worktree_tools.git_tools.commit_count", return_value=None):
            result = workspace.create("T001")
        assert not result["success"]
        assert "leaving the branch in place" in result["error"]
        assert git_tools.branch_exists("task/T001", git_repo)


class TestRemove:
    def test_remove_deletes_branch(self, workspace, git_repo):
        workspace.create("T001")
        result = workspace.remove("T001")
        assert result["success"]
        assert result["branch_deleted"]
        assert not workspace.exists("T001")
        assert not git_tools.branch_exists("task/T001", git_repo)

    def test_keep_branch(self, workspace, git_repo):
        workspace.create("T001")
        result = workspace.remove("T001", keep_branch=True)
        assert result["success"]
        assert not result["branch_deleted"]
        assert git_tools.branch_exists("task/T001", git_repo)

    def test_unmerged_branch_is_best_effort(self, workspace, git_repo):
        path = Path(workspace.create("T001")["path"])
        commit_file(path, "work.txt", "task work")

        result = workspace.remove("T001")
        assert result["success"]
        assert not result["branch_deleted"]
        assert result["best_effort"][0]["operation"] == "delete branch task/T001"
        assert not path.exists()

    def test_dirty_worktree_needs_force(self, workspace):
        path = Path(workspace.create("T001")["path"])
        (path / "README.md").write_text("uncommitted\n")

        assert not workspace.remove("T001")["success"]
        assert workspace.remove("T001", force=True)["success"]

    def test_missing_worktree(self, workspace):
        result = workspace.remove("T404")
        assert not result["success"]
        assert "not found" in result["error"]


class TestCleanup:
    def test_cleanup_without_remote(self, workspace, git_repo):
        path = Path(workspace.create("T001")["path"])
        commit_file(path, "work.txt", "task work")

        result = workspace.cleanup("T001")
        assert result["success"]
        assert result["worktree_removed"]
        assert result["branch_deleted"]
        assert not result["remote_deleted"]
        assert [f["operation"] for f in result["best_effort"]] == ["delete remote branch origin/task/T001"]

    def test_cleanup_local_only(self, workspace):
        workspace.create("T001")
        result = workspace.cleanup("T001", delete_remote=False)
        assert result["best_effort"] == []


class TestInspection:
    def test_list(self, workspace, git_repo):
        workspace.create("T001")
        workspace.create("T002")
        worktrees = workspace.list()
        assert len(worktrees) == 3
        assert sorted(wt["task_id"] for wt in workspace.list_task_worktrees()) == ["T001", "T002"]

    def test_prune(self, workspace):
        assert workspace.prune() == {"pruned": True}

    def test_status_missing(self, workspace):
        assert workspace.status("T001") == {
            "exists": False,
            "path": str(workspace.path_for("T001")),
            "branch": "task/T001",
        }

    def test_status_clean_and_dirty(self, workspace):
        path = Path(workspace.create("T001")["path"])
        status = workspace.status("T001")
        assert status["exists"]
        assert status["clean"]
        assert status["ahead"] == 0
        assert status["behind"] == 0

        (path / "new.txt").write_text("x")
        status = workspace.status("T001")
        assert not status["clean"]
        assert status["uncommitted"] == 1

    def test_modified_files_committed(self, workspace):
        path = Path(workspace.create("T001")["path"])
        commit_file(path, "src/app.py", "print()")
        assert workspace.modified_files("T001") == ["src/app.py"]

    def test_modified_files_falls_back_to_uncommitted(self, workspace):
        path = Path(workspace.create("T001")["path"])
        (path / "README.md").write_text("edited\n")
        assert workspace.modified_files("T001") == ["README.md"]

    def test_modified_files_without_worktree(self, workspace):
        assert workspace.modified_files("T001") == []
