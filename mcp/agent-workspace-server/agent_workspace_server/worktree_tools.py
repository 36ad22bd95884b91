"""
Worktree Tools

One git worktree plus one `task/<TaskID>` branch per task, created under the
configured worktrees root:

    <worktrees>/T039/   on branch task/T039

Worktrees of different tasks share nothing but the repository's .git, so no
locking is added here: git's own locking covers concurrent worktree and
branch operations.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Optional, Union

from . import git_tools
from .branch_tools import task_branch
from .git_tools import BestEffort
from .ids import DEFAULT_DIGITS, normalize_id


logger = logging.getLogger(__name__)

_TASK_BRANCH_REF = re.compile(r"^refs/heads/task/(T\d+[a-z]?)$")


def parse_worktree_list(output: str) -> list[dict[str, Any]]:
    """Parse `git worktree list --porcelain` output into dicts.

    Each entry has path, head, branch (short name or None) and the
    detached/bare flags. task_id is set only for task/<TaskID> branches.
    """
    worktrees: list[dict[str, Any]] = []
    current: Optional[dict[str, Any]] = None

    for line in output.splitlines():
        if line.startswith("worktree "):
            if current:
                worktrees.append(current)
            current = {
                "path": line[len("worktree "):],
                "head": None,
                "branch": None,
                "task_id": None,
                "detached": False,
                "bare": False,
            }
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current["head"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            ref = line[len("branch "):]
            current["branch"] = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
            match = _TASK_BRANCH_REF.match(ref)
            if match:
                current["task_id"] = match.group(1)
        elif line == "detached":
            current["detached"] = True
        elif line == "bare":
            current["bare"] = True

    if current:
        worktrees.append(current)
    return worktrees


class WorkspaceManager:
    """Creates, lists and removes task worktrees of one repository."""

    def __init__(
        self,
        repo_root: Union[str, Path],
        worktrees_dir: Union[str, Path],
        remote: str = "origin",
        remote_timeout: float = 10,
        digits: Optional[dict[str, int]] = None,
    ):
        self.repo_root = Path(repo_root)
        self.worktrees_dir = Path(worktrees_dir)
        self.remote = remote
        self.remote_timeout = remote_timeout
        self.digits = digits or dict(DEFAULT_DIGITS)

    @classmethod
    def from_config(cls, project_dir: Optional[str] = None) -> "WorkspaceManager":
        from .config_tools import config_get_effective, config_get_paths, config_get_digits

        config = config_get_effective(project_dir=project_dir)["config"]
        paths = config_get_paths(project_dir, config)
        git = config.get("git", {})
        return cls(
            paths["project_root"],
            paths["worktrees"],
            remote=git.get("remote", "origin"),
            remote_timeout=git.get("fetch_timeout", 10),
            digits=config_get_digits(config=config),
        )

    def _task_id(self, task_id: str) -> str:
        return normalize_id(task_id, self.digits) or task_id

    def path_for(self, task_id: str) -> Path:
        return self.worktrees_dir / self._task_id(task_id)

    def branch_for(self, task_id: str) -> str:
        return task_branch(self._task_id(task_id))

    def exists(self, task_id: str) -> bool:
        return self.path_for(task_id).exists()

    # ========================================================================
    # Create / remove
    # ========================================================================

    def create(self, task_id: str, base_branch: Optional[str] = None) -> dict[str, Any]:
        """Create the task worktree on a fresh task branch.

        Without base_branch the current branch of the main working tree is
        used and returned, so the caller can persist it.
        """
        path = self.path_for(task_id)
        branch = self.branch_for(task_id)

        if path.exists():
            return {"success": False, "error": f"Worktree already exists: {path}", "path": str(path)}

        base = base_branch or git_tools.current_branch(self.repo_root)
        if not base:
            return {"success": False, "error": "Cannot determine base branch", "path": str(path)}
        if not git_tools.revision_exists(base, self.repo_root):
            return {"success": False, "error": f"Base branch not found: {base}", "path": str(path)}

        recreated = False
        if git_tools.branch_exists(branch, self.repo_root):
            ahead = git_tools.commit_count(base, branch, self.repo_root)
            if ahead is None:
                return {
                    "success": False,
                    "error": f"Cannot compare {branch} with {base}; leaving the branch in place",
                    "path": str(path),
                    "branch": branch,
                }
            if ahead > 0:
                return {
                    "success": False,
                    "error": f"Branch {branch} already exists with {ahead} commit(s) not on {base}",
                    "path": str(path),
                    "branch": branch,
                }
            ok, out = git_tools.delete_branch(branch, self.repo_root, force=True)
            if not ok:
                return {"success": False, "error": f"Cannot delete stale branch {branch}: {out}"}
            logger.info(f"Deleted stale branch {branch} (no commits ahead of {base})")
            recreated = True

        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        ok, out = git_tools.run_git(["worktree", "add", str(path), "-b", branch, base], self.repo_root)
        if not ok:
            return {"success": False, "error": out, "path": str(path), "branch": branch}

        logger.info(f"Created worktree {path} on {branch} from {base}")
        result = {
            "success": True,
            "path": str(path),
            "branch": branch,
            "base_branch": base,
        }
        if recreated:
            result["recreated"] = True
        return result

    def remove(self, task_id: str, force: bool = False, keep_branch: bool = False) -> dict[str, Any]:
        """Remove the worktree, then delete its branch on a best-effort basis.

        A branch that cannot be deleted (unmerged without force) does not
        fail the removal; the failure is listed under best_effort.
        """
        path = self.path_for(task_id)
        branch = self.branch_for(task_id)

        if not path.exists():
            return {"success": False, "error": f"Worktree not found: {path}"}

        args = ["worktree", "remove", str(path)]
        if force:
            args.append("--force")
        ok, out = git_tools.run_git(args, self.repo_root)
        if not ok:
            return {"success": False, "error": out}

        best_effort = BestEffort()
        branch_deleted = False
        if not keep_branch:
            branch_deleted = best_effort.attempt(
                f"delete branch {branch}",
                git_tools.delete_branch(branch, self.repo_root, force=force),
            )

        return {
            "success": True,
            "path": str(path),
            "branch": branch,
            "branch_deleted": branch_deleted,
            "best_effort": best_effort.to_list(),
        }

    def cleanup(self, task_id: str, delete_remote: bool = True) -> dict[str, Any]:
        """Force-remove worktree, local branch and remote branch. Every step is best-effort."""
        path = self.path_for(task_id)
        branch = self.branch_for(task_id)
        best_effort = BestEffort()

        worktree_removed = False
        if path.exists():
            worktree_removed = best_effort.attempt(
                f"remove worktree {path}",
                git_tools.run_git(["worktree", "remove", str(path), "--force"], self.repo_root),
            )

        branch_deleted = False
        if git_tools.branch_exists(branch, self.repo_root):
            branch_deleted = best_effort.attempt(
                f"delete branch {branch}",
                git_tools.delete_branch(branch, self.repo_root, force=True),
            )

        remote_deleted = False
        if delete_remote:
            remote_deleted = best_effort.attempt(
                f"delete remote branch {self.remote}/{branch}",
                git_tools.delete_remote_branch(branch, self.remote, self.repo_root, self.remote_timeout),
            )

        return {
            "success": True,
            "worktree_removed": worktree_removed,
            "branch_deleted": branch_deleted,
            "remote_deleted": remote_deleted,
            "best_effort": best_effort.to_list(),
        }

    # ========================================================================
    # Inspection
    # ========================================================================

    def list(self) -> list[dict[str, Any]]:
        ok, out = git_tools.run_git(["worktree", "list", "--porcelain"], self.repo_root)
        if not ok:
            logger.warning(f"git worktree list failed: {out}")
            return []
        return parse_worktree_list(out)

    def list_task_worktrees(self) -> list[dict[str, Any]]:
        return [wt for wt in self.list() if wt["task_id"]]

    def prune(self) -> dict[str, Any]:
        ok, out = git_tools.run_git(["worktree", "prune"], self.repo_root)
        if not ok:
            return {"pruned": False, "error": out}
        return {"pruned": True}

    def status(self, task_id: str) -> dict[str, Any]:
        """{exists, clean, ahead, behind, uncommitted}.

        ahead/behind are relative to the branch's upstream and are 0 when no
        upstream is configured.
        """
        path = self.path_for(task_id)
        branch = self.branch_for(task_id)
        if not path.exists():
            return {"exists": False, "path": str(path), "branch": branch}

        ok, changes = git_tools.porcelain_status(path)
        ahead = behind = 0
        rev_ok, out = git_tools.run_git(["rev-list", "--left-right", "--count", "HEAD...@{upstream}"], path)
        if rev_ok:
            parts = out.split()
            if len(parts) == 2:
                ahead, behind = int(parts[0]), int(parts[1])

        return {
            "exists": True,
            "path": str(path),
            "branch": git_tools.current_branch(path) or branch,
            "clean": ok and not changes,
            "uncommitted": len(changes),
            "ahead": ahead,
            "behind": behind,
        }

    def modified_files(self, task_id: str, main_branch: str = "main") -> list[str]:
        """Files changed on the task branch since it left main.

        Falls back to uncommitted working-tree changes while the branch has
        no commits of its own. A task without a worktree has no files.
        """
        path = self.path_for(task_id)
        if not path.exists():
            return []

        branch = self.branch_for(task_id)
        ok, out = git_tools.run_git(["diff", "--name-only", f"{main_branch}...{branch}"], self.repo_root)
        if ok and out:
            return [line for line in out.splitlines() if line.strip()]

        _, changes = git_tools.porcelain_status(path)
        return [line[3:].split(" -> ")[-1] for line in changes if len(line) > 3]
