"""
Git subprocess helpers.

Thin wrappers around the git CLI. Nothing here raises on a git failure:
every helper returns either a plain value or a {"success": ..., "error": ...}
dict so callers can decide what is fatal.

Local operations (branch, worktree, status) run without a timeout. Remote
operations (fetch, push --delete) take a bounded one.
"""

import logging
import subprocess
from pathlib import Path
from typing import Any, Optional, Union


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def run_git(
    args: list[str],
    cwd: Optional[PathLike] = None,
    timeout: Optional[float] = None,
) -> tuple[bool, str]:
    """Run `git <args>`. Returns (ok, stdout) on success, (False, stderr) on failure."""
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True, text=True, timeout=timeout,
            cwd=str(cwd) if cwd else None
        )
    except subprocess.TimeoutExpired:
        return False, f"git {args[0]} timed out after {timeout}s"
    except (FileNotFoundError, OSError) as e:
        return False, str(e)

    if result.returncode != 0:
        return False, (result.stderr or result.stdout).strip()
    # porcelain formats start with a meaningful space
    return True, result.stdout.rstrip()


class BestEffort:
    """Collects outcomes of steps that must not abort the surrounding operation."""

    def __init__(self):
        self.failures: list[dict[str, str]] = []

    def attempt(self, operation: str, outcome: tuple[bool, str]) -> bool:
        ok, output = outcome
        if not ok:
            logger.warning(f"Best-effort step failed: {operation}: {output}")
            self.failures.append({"operation": operation, "error": output})
        return ok

    def to_list(self) -> list[dict[str, str]]:
        return list(self.failures)

    def __bool__(self) -> bool:
        return bool(self.failures)


# ============================================================================
# Queries
# ============================================================================

def repo_root(cwd: Optional[PathLike] = None) -> Optional[Path]:
    ok, out = run_git(["rev-parse", "--show-toplevel"], cwd)
    return Path(out) if ok and out else None


def current_branch(cwd: Optional[PathLike] = None) -> Optional[str]:
    ok, out = run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    return out if ok and out else None


def branch_exists(branch: str, cwd: Optional[PathLike] = None) -> bool:
    ok, _ = run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd)
    return ok


def revision_exists(rev: str, cwd: Optional[PathLike] = None) -> bool:
    ok, _ = run_git(["rev-parse", "--verify", "--quiet", f"{rev}^{{commit}}"], cwd)
    return ok


def commit_count(base: str, branch: str, cwd: Optional[PathLike] = None) -> Optional[int]:
    """Number of commits on `branch` that are not on `base`, None if git cannot tell."""
    ok, out = run_git(["rev-list", "--count", f"{base}..{branch}"], cwd)
    if not ok:
        return None
    try:
        return int(out)
    except ValueError:
        return None


def branch_divergence(branch: str, upstream: str, cwd: Optional[PathLike] = None) -> Optional[dict[str, int]]:
    """{ahead, behind} of `branch` relative to `upstream`, None if either is unknown."""
    ok, out = run_git(["rev-list", "--left-right", "--count", f"{upstream}...{branch}"], cwd)
    if not ok:
        return None
    parts = out.split()
    if len(parts) != 2:
        return None
    behind, ahead = (int(p) for p in parts)
    return {"ahead": ahead, "behind": behind}


def porcelain_status(cwd: PathLike) -> tuple[bool, list[str]]:
    ok, out = run_git(["status", "--porcelain"], cwd)
    if not ok:
        return False, []
    return True, [line for line in out.splitlines() if line.strip()]


# ============================================================================
# Mutations
# ============================================================================

def ensure_branch(branch: str, base: str, cwd: Optional[PathLike] = None) -> dict[str, Any]:
    """Create `branch` from `base` unless it already exists.

    A create that fails because another process created the branch in the
    meantime is reported as existed, not as an error.
    """
    if branch_exists(branch, cwd):
        return {"branch": branch, "created": False, "existed": True}

    ok, out = run_git(["branch", branch, base], cwd)
    if ok:
        logger.info(f"Created branch {branch} from {base}")
        return {"branch": branch, "created": True, "existed": False}

    if branch_exists(branch, cwd):
        return {"branch": branch, "created": False, "existed": True}
    return {"branch": branch, "created": False, "existed": False, "error": out}


def delete_branch(branch: str, cwd: Optional[PathLike] = None, force: bool = False) -> tuple[bool, str]:
    return run_git(["branch", "-D" if force else "-d", branch], cwd)


def delete_remote_branch(
    branch: str,
    remote: str = "origin",
    cwd: Optional[PathLike] = None,
    timeout: float = 10,
) -> tuple[bool, str]:
    return run_git(["push", remote, "--delete", branch], cwd, timeout=timeout)


def fetch(remote: str = "origin", cwd: Optional[PathLike] = None, timeout: float = 10) -> dict[str, Any]:
    ok, out = run_git(["fetch", remote, "--quiet"], cwd, timeout=timeout)
    if not ok:
        return {"success": False, "error": out}
    return {"success": True}


def sync_branch(
    branch: str,
    upstream: str,
    cwd: Optional[PathLike] = None,
    strategy: str = "merge",
) -> dict[str, Any]:
    """Bring `branch` up to date with `upstream` by merge or rebase.

    Checks out `branch`, integrates, then returns to the branch that was
    checked out before. On a conflict the in-progress merge/rebase is
    aborted and the original branch restored.
    """
    if strategy not in ("merge", "rebase"):
        return {"success": False, "error": f"Unknown sync strategy: {strategy}"}

    divergence = branch_divergence(branch, upstream, cwd)
    if divergence is None:
        return {"success": False, "error": f"Cannot compare {branch} with {upstream}"}
    if divergence["behind"] == 0:
        return {"success": True, "synced": False, "behind": 0, "message": "Already up to date"}

    original = current_branch(cwd)
    ok, out = run_git(["checkout", branch], cwd)
    if not ok:
        return {"success": False, "error": f"Cannot checkout {branch}: {out}"}

    if strategy == "merge":
        ok, out = run_git(["merge", upstream, "--no-edit"], cwd)
    else:
        ok, out = run_git(["rebase", upstream], cwd)

    cleanup = BestEffort()
    if not ok:
        cleanup.attempt(f"{strategy} --abort", run_git([strategy, "--abort"], cwd))
        if original:
            cleanup.attempt(f"checkout {original}", run_git(["checkout", original], cwd))
        return {
            "success": False,
            "error": f"Conflict during {strategy}: {out}",
            "best_effort": cleanup.to_list(),
        }

    if original and original != branch:
        cleanup.attempt(f"checkout {original}", run_git(["checkout", original], cwd))

    return {
        "success": True,
        "synced": True,
        "behind": divergence["behind"],
        "best_effort": cleanup.to_list(),
    }
