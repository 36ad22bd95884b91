"""
Branch Hierarchy Tools

Branching strategies decide how many shared branches sit above a task's own
`task/<id>` branch:

    flat   main -> task/T001
    prd    main -> prd/PRD-001 -> task/T001
    epic   main -> prd/PRD-001 -> epic/E003 -> task/T001

ensure_hierarchy() materializes the shared branches. It is idempotent and
collects creation failures instead of raising, so one bad branch does not
stop its siblings.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Union

from . import git_tools
from .ids import normalize_id
from .resolver import ArtefactResolver


logger = logging.getLogger(__name__)


class BranchingStrategy(Enum):
    FLAT = "flat"
    PRD = "prd"
    EPIC = "epic"

    @classmethod
    def parse(cls, value: Union[str, "BranchingStrategy", None]) -> "BranchingStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "flat").strip().lower())
        except ValueError:
            logger.warning(f"Unknown branching strategy '{value}', using flat")
            return cls.FLAT


@dataclass
class BranchContext:
    prd_id: Optional[str] = None
    epic_id: Optional[str] = None
    strategy: BranchingStrategy = BranchingStrategy.FLAT
    main_branch: str = "main"

    def to_dict(self) -> dict[str, Any]:
        return {
            "prd_id": self.prd_id,
            "epic_id": self.epic_id,
            "strategy": self.strategy.value,
            "main_branch": self.main_branch,
        }


# ============================================================================
# Branch names
# ============================================================================

def task_branch(task_id: str) -> str:
    return f"task/{task_id}"


def prd_branch(prd_id: str) -> str:
    return f"prd/{prd_id}"


def epic_branch(epic_id: str) -> str:
    return f"epic/{epic_id}"


# ============================================================================
# Hierarchy per strategy
# ============================================================================

def _flat_chain(ctx: BranchContext) -> list[tuple[str, str]]:
    return []


def _prd_chain(ctx: BranchContext) -> list[tuple[str, str]]:
    if not ctx.prd_id:
        return []
    return [(prd_branch(ctx.prd_id), ctx.main_branch)]


def _epic_chain(ctx: BranchContext) -> list[tuple[str, str]]:
    chain = _prd_chain(ctx)
    if ctx.epic_id:
        parent = chain[-1][0] if chain else ctx.main_branch
        chain.append((epic_branch(ctx.epic_id), parent))
    return chain


# (branch, parent) pairs above the task branch, root first
_CHAIN_BUILDERS: dict[BranchingStrategy, Callable[[BranchContext], list[tuple[str, str]]]] = {
    BranchingStrategy.FLAT: _flat_chain,
    BranchingStrategy.PRD: _prd_chain,
    BranchingStrategy.EPIC: _epic_chain,
}


def shared_branches(ctx: BranchContext) -> list[tuple[str, str]]:
    return _CHAIN_BUILDERS[ctx.strategy](ctx)


def branch_hierarchy(ctx: BranchContext) -> list[str]:
    """Full chain from the main branch down to the task's parent branch."""
    return [ctx.main_branch] + [branch for branch, _ in shared_branches(ctx)]


def parent_branch(ctx: BranchContext) -> str:
    """Branch a task worktree is created from."""
    return branch_hierarchy(ctx)[-1]


def ensure_hierarchy(ctx: BranchContext, cwd: Optional[Union[str, Path]] = None) -> dict[str, Any]:
    """Create every missing shared branch from its parent.

    Returns {branches, created, existed, errors}. For the flat strategy
    branches is [main] and nothing is touched.
    """
    chain = shared_branches(ctx)
    if not chain:
        return {"branches": [ctx.main_branch], "created": [], "existed": [], "errors": []}

    created, existed, errors = [], [], []
    for branch, parent in chain:
        result = git_tools.ensure_branch(branch, parent, cwd)
        if result.get("error"):
            errors.append(f"{branch}: {result['error']}")
        elif result["created"]:
            created.append(branch)
        else:
            existed.append(branch)

    return {
        "branches": [branch for branch, _ in chain],
        "created": created,
        "existed": existed,
        "errors": errors,
    }


# ============================================================================
# Keeping shared branches current
# ============================================================================

def sync_parent_branch(
    ctx: BranchContext,
    cwd: Optional[Union[str, Path]] = None,
    enabled: bool = True,
    strategy: str = "merge",
) -> dict[str, Any]:
    """Sync the task's parent branch with the branch above it (one level)."""
    if not enabled:
        return {"success": True, "disabled": True}

    chain = branch_hierarchy(ctx)
    if len(chain) < 2:
        return {"success": True, "skipped": "flat mode"}

    branch, upstream = chain[-1], chain[-2]
    if not git_tools.branch_exists(branch, cwd):
        return {"success": True, "skipped": f"{branch} (not created yet)"}

    result = git_tools.sync_branch(branch, upstream, cwd, strategy)
    if not result["success"]:
        return {"success": False, "error": result["error"], "branch": branch, "upstream": upstream}
    if result["synced"]:
        return {"success": True, "synced": f"{branch} ← {upstream} ({result['behind']} commits)"}
    return {"success": True, "skipped": f"{branch} (up to date)"}


def sync_upward_hierarchy(
    level: str,
    ctx: BranchContext,
    cwd: Optional[Union[str, Path]] = None,
    strategy: str = "merge",
) -> dict[str, Any]:
    """Propagate upstream changes down the shared branches after a merge.

    level "epic": an epic just landed in its PRD branch, refresh epic from prd.
    level "prd": a PRD just landed in main, refresh prd from main (and epic
    from prd under the epic strategy).
    """
    synced, errors, skipped = [], [], []

    if ctx.strategy is BranchingStrategy.FLAT:
        return {"success": True, "synced": synced, "errors": errors, "skipped": ["flat mode"]}

    pairs: list[tuple[str, str]] = []
    if ctx.strategy is BranchingStrategy.EPIC and ctx.prd_id and ctx.epic_id and level in ("epic", "prd"):
        pairs.append((epic_branch(ctx.epic_id), prd_branch(ctx.prd_id)))
    if level == "prd" and ctx.prd_id:
        pairs.append((prd_branch(ctx.prd_id), ctx.main_branch))

    for branch, upstream in pairs:
        if not git_tools.branch_exists(branch, cwd):
            skipped.append(f"{branch} (not created yet)")
            continue
        result = git_tools.sync_branch(branch, upstream, cwd, strategy)
        if not result["success"]:
            errors.append(f"{branch}: {result['error']}")
        elif result["synced"]:
            synced.append(f"{branch} ← {upstream} ({result['behind']} commits)")
        else:
            skipped.append(f"{branch} (up to date)")

    return {"success": not errors, "synced": synced, "errors": errors, "skipped": skipped}


def context_for_task(
    resolver: ArtefactResolver,
    task_id: str,
    main_branch: str = "main",
) -> Optional[BranchContext]:
    """Derive the branch context of a task from its artefacts.

    The strategy is read from the owning PRD's `branching` frontmatter.
    Returns None when the task is unknown.
    """
    task = resolver.get_task(task_id)
    if task is None:
        return None

    prd_id = normalize_id(task.prd_id, resolver.digits) if task.prd_id else None
    epic_id = None
    parent = resolver.task_epic(task_id)
    if parent:
        epic_id = normalize_id(parent["epic_id"], resolver.digits)

    strategy = BranchingStrategy.parse(resolver.prd_branching(prd_id)) if prd_id else BranchingStrategy.FLAT
    return BranchContext(prd_id=prd_id, epic_id=epic_id, strategy=strategy, main_branch=main_branch)
