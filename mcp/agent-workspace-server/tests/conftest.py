"""
Shared fixtures: an artefacts tree and a throwaway git repository.
"""

import shutil
import subprocess
import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from agent_workspace_server import markdown_meta


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def write_artefact(path: Path, data: dict, body: str = "") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(markdown_meta.stringify(data, body or f"# {data.get('title', path.stem)}\n"))
    return path


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=str(cwd), capture_output=True, text=True, check=True)
    return result.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str = "") -> None:
    target = repo / name
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", message or f"Update {name}")


@pytest.fixture
def artefacts_dir(tmp_path):
    """One PRD (epic branching) with one epic and two tasks.

    prds/PRD-001-auth/prd.md             branching: epic
    prds/PRD-001-auth/epics/E003-login.md
    prds/PRD-001-auth/tasks/T00007-form.md   parent: PRD-001 / E003
    prds/PRD-001-auth/tasks/T008-api.md      parent: E3
    """
    root = tmp_path / "artefacts"
    prd_dir = root / "prds" / "PRD-001-auth"
    write_artefact(prd_dir / "prd.md", {"id": "PRD-001", "title": "Auth", "branching": "epic"})
    write_artefact(prd_dir / "epics" / "E003-login.md", {"id": "E003", "title": "Login", "status": "In Progress"})
    write_artefact(prd_dir / "tasks" / "T00007-form.md", {
        "id": "T00007",
        "title": "Login form",
        "status": "In Progress",
        "parent": "PRD-001 / E003",
    })
    write_artefact(prd_dir / "tasks" / "T008-api.md", {
        "id": "T008",
        "title": "Login API",
        "status": "Todo",
        "parent": "E3",
    })
    return root


@pytest.fixture
def git_repo(tmp_path):
    """A repository on branch main with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.email", "dev@example.com")
    git(repo, "config", "user.name", "Dev")
    git(repo, "config", "commit.gpgsign", "false")
    commit_file(repo, "README.md", "# repo\n", "Initial commit")
    return repo
