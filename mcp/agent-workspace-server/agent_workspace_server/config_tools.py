"""
Configuration Tools for Agent Workspace MCP Server

Handles YAML configuration cascade merge:
  1. Global defaults:  ~/.claude/ or ~/.copilot/ or ~/.gemini/workspace-config.yaml
  2. Project config:   <repo>/.claude/ or .copilot/ or .gemini/workspace-config.yaml
  3. Task config:      <agents-dir>/TNNN/config.yaml

Each level overrides the previous. Platform directories are checked
in order (.claude first, then .copilot, then .gemini), using whichever exists.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Optional

import yaml

from .ids import DEFAULT_DIGITS


logger = logging.getLogger(__name__)

CONFIG_FILENAME = "workspace-config.yaml"

DEFAULT_CONFIG = {
    "paths": {
        "artefacts": ".workspace/artefacts",
        "memory": ".workspace/memory",
        "worktrees": "../{repo_name}-worktrees",
        "state": ".workspace/state",
        "agents": ".workspace/agents",
        "templates": "",
    },
    "git": {
        "main_branch": "main",
        "remote": "origin",
        "fetch_timeout": 10,
        "sync_before_spawn": True,
    },
    "agents": {
        "store": "sqlite",
        "lock_timeout": 5,
        "kill_grace": 5,
    },
    "ids": {
        "digits": dict(DEFAULT_DIGITS),
    },
}

STORE_BACKENDS = ("sqlite", "json")


def _get_valid_keys(defaults: dict, prefix: str = "") -> set[str]:
    """Recursively collect all valid keys from defaults."""
    keys = set()
    for key, value in defaults.items():
        full_key = f"{prefix}.{key}" if prefix else key
        keys.add(full_key)
        if isinstance(value, dict):
            keys.update(_get_valid_keys(value, full_key))
    return keys


def _validate_config(config: dict, defaults: dict, prefix: str = "") -> list[str]:
    """Validate config against defaults, returning warnings for unknown keys."""
    warnings = []
    for key, value in config.items():
        full_key = f"{prefix}.{key}" if prefix else key
        if key not in defaults:
            warnings.append(f"Unknown config key: '{full_key}'")
        elif isinstance(value, dict) and isinstance(defaults.get(key), dict):
            warnings.extend(_validate_config(value, defaults[key], full_key))
        elif value is not None:
            expected_type = type(defaults.get(key))
            if expected_type is not type(None) and not isinstance(value, expected_type):
                if not (expected_type == int and isinstance(value, bool)):
                    warnings.append(
                        f"Invalid type for '{full_key}': expected {expected_type.__name__}, got {type(value).__name__}"
                    )
    agents = config.get("agents")
    if not prefix and isinstance(agents, dict) and agents.get("store") not in (None, *STORE_BACKENDS):
        warnings.append(
            f"Invalid value for 'agents.store': '{agents['store']}' (expected one of {', '.join(STORE_BACKENDS)})"
        )
    return warnings


def _deep_merge(base: dict, override: dict) -> dict:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> Optional[dict]:
    if not path.exists():
        return None

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring unreadable config {path}: {e}")
        return None

    if data is not None and not isinstance(data, dict):
        logger.warning(f"Ignoring config {path}: top level is not a mapping")
        return None
    return data


PLATFORM_DIRS = [".claude", ".copilot", ".gemini"]


def _get_global_config_path() -> Path:
    """Return global config path, checking multiple platform directories."""
    for platform_dir in PLATFORM_DIRS:
        path = Path.home() / platform_dir / CONFIG_FILENAME
        if path.exists():
            return path
    return Path.home() / ".claude" / CONFIG_FILENAME


def _get_project_config_path(project_dir: Optional[str] = None) -> Path:
    """Return project config path, checking multiple platform directories."""
    base = Path(project_dir) if project_dir else _resolve_project_root()
    for platform_dir in PLATFORM_DIRS:
        path = base / platform_dir / CONFIG_FILENAME
        if path.exists():
            return path
    return base / ".claude" / CONFIG_FILENAME


def _get_task_config_path(task_id: str, config: dict, project_dir: Optional[str] = None) -> Path:
    root = Path(project_dir) if project_dir else _resolve_project_root()
    agents_dir = _resolve_path(root, config.get("paths", {}).get("agents", DEFAULT_CONFIG["paths"]["agents"]))
    return agents_dir / task_id / "config.yaml"


def _resolve_project_root(project_dir: Optional[str] = None) -> Path:
    """Project root: explicit dir, else the main repo (also from inside a worktree), else cwd.

    Uses `git rev-parse --git-common-dir`, which points at the main
    repository's .git even when run from a linked worktree.
    """
    base = Path(project_dir) if project_dir else Path.cwd()
    if project_dir:
        return base.resolve()
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--git-common-dir"],
            capture_output=True, text=True, timeout=5, cwd=str(base)
        )
        if result.returncode != 0:
            return base.resolve()
        common_dir = (base / result.stdout.strip()).resolve()
        return common_dir.parent
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
        return base.resolve()


def _resolve_path(root: Path, value: str) -> Path:
    value = value.replace("{repo_name}", root.name)
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = root / path
    return Path(os.path.normpath(path))


def config_get_effective(
    task_id: Optional[str] = None,
    project_dir: Optional[str] = None
) -> dict[str, Any]:
    config = _deep_merge({}, DEFAULT_CONFIG)
    warnings = []

    global_path = _get_global_config_path()
    global_config = _load_yaml(global_path)
    if global_config:
        warnings.extend(_validate_config(global_config, DEFAULT_CONFIG))
        config = _deep_merge(config, global_config)

    project_path = _get_project_config_path(project_dir)
    project_config = _load_yaml(project_path)
    if project_config:
        warnings.extend(_validate_config(project_config, DEFAULT_CONFIG))
        config = _deep_merge(config, project_config)

    task_config = None
    task_path = None
    if task_id:
        task_path = _get_task_config_path(task_id, config, project_dir)
        task_config = _load_yaml(task_path)
        if task_config:
            warnings.extend(_validate_config(task_config, DEFAULT_CONFIG))
            config = _deep_merge(config, task_config)

    sources = []
    if global_config:
        sources.append(str(global_path))
    if project_config:
        sources.append(str(project_path))
    if task_config:
        sources.append(str(task_path))

    return {
        "config": config,
        "sources": sources,
        "warnings": warnings,
        "has_global": global_config is not None,
        "has_project": project_config is not None,
        "has_task": task_config is not None
    }


def config_get_paths(
    project_dir: Optional[str] = None,
    config: Optional[dict] = None
) -> dict[str, Path]:
    """Absolute paths for every configured location.

    Relative entries are resolved against the project root.
    An empty templates entry resolves to None (built-in templates).
    """
    if config is None:
        config = config_get_effective(project_dir=project_dir)["config"]
    root = _resolve_project_root(project_dir)
    paths = config.get("paths", {})

    resolved: dict[str, Any] = {"project_root": root}
    for key in ("artefacts", "memory", "worktrees", "state", "agents"):
        resolved[key] = _resolve_path(root, paths.get(key) or DEFAULT_CONFIG["paths"][key])
    templates = paths.get("templates") or ""
    resolved["templates"] = _resolve_path(root, templates) if templates else None
    return resolved


def config_get_git(
    task_id: Optional[str] = None,
    project_dir: Optional[str] = None
) -> dict[str, Any]:
    effective = config_get_effective(task_id, project_dir)
    git = _deep_merge(DEFAULT_CONFIG["git"], effective["config"].get("git", {}))
    return {**git, "sources": effective["sources"]}


def config_get_store(
    project_dir: Optional[str] = None
) -> dict[str, Any]:
    effective = config_get_effective(project_dir=project_dir)
    agents = _deep_merge(DEFAULT_CONFIG["agents"], effective["config"].get("agents", {}))

    if agents["store"] not in STORE_BACKENDS:
        return {
            "error": f"Unknown store backend '{agents['store']}'",
            "available_backends": list(STORE_BACKENDS)
        }

    return {
        "backend": agents["store"],
        "lock_timeout": agents["lock_timeout"],
        "state_dir": str(config_get_paths(project_dir, effective["config"])["state"]),
        "sources": effective["sources"]
    }


def config_get_digits(
    project_dir: Optional[str] = None,
    config: Optional[dict] = None
) -> dict[str, int]:
    if config is None:
        config = config_get_effective(project_dir=project_dir)["config"]
    digits = config.get("ids", {}).get("digits", {})
    return {**DEFAULT_DIGITS, **{k: int(v) for k, v in digits.items() if k in DEFAULT_DIGITS}}
