"""
Memory Tools

Task logs are folded upward into the memory hierarchy:

    Task log (T039.log, temporary)
      -> Epic log (E003.log) and curated epic memory (E003.md)
        -> PRD memory (PRD-001.md)
          -> Project memory (<artefacts>/MEMORY.md)

merge_task_log() appends a finished task's log to its epic's log, tagging
every timestamped line with the task ID, and deletes the task log only after
the append succeeded. A crash between the two steps can merge a log twice;
it can never lose one.
"""

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from filelock import FileLock

from .ids import DEFAULT_DIGITS, entity_type, normalize_id, parse_task_number
from .resolver import ArtefactResolver


logger = logging.getLogger(__name__)

LOG_LEVELS = ("TIP", "INFO", "WARN", "ERROR", "CRITICAL")

_TIMESTAMP_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2}T[\d:.]+Z) ")
_LEVEL_TAG = re.compile(r" \[T\d+\]\s*\[(\w+)\]|\[(\w+)\]")
_HTML_COMMENT = re.compile(r"<!--[\s\S]*?-->")

FALLBACK_EPIC_TEMPLATE = """---
epic: {id}
created: '{now}'
updated: '{now}'
---

# Memory: {id}

## Agent Context

## Escalation

## Changelog
"""

FALLBACK_PRD_TEMPLATE = """---
prd: {id}
created: '{now}'
updated: '{now}'
---

# Memory: {id}

## Cross-Epic Patterns

## Decisions

## Escalation
"""

FALLBACK_PROJECT_TEMPLATE = """---
project: '{project}'
updated: '{now}'
---

# Project Memory

## Architecture Decisions

## Patterns & Conventions

## Lessons Learned
"""


def parse_log_levels(content: str) -> dict[str, int]:
    """Count entries per level in lines like `<ts> [T039] [INFO] message`."""
    counts = {level: 0 for level in LOG_LEVELS}
    for line in content.split("\n"):
        if not line.strip():
            continue
        match = _LEVEL_TAG.search(line)
        if match:
            level = (match.group(1) or match.group(2)).upper()
            if level in counts:
                counts[level] += 1
    return counts


def tag_log_lines(content: str, task_id: str) -> str:
    """Insert `[task_id]` after the ISO timestamp of every line that starts with one."""
    return "\n".join(
        _TIMESTAMP_PREFIX.sub(lambda m: f"{m.group(1)} [{task_id}] ", line, count=1)
        for line in content.split("\n")
    )


# ============================================================================
# Section editing
# ============================================================================

def extract_sections(content: str) -> list[dict[str, str]]:
    """Non-empty `## ` sections as [{name, content}], HTML comments stripped."""
    sections = []
    for part in re.split(r"^(?=## )", content, flags=re.MULTILINE):
        match = re.match(r"^## ([^\n]+)\n([\s\S]*)", part)
        if not match:
            continue
        body = _HTML_COMMENT.sub("", match.group(2)).strip()
        if body:
            sections.append({"name": match.group(1).strip(), "content": body})
    return sections


def find_section(content: str, name: str) -> Optional[dict[str, Any]]:
    pattern = re.compile(rf"({re.escape('## ' + name)}[ \t]*\n)([\s\S]*?)(?=\n## |\Z)")
    match = pattern.search(content)
    if not match:
        return None
    return {
        "header": match.group(1),
        "content": _HTML_COMMENT.sub("", match.group(2)).strip(),
        "span": match.span(),
    }


def edit_section(content: str, name: str, new_content: str, operation: str = "replace") -> dict[str, Any]:
    """Replace, append to or prepend to one section. Returns {success, content} or {warning}."""
    if operation not in ("replace", "append", "prepend"):
        return {"success": False, "error": f"Unknown operation: {operation}"}

    section = find_section(content, name)
    if section is None:
        return {"warning": f'Section "{name}" not found'}

    existing = section["content"]
    if operation == "append" and existing:
        body = f"{existing}\n{new_content}"
    elif operation == "prepend" and existing:
        body = f"{new_content}\n{existing}"
    else:
        body = new_content

    start, end = section["span"]
    rest = content[end:].lstrip("\n")
    tail = f"\n\n{rest}" if rest else "\n"
    return {"success": True, "content": content[:start] + section["header"] + body + tail}


class MemoryManager:
    """Memory documents and logs under one memory directory."""

    def __init__(
        self,
        memory_dir: Union[str, Path],
        resolver: ArtefactResolver,
        artefacts_dir: Optional[Union[str, Path]] = None,
        templates_dir: Optional[Union[str, Path]] = None,
        digits: Optional[dict[str, int]] = None,
        lock_timeout: float = 5,
    ):
        self.memory_dir = Path(memory_dir)
        self.resolver = resolver
        self.artefacts_dir = Path(artefacts_dir) if artefacts_dir else resolver.artefacts_dir
        self.templates_dir = Path(templates_dir) if templates_dir else None
        self.digits = digits or resolver.digits or dict(DEFAULT_DIGITS)
        self.lock_timeout = lock_timeout

    def _normalize(self, id_: str) -> str:
        return normalize_id(id_, self.digits) or id_

    def ensure_memory_dir(self) -> None:
        self.memory_dir.mkdir(parents=True, exist_ok=True)

    def log_file_path(self, id_: str) -> Path:
        return self.memory_dir / f"{self._normalize(id_)}.log"

    def memory_file_path(self, id_: str) -> Path:
        return self.memory_dir / f"{self._normalize(id_)}.md"

    def project_memory_path(self) -> Path:
        return self.artefacts_dir / "MEMORY.md"

    def read_log(self, id_: str) -> Optional[str]:
        path = self.log_file_path(id_)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8").strip()

    def _append(self, path: Path, text: str) -> None:
        self.ensure_memory_dir()
        with FileLock(f"{path}.lock", timeout=self.lock_timeout):
            with open(path, "a", encoding="utf-8") as f:
                f.write(text)

    def find_log_files(self) -> list[dict[str, Any]]:
        self.ensure_memory_dir()
        logs = []
        for path in sorted(self.memory_dir.glob("*.log")):
            id_ = path.stem
            kind = "epic" if id_.startswith("E") else "task" if id_.startswith("T") else "other"
            logs.append({"id": id_, "type": kind, "path": path})
        return logs

    # ========================================================================
    # Hierarchy lookups
    # ========================================================================

    def task_epic(self, task_id: str) -> Optional[dict[str, str]]:
        parent = self.resolver.task_epic(task_id)
        if parent is None:
            return None
        return {"epic_id": self._normalize(parent["epic_id"]), "title": parent["title"]}

    def epic_prd(self, epic_id: str) -> Optional[str]:
        parent = self.resolver.epic_prd(epic_id)
        return self._normalize(parent["prd_id"]) if parent else None

    def hierarchical_memory(self, id_: str) -> dict[str, Optional[dict[str, str]]]:
        """Memory documents that apply to a task or epic: {project, prd, epic}."""
        result: dict[str, Optional[dict[str, str]]] = {"project": None, "prd": None, "epic": None}

        epic_id = None
        if id_.upper().startswith("T"):
            parent = self.task_epic(id_)
            epic_id = parent["epic_id"] if parent else None
        elif id_.upper().startswith("E"):
            epic_id = self._normalize(id_)

        if epic_id:
            path = self.memory_file_path(epic_id)
            if path.exists():
                result["epic"] = {"id": epic_id, "path": str(path), "content": path.read_text(encoding="utf-8")}

            prd_id = self.epic_prd(epic_id)
            if prd_id:
                path = self.memory_file_path(prd_id)
                if path.exists():
                    result["prd"] = {"id": prd_id, "path": str(path), "content": path.read_text(encoding="utf-8")}

        path = self.project_memory_path()
        if path.exists():
            result["project"] = {"id": "PROJECT", "path": str(path), "content": path.read_text(encoding="utf-8")}

        return result

    # ========================================================================
    # Merging
    # ========================================================================

    def merge_task_log(self, task_id: str, log_path: Optional[Union[str, Path]] = None) -> dict[str, Any]:
        """Fold a task log into its epic's log. Returns {merged, epic_id, deleted}.

        log_path takes precedence over the path derived from the normalized
        task ID. A log whose epic cannot be resolved is left untouched.
        """
        task_log = Path(log_path) if log_path else self.log_file_path(task_id)
        if not task_log.exists():
            return {"merged": False, "epic_id": None, "deleted": False}

        content = task_log.read_text(encoding="utf-8").strip()
        if not content:
            task_log.unlink()
            return {"merged": False, "epic_id": None, "deleted": True}

        parent = self.task_epic(task_id)
        task_num = parse_task_number(task_id)
        if parent is None and task_num is not None:
            parent = self.task_epic(f"T{task_num}")
        if parent is None:
            logger.warning(f"Cannot merge {task_log}: no parent epic found for {task_id}")
            return {"merged": False, "epic_id": None, "deleted": False}

        epic_log = self.log_file_path(parent["epic_id"])
        self._append(epic_log, tag_log_lines(content, task_id) + "\n")
        task_log.unlink()

        logger.info(f"Merged {task_log.name} into {epic_log.name}")
        return {"merged": True, "epic_id": parent["epic_id"], "deleted": False}

    def check_pending_memory(self, epic_id: Optional[str] = None) -> dict[str, Any]:
        """Merge outstanding task logs, then report epic logs that still hold content."""
        epic_filter = self._normalize(epic_id) if epic_id else None
        tasks_merged = 0

        for log in self.find_log_files():
            if log["type"] != "task":
                continue
            if epic_filter:
                parent = self.task_epic(log["id"])
                if not parent or parent["epic_id"] != epic_filter:
                    continue
            if self.merge_task_log(log["id"], log["path"])["merged"]:
                tasks_merged += 1

        pending = []
        for log in self.find_log_files():
            if log["type"] != "epic":
                continue
            if epic_filter and log["id"] != epic_filter:
                continue
            if self.read_log(log["id"]):
                pending.append(log["id"])

        return {"pending": bool(pending), "epics": pending, "tasks_merged": tasks_merged}

    def merge_epic_task_logs(self, epic_id: str, keep: bool = False) -> dict[str, Any]:
        """Append every task log of an epic under a `### <TaskID>: <title>` header."""
        epic_id = self._normalize(epic_id)
        result = {"flushed_count": 0, "total_entries": 0, "deleted_empty": 0, "epic_log_file": ""}

        tasks = self.resolver.tasks_for_epic(epic_id)
        if not tasks:
            return result

        epic_log = self.log_file_path(epic_id)
        result["epic_log_file"] = str(epic_log)

        for task in tasks:
            task_id = self._normalize(str(task.data.get("id") or task.id))
            task_log = self.log_file_path(task_id)
            if not task_log.exists():
                continue

            content = task_log.read_text(encoding="utf-8").strip()
            if not content:
                if not keep:
                    task_log.unlink()
                    result["deleted_empty"] += 1
                continue

            result["total_entries"] += len(content.split("\n"))
            header = f"\n### {task_id}: {task.title or 'Untitled'}\n"
            self._append(epic_log, header + content + "\n")
            result["flushed_count"] += 1

            if not keep:
                task_log.unlink()

        return result

    # ========================================================================
    # Log statistics
    # ========================================================================

    def count_task_tips(self, task_id: str) -> int:
        content = self.read_log(task_id)
        return content.count("[TIP]") if content else 0

    def log_stats(self, id_: str) -> dict[str, Any]:
        content = self.read_log(id_)
        if not content:
            return {"exists": False, "lines": 0, "levels": {level: 0 for level in LOG_LEVELS}}
        return {
            "exists": True,
            "lines": len([line for line in content.split("\n") if line.strip()]),
            "levels": parse_log_levels(content),
        }

    def epic_log_content(self, epic_id: str) -> Optional[str]:
        return self.read_log(epic_id)

    def delete_epic_log(self, epic_id: str) -> bool:
        path = self.log_file_path(epic_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    # ========================================================================
    # Memory documents
    # ========================================================================

    def _load_template(self, name: str) -> Optional[str]:
        if not self.templates_dir:
            return None
        path = self.templates_dir / name
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def create_epic_memory(self, epic_id: str) -> Path:
        epic_id = self._normalize(epic_id)
        now = datetime.now().isoformat()
        template = self._load_template("memory-epic.md")
        if template:
            content = (
                template.replace("E0000", epic_id)
                .replace("created: ''", f"created: '{now}'")
                .replace("updated: ''", f"updated: '{now}'")
            )
        else:
            content = FALLBACK_EPIC_TEMPLATE.format(id=epic_id, now=now)

        self.ensure_memory_dir()
        path = self.memory_file_path(epic_id)
        path.write_text(content, encoding="utf-8")
        return path

    def create_prd_memory(self, prd_id: str) -> Path:
        prd_id = self._normalize(prd_id)
        now = datetime.now().isoformat()
        template = self._load_template("memory-prd.md")
        if template:
            content = (
                template.replace("PRD-000", prd_id)
                .replace("created: ''", f"created: '{now}'")
                .replace("updated: ''", f"updated: '{now}'")
            )
        else:
            content = FALLBACK_PRD_TEMPLATE.format(id=prd_id, now=now)

        self.ensure_memory_dir()
        path = self.memory_file_path(prd_id)
        path.write_text(content, encoding="utf-8")
        return path

    def create_project_memory(self, project_name: str = "") -> Path:
        now = datetime.now().isoformat()
        template = self._load_template("memory-dist.md")
        if template:
            content = (
                template.replace("project: ''", f"project: '{project_name}'")
                .replace("updated: ''", f"updated: '{now}'")
            )
        else:
            content = FALLBACK_PROJECT_TEMPLATE.format(project=project_name, now=now)

        path = self.project_memory_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def document_path(self, id_: str) -> Path:
        """Memory document of an epic, a PRD or (id "PROJECT") the project."""
        if id_.upper() == "PROJECT":
            return self.project_memory_path()
        return self.memory_file_path(id_)

    def create_memory(self, id_: str, project_name: str = "", overwrite: bool = False) -> dict[str, Any]:
        """Create the memory document of an epic, a PRD or the project from its template.

        An existing document is kept unless overwrite is set.
        """
        kind = "project" if id_.upper() == "PROJECT" else entity_type(id_)
        if kind not in ("project", "prd", "epic"):
            return {"success": False, "error": f"No memory document for '{id_}'"}

        path = self.document_path(id_)
        if path.exists() and not overwrite:
            return {"success": False, "error": f"Memory file already exists: {path}", "path": str(path)}

        if kind == "project":
            path = self.create_project_memory(project_name)
        elif kind == "prd":
            path = self.create_prd_memory(id_)
        else:
            path = self.create_epic_memory(id_)
        logger.info(f"Created {kind} memory {path}")
        return {"success": True, "scope": kind, "path": str(path)}

    def update_memory_section(
        self,
        id_: str,
        section: str,
        content: str,
        operation: str = "replace",
    ) -> dict[str, Any]:
        path = self.document_path(id_)
        if not path.exists():
            return {"success": False, "error": f"Memory file not found: {path}"}

        result = edit_section(path.read_text(encoding="utf-8"), section, content, operation)
        if not result.get("success"):
            return result

        updated = re.sub(
            r"^updated: .*$",
            f"updated: '{datetime.now().isoformat()}'",
            result["content"],
            count=1,
            flags=re.MULTILINE,
        )
        path.write_text(updated, encoding="utf-8")
        return {"success": True, "path": str(path)}
