"""
Artefact Resolver

Builds lookup indices for tasks, epics, PRDs and memory documents from the
artefacts directory layout:

    <artefacts>/prds/PRD-001-some-name/prd.md
    <artefacts>/prds/PRD-001-some-name/epics/E003-auth.md
    <artefacts>/prds/PRD-001-some-name/tasks/T00039b-login-form.md

Indices are keyed by lookup key (number without padding plus optional letter
suffix) so that T39, T039 and T00039 all resolve to the same record.

An ArtefactResolver is an explicit context object: build one per controller
run and pass it around. Indices are built lazily on first query and are never
refreshed automatically. Callers that add, rename or remove artefact files
must call invalidate() themselves.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from . import markdown_meta
from .ids import (
    ArtefactId,
    ArtefactKind,
    DEFAULT_DIGITS,
    extract_epic_id,
    extract_id_key,
    extract_numeric_key,
    normalize_id,
    parent_epic_key,
    prd_id_from_dir,
    prd_number_from_dir,
)


logger = logging.getLogger(__name__)

TERMINAL_ARTEFACT_STATUS = "Done"

_TASK_FILE = re.compile(r"^T\d+[a-z]?.*\.md$", re.IGNORECASE)
_EPIC_FILE = re.compile(r"^E\d+[a-z]?.*\.md$", re.IGNORECASE)
_EPIC_MEMORY_FILE = re.compile(r"^E0*(\d+)([a-z])?\.md$", re.IGNORECASE)
_PRD_MEMORY_FILE = re.compile(r"^PRD-0*(\d+)\.md$", re.IGNORECASE)


@dataclass
class ArtefactRecord:
    kind: ArtefactKind
    key: str
    id: str
    file: Path
    prd_dir: Path
    prd_id: Optional[str] = None
    epic_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    modified_at: Optional[str] = None

    @property
    def status(self) -> Optional[str]:
        return self.data.get("status")

    @property
    def title(self) -> Optional[str]:
        return self.data.get("title")

    @property
    def parent(self) -> Optional[str]:
        parent = self.data.get("parent")
        return str(parent) if parent is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "key": self.key,
            "id": self.id,
            "file": str(self.file),
            "prd_dir": str(self.prd_dir),
            "prd_id": self.prd_id,
            "epic_id": self.epic_id,
            "status": self.status,
            "title": self.title,
            "parent": self.parent,
            "created_at": self.created_at,
            "modified_at": self.modified_at,
        }


@dataclass
class DuplicateId:
    kind: ArtefactKind
    key: str
    existing: Path
    new: Path

    def message(self) -> str:
        return f"{self.kind.prefix}{self.key}: {self.existing} vs {self.new}"

    def to_dict(self) -> dict[str, str]:
        return {
            "kind": self.kind.value,
            "key": self.key,
            "existing": str(self.existing),
            "new": str(self.new),
        }


def _file_timestamps(path: Path) -> tuple[Optional[str], Optional[str]]:
    try:
        stat = path.stat()
    except OSError:
        return None, None
    return (
        datetime.fromtimestamp(stat.st_ctime).isoformat(),
        datetime.fromtimestamp(stat.st_mtime).isoformat(),
    )


def _load_frontmatter(path: Path) -> dict[str, Any]:
    try:
        return markdown_meta.load(path)["data"]
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        logger.warning(f"Could not read frontmatter from {path}: {e}")
        return {}


class ArtefactResolver:
    """Resolves flexible artefact IDs to indexed records."""

    def __init__(
        self,
        artefacts_dir: Union[str, Path],
        memory_dir: Optional[Union[str, Path]] = None,
        digits: Optional[dict[str, int]] = None,
    ):
        self.artefacts_dir = Path(artefacts_dir)
        self.memory_dir = Path(memory_dir) if memory_dir else None
        self.digits = digits or dict(DEFAULT_DIGITS)
        self._tasks: Optional[dict[str, ArtefactRecord]] = None
        self._epics: Optional[dict[str, ArtefactRecord]] = None
        self._prds: Optional[dict[int, ArtefactRecord]] = None
        self._memory: Optional[dict[str, dict[str, Any]]] = None
        self._duplicates: dict[ArtefactKind, list[DuplicateId]] = {}

    @classmethod
    def from_config(cls, project_dir: Optional[str] = None) -> "ArtefactResolver":
        from .config_tools import config_get_effective, config_get_paths, config_get_digits

        config = config_get_effective(project_dir=project_dir)["config"]
        paths = config_get_paths(project_dir, config)
        return cls(paths["artefacts"], paths["memory"], config_get_digits(config=config))

    @property
    def prds_dir(self) -> Path:
        return self.artefacts_dir / "prds"

    def invalidate(self) -> None:
        """Drop every cached index. The next query rescans the filesystem."""
        self._tasks = None
        self._epics = None
        self._prds = None
        self._memory = None
        self._duplicates = {}

    def prd_dirs(self) -> list[Path]:
        if not self.prds_dir.is_dir():
            return []
        return sorted(
            d for d in self.prds_dir.iterdir()
            if d.is_dir() and d.name.startswith("PRD-")
        )

    # ========================================================================
    # Index building
    # ========================================================================

    def _build_child_index(
        self,
        kind: ArtefactKind,
        subdir: str,
        pattern: re.Pattern,
    ) -> dict[str, ArtefactRecord]:
        index: dict[str, ArtefactRecord] = {}
        duplicates: list[DuplicateId] = []

        for prd_dir in self.prd_dirs():
            child_dir = prd_dir / subdir
            if not child_dir.is_dir():
                continue

            for file_path in sorted(child_dir.iterdir()):
                if not file_path.is_file() or not pattern.match(file_path.name):
                    continue
                key = extract_id_key(file_path.name, kind.prefix)
                if key is None:
                    continue

                id_match = re.match(rf"^({kind.prefix}\d+[a-z]?)", file_path.name, re.IGNORECASE)
                record_id = id_match.group(1) if id_match else f"{kind.prefix}{key}"
                data = _load_frontmatter(file_path)

                existing = index.get(key)
                if existing is not None:
                    # Only a pair of finished artefacts is a harmless collision
                    both_done = (
                        data.get("status") == TERMINAL_ARTEFACT_STATUS
                        and existing.status == TERMINAL_ARTEFACT_STATUS
                    )
                    if not both_done:
                        duplicates.append(DuplicateId(kind, key, existing.file, file_path))

                created_at, modified_at = _file_timestamps(file_path)
                parent = data.get("parent")
                index[key] = ArtefactRecord(
                    kind=kind,
                    key=key,
                    id=record_id,
                    file=file_path,
                    prd_dir=prd_dir,
                    prd_id=prd_id_from_dir(prd_dir),
                    epic_id=extract_epic_id(str(parent)) if kind is ArtefactKind.TASK and parent else None,
                    data=data,
                    created_at=created_at,
                    modified_at=modified_at,
                )

        self._report_duplicates(kind, duplicates)
        return index

    def _report_duplicates(self, kind: ArtefactKind, duplicates: list[DuplicateId]) -> None:
        self._duplicates[kind] = duplicates
        if duplicates:
            logger.warning(f"Duplicate {kind.value} IDs found:")
            for dup in duplicates:
                logger.warning(f"  {dup.message()}")

    def _task_index(self) -> dict[str, ArtefactRecord]:
        if self._tasks is None:
            self._tasks = self._build_child_index(ArtefactKind.TASK, "tasks", _TASK_FILE)
        return self._tasks

    def _epic_index(self) -> dict[str, ArtefactRecord]:
        if self._epics is None:
            self._epics = self._build_child_index(ArtefactKind.EPIC, "epics", _EPIC_FILE)
        return self._epics

    def _prd_index(self) -> dict[int, ArtefactRecord]:
        if self._prds is not None:
            return self._prds

        index: dict[int, ArtefactRecord] = {}
        duplicates: list[DuplicateId] = []
        for prd_dir in self.prd_dirs():
            num = prd_number_from_dir(prd_dir)
            if num is None:
                continue
            prd_file = prd_dir / "prd.md"
            data = _load_frontmatter(prd_file) if prd_file.exists() else {}

            if num in index:
                duplicates.append(DuplicateId(ArtefactKind.PRD, str(num), index[num].prd_dir, prd_dir))

            created_at, modified_at = _file_timestamps(prd_file)
            index[num] = ArtefactRecord(
                kind=ArtefactKind.PRD,
                key=str(num),
                id=prd_id_from_dir(prd_dir),
                file=prd_file,
                prd_dir=prd_dir,
                prd_id=prd_id_from_dir(prd_dir),
                data=data,
                created_at=created_at,
                modified_at=modified_at,
            )

        self._report_duplicates(ArtefactKind.PRD, duplicates)
        self._prds = index
        return index

    def _memory_index(self) -> dict[str, dict[str, Any]]:
        if self._memory is not None:
            return self._memory

        index: dict[str, dict[str, Any]] = {}
        if self.memory_dir and self.memory_dir.is_dir():
            for file_path in sorted(self.memory_dir.glob("*.md")):
                epic_match = _EPIC_MEMORY_FILE.match(file_path.name)
                if epic_match:
                    key = "E" + epic_match.group(1) + (epic_match.group(2) or "").lower()
                    index[key] = {"key": key, "type": "epic", "file": file_path}
                    continue
                prd_match = _PRD_MEMORY_FILE.match(file_path.name)
                if prd_match:
                    key = "PRD-" + prd_match.group(1)
                    index[key] = {"key": key, "type": "prd", "file": file_path}
        self._memory = index
        return index

    @property
    def duplicates(self) -> list[DuplicateId]:
        """Duplicate-ID warnings from every index (builds them if needed)."""
        self._task_index()
        self._epic_index()
        self._prd_index()
        return [dup for kind in ArtefactKind for dup in self._duplicates.get(kind, [])]

    # ========================================================================
    # Lookups
    # ========================================================================

    def resolve(self, kind: ArtefactKind, raw_id: Union[str, int, None]) -> Optional[ArtefactRecord]:
        parsed = ArtefactId.parse(kind, raw_id)
        if parsed is None:
            return None
        if kind is ArtefactKind.PRD:
            return self._prd_index().get(parsed.number)
        if kind is ArtefactKind.EPIC:
            return self._epic_index().get(parsed.lookup_key)
        return self._task_index().get(parsed.lookup_key)

    def get_task(self, task_id: Union[str, int, None]) -> Optional[ArtefactRecord]:
        return self.resolve(ArtefactKind.TASK, task_id)

    def get_epic(self, epic_id: Union[str, int, None]) -> Optional[ArtefactRecord]:
        return self.resolve(ArtefactKind.EPIC, epic_id)

    def get_prd(self, prd_id: Union[str, int, None]) -> Optional[ArtefactRecord]:
        return self.resolve(ArtefactKind.PRD, prd_id)

    def task_epic(self, task_id: Union[str, int, None]) -> Optional[dict[str, Any]]:
        """Parent epic of a task, from the task's `parent` frontmatter field.

        Returns {epic_id, epic_key, title} where title is the task's title.
        The epic need not exist on disk; epic_id then falls back to E<key>.
        """
        task = self.get_task(task_id)
        if task is None:
            return None
        epic_key = parent_epic_key(task.parent)
        if epic_key is None:
            return None
        epic = self.get_epic(epic_key)
        return {
            "epic_id": epic.id if epic else f"E{epic_key}",
            "epic_key": epic_key,
            "title": task.title or f"Task {task_id}",
        }

    def epic_prd(self, epic_id: Union[str, int, None]) -> Optional[dict[str, Any]]:
        """Parent PRD of an epic, derived from the epic's containing directory."""
        epic = self.get_epic(epic_id)
        if epic is None:
            return None
        prd_num = prd_number_from_dir(epic.prd_dir)
        if prd_num is None:
            return None
        prd = self.get_prd(prd_num)
        return {
            "prd_id": prd.id if prd else f"PRD-{prd_num}",
            "prd_num": prd_num,
        }

    def prd_branching(self, prd_id: Union[str, int, None]) -> str:
        prd = self.get_prd(prd_id)
        if prd is None:
            return "flat"
        return str(prd.data.get("branching") or "flat")

    def memory_file(self, id_: str) -> Optional[dict[str, Any]]:
        epic_match = re.match(r"^E0*(\d+)([a-z])?$", str(id_), re.IGNORECASE)
        if epic_match:
            key = "E" + epic_match.group(1) + (epic_match.group(2) or "").lower()
            return self._memory_index().get(key)
        prd_match = re.match(r"^PRD-?0*(\d+)$", str(id_), re.IGNORECASE)
        if prd_match:
            return self._memory_index().get("PRD-" + prd_match.group(1))
        return None

    # ========================================================================
    # Queries
    # ========================================================================

    def all_tasks(
        self,
        prd_dir: Optional[Union[str, Path]] = None,
        epic_id: Optional[str] = None,
        status: Optional[Union[str, list[str]]] = None,
    ) -> list[ArtefactRecord]:
        tasks = list(self._task_index().values())

        if prd_dir:
            tasks = [t for t in tasks if t.prd_dir == Path(prd_dir)]

        if epic_id:
            epic_key = extract_numeric_key(epic_id if str(epic_id)[:1].isalpha() else f"E{epic_id}")
            tasks = [t for t in tasks if parent_epic_key(t.parent) == epic_key]

        if status:
            statuses = [status] if isinstance(status, str) else list(status)
            tasks = [t for t in tasks if t.status in statuses]

        return tasks

    def all_epics(
        self,
        prd_dir: Optional[Union[str, Path]] = None,
        status: Optional[Union[str, list[str]]] = None,
    ) -> list[ArtefactRecord]:
        epics = list(self._epic_index().values())
        if prd_dir:
            epics = [e for e in epics if e.prd_dir == Path(prd_dir)]
        if status:
            statuses = [status] if isinstance(status, str) else list(status)
            epics = [e for e in epics if e.status in statuses]
        return epics

    def all_prds(self) -> list[ArtefactRecord]:
        return [self._prd_index()[num] for num in sorted(self._prd_index())]

    def tasks_for_epic(self, epic_id: str) -> list[ArtefactRecord]:
        return self.all_tasks(epic_id=epic_id)

    def canonical_id(self, record: ArtefactRecord) -> str:
        """Canonical form of a record's ID using the configured padding."""
        parsed = ArtefactId.parse(record.kind, record.id)
        if parsed is None:
            return normalize_id(record.id, self.digits) or record.id
        return parsed.canonical(self.digits)
