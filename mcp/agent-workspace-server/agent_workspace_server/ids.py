"""
Identifier helpers for tasks, epics, stories and PRDs.

Artefact IDs drift in format over time (T1, T001, T00039b, PRD-1, PRD-001).
Everything here is pure string handling: no filesystem, no config.

Two forms matter:
  - canonical ID: prefixed, zero-padded (T039, E005a, PRD-001)
  - lookup key:   number without padding plus optional suffix ("39", "5a")
"""

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union


DEFAULT_DIGITS = {
    "prd": 3,
    "epic": 3,
    "task": 3,
    "story": 3,
}

_PREFIX_KIND = {
    "PRD-": "prd",
    "E": "epic",
    "T": "task",
    "S": "story",
}

_NORMALIZE_PATTERNS = [
    (re.compile(r"^PRD-?(\d+)$", re.IGNORECASE), "PRD-"),
    (re.compile(r"^E(\d+)$", re.IGNORECASE), "E"),
    (re.compile(r"^T(\d+)$", re.IGNORECASE), "T"),
    (re.compile(r"^S(\d+)$", re.IGNORECASE), "S"),
]


class ArtefactKind(Enum):
    TASK = "task"
    EPIC = "epic"
    PRD = "prd"

    @property
    def prefix(self) -> str:
        return {"task": "T", "epic": "E", "prd": "PRD-"}[self.value]


# Raw-ID patterns accepted by the resolver: optional prefix, optional
# zero padding, optional trailing letter (not for PRDs).
_RAW_PATTERNS = {
    ArtefactKind.TASK: re.compile(r"^T?0*(\d+)([a-z])?$", re.IGNORECASE),
    ArtefactKind.EPIC: re.compile(r"^E?0*(\d+)([a-z])?$", re.IGNORECASE),
    ArtefactKind.PRD: re.compile(r"^(?:PRD-?)?0*(\d+)$", re.IGNORECASE),
}


@dataclass(frozen=True)
class ArtefactId:
    """A parsed artefact identifier.

    Equality is structural: kind, number and suffix must all match, so
    ``ArtefactId.parse(TASK, "T00039b") == ArtefactId.parse(TASK, "39B")``.
    """

    kind: ArtefactKind
    number: int
    suffix: Optional[str] = None

    @property
    def lookup_key(self) -> str:
        return f"{self.number}{self.suffix or ''}"

    def canonical(self, digits: Optional[dict[str, int]] = None) -> str:
        width = (digits or DEFAULT_DIGITS).get(self.kind.value, 3)
        return format_id(self.kind.prefix, self.number, width) + (self.suffix or "")

    @classmethod
    def parse(cls, kind: ArtefactKind, raw: Union[str, int, None]) -> Optional["ArtefactId"]:
        """Parse a raw ID in any padding/case form. Returns None without digits."""
        if raw is None:
            return None
        if isinstance(raw, int):
            return cls(kind, raw) if raw >= 0 else None
        match = _RAW_PATTERNS[kind].match(str(raw).strip())
        if not match:
            return None
        suffix = None
        if kind is not ArtefactKind.PRD and match.group(2):
            suffix = match.group(2).lower()
        return cls(kind, int(match.group(1)), suffix)

    def __str__(self) -> str:
        return self.canonical()


def format_id(prefix: str, num: int, digits: int = 3) -> str:
    return f"{prefix}{str(num).zfill(digits)}"


def normalize_id(id_: Optional[str], digits: Optional[dict[str, int]] = None) -> Optional[str]:
    """Normalize an entity ID to canonical padding.

    Accepts any number of digits; anything that is not a plain
    PRD/epic/task/story ID (suffixed IDs included) is returned unchanged.
    """
    if not id_:
        return id_
    widths = digits or DEFAULT_DIGITS
    for pattern, prefix in _NORMALIZE_PATTERNS:
        match = pattern.match(id_)
        if match:
            return format_id(prefix, int(match.group(1)), widths.get(_PREFIX_KIND[prefix], 3))
    return id_


def entity_type(id_: Optional[str]) -> Optional[str]:
    if not id_:
        return None
    if re.match(r"^PRD-?\d+$", id_, re.IGNORECASE):
        return "prd"
    if re.match(r"^E\d+[a-z]?$", id_, re.IGNORECASE):
        return "epic"
    if re.match(r"^T\d+[a-z]?$", id_, re.IGNORECASE):
        return "task"
    if re.match(r"^S\d+$", id_, re.IGNORECASE):
        return "story"
    return None


def extract_numeric_key(id_: Optional[str]) -> Optional[str]:
    """E001 -> "1", E0001 -> "1", E14 -> "14", E005a -> "5a"."""
    if not id_:
        return None
    match = re.match(r"^[A-Z]+-?0*(\d+)([a-z])?", id_, re.IGNORECASE)
    if not match:
        return None
    return match.group(1) + (match.group(2).lower() if match.group(2) else "")


def extract_id_key(filename: str, prefix: str) -> Optional[str]:
    """Lookup key from an artefact filename, e.g. ("T0039b-fix.md", "T") -> "39b"."""
    match = re.match(rf"^{re.escape(prefix)}0*(\d+)([a-z])?", filename, re.IGNORECASE)
    if not match:
        return None
    return match.group(1) + (match.group(2).lower() if match.group(2) else "")


def extract_prd_id(parent: Optional[str]) -> Optional[str]:
    if not parent:
        return None
    match = re.search(r"PRD-\d+", parent)
    return match.group(0) if match else None


def extract_epic_id(parent: Optional[str]) -> Optional[str]:
    if not parent:
        return None
    match = re.search(r"E\d+", parent)
    return match.group(0) if match else None


def parent_epic_key(parent: Optional[str]) -> Optional[str]:
    """Epic lookup key from a parent field ("PRD-001 / E003" or bare "E3a")."""
    if not parent:
        return None
    match = re.search(r"E0*(\d+)([a-z])?", str(parent), re.IGNORECASE)
    if not match:
        return None
    return match.group(1) + (match.group(2).lower() if match.group(2) else "")


def parent_contains_epic(parent: Optional[str], epic_id: Optional[str]) -> bool:
    if not parent or not epic_id:
        return False
    key = parent_epic_key(parent)
    return key is not None and key == extract_numeric_key(epic_id)


def prd_id_from_dir(prd_dir: Union[str, Path]) -> str:
    name = Path(prd_dir).name
    match = re.match(r"^(PRD-\d+)", name, re.IGNORECASE)
    return match.group(1) if match else name


def prd_number_from_dir(prd_dir: Union[str, Path]) -> Optional[int]:
    match = re.match(r"^PRD-0*(\d+)", Path(prd_dir).name, re.IGNORECASE)
    return int(match.group(1)) if match else None


def parse_task_number(task_id: Optional[str]) -> Optional[int]:
    if not task_id:
        return None
    match = re.match(r"^T0*(\d+)$", task_id, re.IGNORECASE)
    return int(match.group(1)) if match else None
