"""
JSON Document Collection

A small document collection stored as one JSON array per file:

    coll = Collection(state_dir / "agents.json", unique=["task_id"])
    coll.update({"task_id": "T001"}, {"$set": {"status": "running"}}, upsert=True)
    coll.find({"status": {"$in": ["spawned", "running"]}})

Every operation reads, modifies and writes the file while holding
<file>.lock, so a read-modify-write never interleaves with another
process. Writes go to a temp file in the same directory and are moved into
place with os.replace, so readers never see a partial file.

Supported update operators: $set, $unset, $inc, $push, $setOnInsert.
Supported query operators: $ne, $in, $nin, $gt, $gte, $lt, $lte, $exists.
"""

import json
import logging
import os
import secrets
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Union

from filelock import FileLock


logger = logging.getLogger(__name__)

_MISSING = object()


class DuplicateKeyError(Exception):
    """A write would give two documents the same value for a unique field."""

    def __init__(self, field: str, value: Any):
        super().__init__(f"Duplicate value for unique field '{field}': {value!r}")
        self.field = field
        self.value = value


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(value: Any, arg: Any) -> bool:
        if value is _MISSING or value is None:
            return False
        try:
            return op(value, arg)
        except TypeError:
            return False
    return check


_QUERY_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "$ne": lambda value, arg: (None if value is _MISSING else value) != arg,
    "$in": lambda value, arg: value is not _MISSING and value in arg,
    "$nin": lambda value, arg: value is _MISSING or value not in arg,
    "$gt": _compare(lambda a, b: a > b),
    "$gte": _compare(lambda a, b: a >= b),
    "$lt": _compare(lambda a, b: a < b),
    "$lte": _compare(lambda a, b: a <= b),
    "$exists": lambda value, arg: (value is not _MISSING) == bool(arg),
}

_UPDATE_OPERATORS = ("$set", "$unset", "$inc", "$push", "$setOnInsert")


def _is_operator_dict(value: Any) -> bool:
    return isinstance(value, dict) and bool(value) and all(str(k).startswith("$") for k in value)


def matches(doc: dict[str, Any], query: Optional[dict[str, Any]]) -> bool:
    for key, condition in (query or {}).items():
        value = doc.get(key, _MISSING)
        if _is_operator_dict(condition):
            for op, arg in condition.items():
                if op not in _QUERY_OPERATORS:
                    raise ValueError(f"Unsupported query operator: {op}")
                if not _QUERY_OPERATORS[op](value, arg):
                    return False
        elif condition is None:
            if value not in (_MISSING, None):
                return False
        elif value is _MISSING or value != condition:
            return False
    return True


def apply_update(doc: dict[str, Any], update: dict[str, Any], inserting: bool = False) -> dict[str, Any]:
    """Return a copy of doc with the update applied.

    An update without operators replaces every field except _id.
    """
    if not _is_operator_dict(update):
        replaced = {k: v for k, v in update.items()}
        if "_id" in doc:
            replaced["_id"] = doc["_id"]
        return replaced

    unknown = set(update) - set(_UPDATE_OPERATORS)
    if unknown:
        raise ValueError(f"Unsupported update operator(s): {', '.join(sorted(unknown))}")

    result = dict(doc)
    if inserting:
        result.update(update.get("$setOnInsert", {}))
    result.update(update.get("$set", {}))
    for key in update.get("$unset", {}):
        result.pop(key, None)
    for key, amount in update.get("$inc", {}).items():
        result[key] = (result.get(key) or 0) + amount
    for key, item in update.get("$push", {}).items():
        current = result.get(key)
        result[key] = (list(current) if isinstance(current, list) else []) + [item]
    return result


class Collection:
    """A JSON-file document collection with unique indexes and a file lock."""

    def __init__(
        self,
        path: Union[str, Path],
        unique: Optional[list[str]] = None,
        lock_timeout: float = 5,
    ):
        self.path = Path(path)
        self.unique = list(unique or [])
        self.lock_timeout = lock_timeout
        self.lock_path = f"{self.path}.lock"
        self.path.parent.mkdir(parents=True, exist_ok=True)

    # ========================================================================
    # File access (callers hold the lock)
    # ========================================================================

    def _read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8") as f:
            content = f.read()
        if not content.strip():
            return []
        docs = json.loads(content)
        if not isinstance(docs, list):
            raise ValueError(f"Collection file {self.path} does not hold a JSON array")
        return docs

    def _write(self, docs: list[dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(docs, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def _check_unique(self, docs: list[dict[str, Any]]) -> None:
        for field in self.unique:
            seen = set()
            for doc in docs:
                value = doc.get(field)
                if value is None:
                    continue
                key = json.dumps(value, sort_keys=True)
                if key in seen:
                    raise DuplicateKeyError(field, value)
                seen.add(key)

    # ========================================================================
    # Operations
    # ========================================================================

    def find(
        self,
        query: Optional[dict[str, Any]] = None,
        sort: Optional[tuple[str, int]] = None,
    ) -> list[dict[str, Any]]:
        """Matching documents; sort=(field, -1) for descending, newest inserts first on ties."""
        with FileLock(self.lock_path, timeout=self.lock_timeout):
            docs = [doc for doc in self._read() if matches(doc, query)]
        if sort:
            field, direction = sort
            if direction < 0:
                docs.reverse()
            present = [d for d in docs if d.get(field) is not None]
            absent = [d for d in docs if d.get(field) is None]
            docs = sorted(present, key=lambda d: d[field], reverse=direction < 0) + absent
        return docs

    def find_one(self, query: Optional[dict[str, Any]] = None) -> Optional[dict[str, Any]]:
        for doc in self.find(query):
            return doc
        return None

    def count(self, query: Optional[dict[str, Any]] = None) -> int:
        return len(self.find(query))

    def insert(self, doc: dict[str, Any]) -> dict[str, Any]:
        with FileLock(self.lock_path, timeout=self.lock_timeout):
            docs = self._read()
            new_doc = {"_id": secrets.token_hex(8), **doc, "_created_at": datetime.now().isoformat()}
            docs.append(new_doc)
            self._check_unique(docs)
            self._write(docs)
        return new_doc

    def update(
        self,
        query: dict[str, Any],
        update: dict[str, Any],
        upsert: bool = False,
        multi: bool = False,
    ) -> int:
        """Apply update to matching documents. Returns the number modified or inserted."""
        with FileLock(self.lock_path, timeout=self.lock_timeout):
            docs = self._read()
            modified = 0
            for index, doc in enumerate(docs):
                if not matches(doc, query):
                    continue
                docs[index] = apply_update(doc, update)
                docs[index]["_updated_at"] = datetime.now().isoformat()
                modified += 1
                if not multi:
                    break

            if modified == 0 and upsert:
                seed = {k: v for k, v in query.items() if not _is_operator_dict(v)}
                new_doc = apply_update(seed, update, inserting=True)
                new_doc.setdefault("_id", secrets.token_hex(8))
                new_doc["_created_at"] = datetime.now().isoformat()
                docs.append(new_doc)
                modified = 1

            if modified:
                self._check_unique(docs)
                self._write(docs)
        return modified

    def remove(self, query: Optional[dict[str, Any]] = None) -> int:
        with FileLock(self.lock_path, timeout=self.lock_timeout):
            docs = self._read()
            kept = [doc for doc in docs if not matches(doc, query)]
            removed = len(docs) - len(kept)
            if removed:
                self._write(kept)
        return removed
