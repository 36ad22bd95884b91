"""
Tests for the JSON document collection.

Run with: pytest tests/test_jsondb.py -v
"""

import json
import threading
import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from agent_workspace_server.jsondb import Collection, DuplicateKeyError, apply_update, matches


@pytest.fixture
def coll(tmp_path):
    return Collection(tmp_path / "state" / "docs.json", unique=["key"])


class TestMatches:
    def test_equality_and_operators(self):
        doc = {"status": "running", "pid": 10}
        assert matches(doc, {"status": "running"})
        assert matches(doc, {"status": {"$in": ["spawned", "running"]}})
        assert matches(doc, {"status": {"$nin": ["failed"]}})
        assert matches(doc, {"pid": {"$gt": 5, "$lte": 10}})
        assert not matches(doc, {"pid": {"$lt": 10}})
        assert matches(doc, {"status": {"$ne": "failed"}})

    def test_missing_fields(self):
        doc = {"status": "running"}
        assert matches(doc, {"pid": None})
        assert matches(doc, {"pid": {"$exists": False}})
        assert not matches(doc, {"pid": {"$gt": 0}})
        assert not matches(doc, {"pid": 1})

    def test_empty_query_matches_everything(self):
        assert matches({"a": 1}, None)
        assert matches({"a": 1}, {})

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            matches({"a": 1}, {"a": {"$regex": "x"}})


class TestApplyUpdate:
    def test_operators(self):
        doc = {"_id": "x", "a": 1, "b": 2, "n": 1, "tags": ["x"]}
        result = apply_update(doc, {
            "$set": {"a": 10},
            "$unset": {"b": ""},
            "$inc": {"n": 2},
            "$push": {"tags": "y"},
        })
        assert result == {"_id": "x", "a": 10, "n": 3, "tags": ["x", "y"]}
        assert doc["a"] == 1

    def test_set_on_insert_only_when_inserting(self):
        update = {"$set": {"a": 1}, "$setOnInsert": {"created": True}}
        assert apply_update({}, update) == {"a": 1}
        assert apply_update({}, update, inserting=True) == {"a": 1, "created": True}

    def test_replacement_keeps_id(self):
        assert apply_update({"_id": "x", "a": 1}, {"b": 2}) == {"b": 2, "_id": "x"}

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            apply_update({}, {"$rename": {"a": "b"}})


class TestCollection:
    def test_missing_file_is_empty(self, coll):
        assert coll.find() == []
        assert coll.count() == 0

    def test_insert_and_find(self, coll):
        doc = coll.insert({"key": "a", "v": 1})
        assert doc["_id"]
        assert "_created_at" in doc
        assert coll.find_one({"key": "a"})["v"] == 1
        assert json.loads(coll.path.read_text())[0]["key"] == "a"

    def test_unique_violation_leaves_file_untouched(self, coll):
        coll.insert({"key": "a"})
        with pytest.raises(DuplicateKeyError) as exc_info:
            coll.insert({"key": "a"})
        assert exc_info.value.field == "key"
        assert coll.count() == 1

    def test_update_and_upsert(self, coll):
        assert coll.update({"key": "a"}, {"$set": {"v": 1}}) == 0
        assert coll.update({"key": "a"}, {"$set": {"v": 1}}, upsert=True) == 1
        assert coll.update({"key": "a"}, {"$inc": {"v": 1}}) == 1
        doc = coll.find_one({"key": "a"})
        assert doc["v"] == 2
        assert "_updated_at" in doc

    def test_update_multi(self, coll):
        coll.insert({"key": "a", "group": 1})
        coll.insert({"key": "b", "group": 1})
        assert coll.update({"group": 1}, {"$set": {"done": True}}) == 1
        assert coll.update({"group": 1}, {"$set": {"done": True}}, multi=True) == 2

    def test_sort_descending_newest_first_on_ties(self, coll):
        coll.insert({"key": "a", "t": "2024-01-01"})
        coll.insert({"key": "b", "t": "2024-01-02"})
        coll.insert({"key": "c", "t": "2024-01-02"})
        coll.insert({"key": "d"})
        assert [d["key"] for d in coll.find(sort=("t", -1))] == ["c", "b", "a", "d"]
        assert [d["key"] for d in coll.find(sort=("t", 1))] == ["a", "b", "c", "d"]

    def test_remove(self, coll):
        coll.insert({"key": "a"})
        coll.insert({"key": "b"})
        assert coll.remove({"key": "a"}) == 1
        assert coll.remove() == 1
        assert coll.count() == 0

    def test_not_an_array(self, coll):
        coll.path.write_text("{}")
        with pytest.raises(ValueError):
            coll.find()

    def test_no_temp_files_left(self, coll):
        coll.insert({"key": "a"})
        leftovers = [p.name for p in coll.path.parent.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_concurrent_increments(self, coll):
        coll.insert({"key": "counter", "n": 0})

        def bump():
            for _ in range(10):
                Collection(coll.path, unique=["key"]).update({"key": "counter"}, {"$inc": {"n": 1}})

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert coll.find_one({"key": "counter"})["n"] == 40
