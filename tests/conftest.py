"""
Pytest fixtures and in-memory stand-ins for Firestore and MongoDB.

The fakes implement only the calls the migration tools make:

  Firestore: collection(path).stream() / .limit(n) / .document(id),
             document(path).collection(name), set(merge=True), delete()
  MongoDB:   bulk_write(UpdateOne...), create_index, find, update_one,
             delete_one, count_documents, client.admin.command("ping")
"""

from __future__ import annotations

import copy
import itertools
from typing import Any, Dict, List, Optional

import pytest
from pymongo.errors import AutoReconnect, BulkWriteError, OperationFailure

from firestore_to_mongo.config import RetrySettings
from firestore_to_mongo.retry import RetryPolicy


# ---------- Firestore ----------


class FakeSnapshot:
    def __init__(self, reference: "FakeDocumentRef", data: Optional[dict]):
        self.reference = reference
        self.id = reference.id
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Optional[dict]:
        return copy.deepcopy(self._data)


class FakeDocumentRef:
    def __init__(self, db: "FakeFirestore", path: str):
        self._db = db
        self.path = path
        self.id = path.rsplit("/", 1)[-1]

    @property
    def parent(self) -> "FakeCollectionRef":
        return FakeCollectionRef(self._db, self.path.rsplit("/", 1)[0])

    def collection(self, name: str) -> "FakeCollectionRef":
        return FakeCollectionRef(self._db, f"{self.path}/{name}")

    def get(self) -> FakeSnapshot:
        col, doc_id = self.path.rsplit("/", 1)
        return FakeSnapshot(self, self._db.data.get(col, {}).get(doc_id))

    def set(self, data: dict, merge: bool = False) -> None:
        self._db.raise_if_failing(self.path, "write")
        col, doc_id = self.path.rsplit("/", 1)
        docs = self._db.data.setdefault(col, {})
        if merge and doc_id in docs:
            docs[doc_id].update(copy.deepcopy(data))
        else:
            docs[doc_id] = copy.deepcopy(data)

    def delete(self) -> None:
        self._db.raise_if_failing(self.path, "delete")
        col, doc_id = self.path.rsplit("/", 1)
        self._db.data.get(col, {}).pop(doc_id, None)


class FakeCollectionRef:
    def __init__(self, db: "FakeFirestore", path: str, limit: Optional[int] = None):
        self._db = db
        self.path = path
        self._limit = limit

    def document(self, doc_id: str) -> FakeDocumentRef:
        return FakeDocumentRef(self._db, f"{self.path}/{doc_id}")

    def limit(self, n: int) -> "FakeCollectionRef":
        return FakeCollectionRef(self._db, self.path, n)

    def stream(self):
        self._db.stream_calls.append(self.path)
        self._db.raise_if_failing(self.path, "read")
        docs = list(self._db.data.get(self.path, {}).items())
        if self._limit is not None:
            docs = docs[: self._limit]
        return iter([FakeSnapshot(self.document(doc_id), data) for doc_id, data in docs])


class FakeFirestore:
    """``data`` maps collection paths ("users", "users/u1/bookmarks") to {doc id: fields}."""

    def __init__(self, data: Optional[Dict[str, Dict[str, dict]]] = None, project: str = "test-project"):
        self.data = copy.deepcopy(data or {})
        self.project = project
        self.failures: Dict[tuple, List[Exception]] = {}
        self.stream_calls: List[str] = []
        self.closed = False

    def fail(self, path: str, *errors: Exception, op: str = "read") -> None:
        """Raise ``errors`` (one per call, in order) on the next operations against ``path``."""
        self.failures.setdefault((path, op), []).extend(errors)

    def raise_if_failing(self, path: str, op: str) -> None:
        pending = self.failures.get((path, op))
        if pending:
            raise pending.pop(0)

    def collection(self, path: str) -> FakeCollectionRef:
        return FakeCollectionRef(self, path)

    def document(self, path: str) -> FakeDocumentRef:
        return FakeDocumentRef(self, path)

    def close(self) -> None:
        self.closed = True


# ---------- MongoDB ----------


class FakeDeleteResult:
    def __init__(self, deleted_count: int):
        self.deleted_count = deleted_count


class FakeBulkResult:
    def __init__(self, upserted: int, modified: int, matched: int):
        self.upserted_count = upserted
        self.modified_count = modified
        self.matched_count = matched


def _matches(doc: dict, filt: dict) -> bool:
    for key, cond in filt.items():
        if isinstance(cond, dict) and "$exists" in cond:
            if (key in doc) != bool(cond["$exists"]):
                return False
        elif doc.get(key, object()) != cond:
            return False
    return True


class FakeMongoCollection:
    def __init__(self, name: str):
        self.name = name
        self.docs: List[dict] = []
        self.indexes: Dict[str, dict] = {}
        self.create_index_calls = 0
        self.bulk_write_calls = 0
        self.transient_failures = 0
        self.reject_keys: set = set()
        self._ids = itertools.count(1)

    # indexes

    def create_index(self, keys, unique: bool = False, name: Optional[str] = None):
        self.create_index_calls += 1
        fields = tuple(k for k, _ in keys)
        name = name or "_".join(f"{k}_1" for k in fields)
        existing = self.indexes.get(name)
        if existing is not None and existing != {"fields": fields, "unique": unique}:
            raise OperationFailure("Index with name already exists with different options", code=85)
        self.indexes[name] = {"fields": fields, "unique": unique}
        return name

    def _violates_unique(self, candidate: dict, ignore: Optional[dict] = None) -> bool:
        for index in self.indexes.values():
            if not index["unique"]:
                continue
            values = tuple(candidate.get(f) for f in index["fields"])
            for doc in self.docs:
                if doc is ignore:
                    continue
                if tuple(doc.get(f) for f in index["fields"]) == values:
                    return True
        return False

    # writes

    def _apply_update(self, filt: dict, update: dict, upsert: bool):
        """Returns (upserted, modified, matched)."""
        fields = update["$set"]
        for doc in self.docs:
            if _matches(doc, filt):
                new_doc = {**doc, **copy.deepcopy(fields)}
                if self._violates_unique(new_doc, ignore=doc):
                    raise ValueError("E11000 duplicate key error")
                changed = new_doc != doc
                doc.clear()
                doc.update(new_doc)
                return 0, int(changed), 1
        if not upsert:
            return 0, 0, 0
        new_doc = {"_id": next(self._ids)}
        new_doc.update({k: v for k, v in filt.items() if not isinstance(v, dict)})
        new_doc.update(copy.deepcopy(fields))
        if self._violates_unique(new_doc):
            raise ValueError("E11000 duplicate key error")
        self.docs.append(new_doc)
        return 1, 0, 0

    def bulk_write(self, ops, ordered: bool = True):
        self.bulk_write_calls += 1
        if self.transient_failures:
            self.transient_failures -= 1
            raise AutoReconnect("connection reset by peer")
        upserted = modified = matched = 0
        errors = []
        for i, op in enumerate(ops):
            filt, update, upsert = op._filter, op._doc, op._upsert
            if tuple(filt.values()) in self.reject_keys:
                errors.append({"index": i, "code": 121, "errmsg": "Document failed validation"})
                continue
            try:
                u, m, mt = self._apply_update(filt, update, upsert)
            except ValueError as e:
                errors.append({"index": i, "code": 11000, "errmsg": str(e)})
                continue
            upserted += u
            modified += m
            matched += mt
        if errors:
            raise BulkWriteError({
                "writeErrors": errors,
                "writeConcernErrors": [],
                "nInserted": 0,
                "nUpserted": upserted,
                "nMatched": matched,
                "nModified": modified,
                "nRemoved": 0,
                "upserted": [],
            })
        return FakeBulkResult(upserted, modified, matched)

    def update_one(self, filt: dict, update: dict, upsert: bool = False):
        return self._apply_update(filt, update, upsert)

    def delete_one(self, filt: dict) -> FakeDeleteResult:
        for doc in self.docs:
            if _matches(doc, filt):
                self.docs.remove(doc)
                return FakeDeleteResult(1)
        return FakeDeleteResult(0)

    # reads

    def find(self, filt: Optional[dict] = None, projection: Any = None):
        return [copy.deepcopy(d) for d in self.docs if _matches(d, filt or {})]

    def find_one(self, filt: dict) -> Optional[dict]:
        found = self.find(filt)
        return found[0] if found else None

    def count_documents(self, filt: dict) -> int:
        return len(self.find(filt))


class FakeAdmin:
    def __init__(self, client: "FakeMongoClient"):
        self._client = client

    def command(self, name: str):
        if self._client.unreachable:
            raise AutoReconnect("No servers found yet")
        return {"ok": 1.0}


class FakeMongoClient:
    def __init__(self):
        self.unreachable = False
        self.closed = False
        self.admin = FakeAdmin(self)

    def close(self) -> None:
        self.closed = True


class FakeMongoDatabase:
    def __init__(self, name: str = "migration_test"):
        self.name = name
        self.client = FakeMongoClient()
        self.collections: Dict[str, FakeMongoCollection] = {}

    def __getitem__(self, name: str) -> FakeMongoCollection:
        if name not in self.collections:
            self.collections[name] = FakeMongoCollection(name)
        return self.collections[name]

    def snapshot(self) -> Dict[str, List[dict]]:
        """Contents without the store-assigned _id, for comparing runs."""
        return {
            name: sorted(
                ({k: v for k, v in d.items() if k != "_id"} for d in col.docs),
                key=lambda d: repr(sorted(d.items())),
            )
            for name, col in self.collections.items()
        }


# ---------- fixtures ----------


@pytest.fixture
def fake_mongo() -> FakeMongoDatabase:
    return FakeMongoDatabase()


@pytest.fixture
def no_sleep_retry():
    """Three attempts, no real waiting; the recorded delays are on ``.delays``."""
    delays: List[float] = []
    policy = RetryPolicy(RetrySettings(attempts=3, initial_delay=0.01, max_delay=0.05), sleep=delays.append)
    policy.delays = delays
    return policy


@pytest.fixture
def source_data() -> Dict[str, Dict[str, dict]]:
    return {
        "users": {
            "uid123": {"name": "No Email", "createdAt": {"_seconds": 1700000000, "_nanoseconds": 0}},
            "uidABC": {
                "email": "a@b.com",
                "displayName": "Ann",
                "roles": ["admin"],
                "updatedAt": {"_seconds": 1700000100, "_nanoseconds": 500000000},
            },
        },
        "users/uidABC/bookmarks": {
            "bm1": {"refId": "book-1", "createdAt": {"seconds": 1700000000, "nanoseconds": 0}},
            "bm2": {"refId": "book-2"},
        },
        "users/uid123/notifications": {
            "n1": {"text": "hello", "read": False},
        },
        "quotes": {
            "q1": {"text": "first", "tags": ["a", "b"]},
            "q2": {"id": "custom-q2", "text": "second"},
        },
        "conversations": {
            "c1": {"members": ["a@b.com", "uid123"]},
        },
        "conversations/c1/messages": {
            "m1": {"body": "hi", "sentAt": {"_seconds": 1700000200, "_nanoseconds": 0}},
        },
        "circles": {
            "circle1": {"name": "Readers"},
        },
        "circles/circle1/messages": {
            "m1": {"body": "welcome"},
        },
    }


@pytest.fixture
def fake_firestore(source_data) -> FakeFirestore:
    return FakeFirestore(source_data)
