import asyncio
import copy
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

_MISSING = object()


def _get(doc: Dict[str, Any], path: str) -> Any:
    cur: Any = doc
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return _MISSING
        cur = cur[part]
    return cur


def _set(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = doc
    for part in parts[:-1]:
        cur = cur.setdefault(part, {})
    cur[parts[-1]] = value


def _match_value(value: Any, cond: Any) -> bool:
    if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
        for op, arg in cond.items():
            if op == "$exists":
                if (value is not _MISSING) != bool(arg):
                    return False
            elif op == "$lt":
                if value is _MISSING or not value < arg:
                    return False
            elif op == "$gte":
                if value is _MISSING or not value >= arg:
                    return False
            else:
                raise NotImplementedError(op)
        return True
    return value is not _MISSING and value == cond


def matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, cond in query.items():
        if key == "$or":
            if not any(matches(doc, q) for q in cond):
                return False
        elif not _match_value(_get(doc, key), cond):
            return False
    return True


@dataclass
class FakeUpdateResult:
    matched_count: int
    modified_count: int
    upserted_id: Optional[Any] = None


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs

    async def to_list(self, length: Optional[int] = None):
        return self._docs[: length or len(self._docs)]


class FakeCollection:
    """Just enough of AsyncIOMotorCollection for the stores.

    Each operation yields to the event loop once and then runs to completion
    without awaiting, so single operations are atomic like on the server.
    """

    def __init__(self, unique: Sequence[str] = ()):
        self.docs: List[Dict[str, Any]] = []
        self._unique = tuple(unique)
        self._next_id = 1
        self.calls: List[str] = []

    def _conflicts(self, doc: Dict[str, Any], ignore: Optional[Dict[str, Any]] = None) -> bool:
        if not self._unique:
            return False
        key = tuple(_get(doc, f) for f in self._unique)
        return any(d is not ignore and tuple(_get(d, f) for f in self._unique) == key for d in self.docs)

    def _apply(self, doc: Dict[str, Any], update: Dict[str, Any], inserting: bool) -> None:
        if inserting:
            for path, value in (update.get("$setOnInsert") or {}).items():
                _set(doc, path, value)
        for path, value in (update.get("$set") or {}).items():
            _set(doc, path, value)
        for path, value in (update.get("$inc") or {}).items():
            current = _get(doc, path)
            _set(doc, path, (0 if current is _MISSING else current) + value)

    def _find(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return next((d for d in self.docs if matches(d, query)), None)

    async def insert_one(self, doc: Dict[str, Any]):
        await asyncio.sleep(0)
        self.calls.append("insert_one")
        doc = copy.deepcopy(doc)
        if self._conflicts(doc):
            raise DuplicateKeyError("E11000 duplicate key error", code=11000)
        doc.setdefault("_id", self._next_id)
        self._next_id += 1
        self.docs.append(doc)

    async def find_one(self, query: Dict[str, Any]):
        await asyncio.sleep(0)
        self.calls.append("find_one")
        doc = self._find(query)
        return copy.deepcopy(doc) if doc is not None else None

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        await asyncio.sleep(0)
        self.calls.append("update_one")
        doc = self._find(query)
        if doc is not None:
            self._apply(doc, update, inserting=False)
            return FakeUpdateResult(matched_count=1, modified_count=1)
        if not upsert:
            return FakeUpdateResult(matched_count=0, modified_count=0)

        new_doc: Dict[str, Any] = {k: v for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
        self._apply(new_doc, update, inserting=True)
        if self._conflicts(new_doc):
            raise DuplicateKeyError("E11000 duplicate key error", code=11000)
        new_doc["_id"] = self._next_id
        self._next_id += 1
        self.docs.append(new_doc)
        return FakeUpdateResult(matched_count=0, modified_count=0, upserted_id=new_doc["_id"])

    async def find_one_and_update(self, query, update, return_document=ReturnDocument.BEFORE):
        await asyncio.sleep(0)
        self.calls.append("find_one_and_update")
        doc = self._find(query)
        if doc is None:
            return None
        before = copy.deepcopy(doc)
        self._apply(doc, update, inserting=False)
        return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else before

    def aggregate(self, pipeline, **kwargs):
        # Small interpreter for [{"$match": ...}, {"$group": {"_id": None, name: {"$sum": "$path"}}}]
        self.calls.append("aggregate")
        docs = [d for d in self.docs if matches(d, pipeline[0]["$match"])]
        if not docs:
            return FakeCursor([])
        group = pipeline[1]["$group"]
        out: Dict[str, Any] = {"_id": None}
        for name, spec in group.items():
            if name == "_id":
                continue
            expr = spec["$sum"]
            total = 0
            for d in docs:
                value = 1 if expr == 1 else _get(d, expr.lstrip("$"))
                if isinstance(value, (int, float)):
                    total += value
            out[name] = total
        return FakeCursor([out])


class BrokenCollection:
    """Every call fails as if the server were unreachable."""

    def __init__(self):
        self.calls = 0

    def _fail(self, *args, **kwargs):
        self.calls += 1
        raise ServerSelectionTimeoutError("no servers available")

    async def _afail(self, *args, **kwargs):
        self._fail()

    insert_one = _afail
    find_one = _afail
    update_one = _afail
    find_one_and_update = _afail
    aggregate = _fail
