import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from .models import UsageRecord
from .mongo import USAGE_COLLECTION

logger = logging.getLogger(__name__)


def day_key(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y-%m-%d")


def month_start_key(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y-%m-01")


class UsageStore:
    """Per-identity, per-day operation counters backed by the ``usage`` collection.

    The daily count for a kind is only ever changed by ``try_increment``,
    which is a single conditional update. Token telemetry goes through
    ``add_tokens`` and never touches ``counts``.

    Unlike the limiter, this class lets store errors propagate; callers
    decide whether to fail open.
    """

    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        collection: Optional[AsyncIOMotorCollection] = None,
    ) -> None:
        if collection is not None:
            self._col = collection
        elif db is not None:
            self._col = db[USAGE_COLLECTION]
        else:
            raise ValueError("UsageStore requires a db or collection")

    async def try_increment(self, identity: str, kind: str, ceiling: Optional[int], now: datetime) -> bool:
        """Increment today's ``counts.<kind>`` if it is below ``ceiling``.

        Returns True when the increment happened, False when the ceiling was
        already reached. Creates the day's record on first use.
        """
        if ceiling is not None and ceiling <= 0:
            return False
        field = f"counts.{kind}"
        query: Dict[str, Any] = {"identity": identity, "date": day_key(now)}
        if ceiling is not None:
            query["$or"] = [{field: {"$lt": ceiling}}, {field: {"$exists": False}}]
        update = {
            "$inc": {field: 1},
            "$set": {"updated_at": now},
            "$setOnInsert": {"tokens_in": 0, "tokens_out": 0},
        }

        try:
            result = await self._col.update_one(query, update, upsert=True)
        except DuplicateKeyError:
            # Either the row exists and the predicate failed, or a concurrent
            # insert won the race. Re-run the same predicate against the row.
            result = await self._col.update_one(query, update, upsert=False)
            return result.modified_count == 1

        return result.upserted_id is not None or result.modified_count == 1

    async def monthly_total(self, identity: str, kind: str, now: datetime) -> int:
        pipeline = [
            {"$match": {"identity": identity, "date": {"$gte": month_start_key(now)}}},
            {"$group": {"_id": None, "total": {"$sum": f"$counts.{kind}"}}},
        ]
        cursor = self._col.aggregate(pipeline)
        docs = await cursor.to_list(length=1)
        if docs:
            return int(docs[0].get("total", 0) or 0)
        return 0

    async def add_tokens(self, identity: str, tokens_in: int, tokens_out: int, now: datetime) -> None:
        query = {"identity": identity, "date": day_key(now)}
        update = {
            "$inc": {"tokens_in": int(tokens_in or 0), "tokens_out": int(tokens_out or 0)},
            "$set": {"updated_at": now},
        }
        try:
            await self._col.update_one(query, update, upsert=True)
        except DuplicateKeyError:
            await self._col.update_one(query, update, upsert=False)

    async def get_record(self, identity: str, now: datetime) -> Optional[UsageRecord]:
        doc = await self._col.find_one({"identity": identity, "date": day_key(now)})
        if doc is None:
            return None
        doc.pop("_id", None)
        return UsageRecord(**doc)

    async def summary(self, identity: str, kinds: Iterable[str], now: datetime) -> Dict[str, Any]:
        """Today's and month-to-date counts per kind plus token totals."""
        kinds = list(kinds)
        group: Dict[str, Any] = {
            "_id": None,
            "tokens_in": {"$sum": "$tokens_in"},
            "tokens_out": {"$sum": "$tokens_out"},
        }
        for kind in kinds:
            group[kind] = {"$sum": f"$counts.{kind}"}
        pipeline = [
            {"$match": {"identity": identity, "date": {"$gte": month_start_key(now)}}},
            {"$group": group},
        ]
        docs = await self._col.aggregate(pipeline).to_list(length=1)
        month = docs[0] if docs else {}
        today = await self.get_record(identity, now)

        return {
            "date": day_key(now),
            "daily": {
                "counts": {k: today.daily_operation_count(k) if today else 0 for k in kinds},
                "tokens": {
                    "input": today.tokens_in if today else 0,
                    "output": today.tokens_out if today else 0,
                },
            },
            "monthly": {
                "counts": {k: int(month.get(k, 0) or 0) for k in kinds},
                "tokens": {
                    "input": int(month.get("tokens_in", 0) or 0),
                    "output": int(month.get("tokens_out", 0) or 0),
                },
            },
        }
