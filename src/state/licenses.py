import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ReturnDocument

from .models import License, LicenseStatus, utcnow
from .mongo import LICENSES_COLLECTION

logger = logging.getLogger(__name__)

# No 0/O or 1/I/L
KEY_CHARSET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
KEY_SEGMENT_LENGTH = 4
KEY_SEGMENT_COUNT = 4

_SEGMENT = f"[{KEY_CHARSET}]{{{KEY_SEGMENT_LENGTH}}}"
KEY_PATTERN = re.compile("^" + "-".join([_SEGMENT] * KEY_SEGMENT_COUNT) + "$")


def is_valid_key_format(key: Optional[str]) -> bool:
    return bool(key) and KEY_PATTERN.match(key) is not None


def normalize_key(key: str) -> str:
    return key.strip().upper()


def generate_key() -> str:
    segments = [
        "".join(secrets.choice(KEY_CHARSET) for _ in range(KEY_SEGMENT_LENGTH))
        for _ in range(KEY_SEGMENT_COUNT)
    ]
    return "-".join(segments)


def generate_keys(count: int) -> List[str]:
    keys = set()
    while len(keys) < count:
        keys.add(generate_key())
    return sorted(keys)


@dataclass(frozen=True)
class ActivationOutcome:
    code: str  # ACTIVATED | INVALID_KEY_FORMAT | KEY_NOT_FOUND | KEY_ALREADY_ACTIVE | KEY_REVOKED
    license: Optional[License] = None

    @property
    def ok(self) -> bool:
        return self.code == "ACTIVATED"


def _to_license(doc: Optional[Dict[str, Any]]) -> Optional[License]:
    if doc is None:
        return None
    doc = dict(doc)
    doc.pop("_id", None)
    return License(**doc)


class LicenseStore:
    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        collection: Optional[AsyncIOMotorCollection] = None,
    ) -> None:
        if collection is not None:
            self._col = collection
        elif db is not None:
            self._col = db[LICENSES_COLLECTION]
        else:
            raise ValueError("LicenseStore requires a db or collection")

    async def get(self, key: str) -> Optional[License]:
        return _to_license(await self._col.find_one({"key": key}))

    async def create(self, key: str, status: LicenseStatus = LicenseStatus.UNUSED) -> License:
        lic = License(key=key, status=status)
        doc = lic.model_dump()
        doc["status"] = lic.status.value
        await self._col.insert_one(doc)
        return lic

    async def activate(self, raw_key: str, now: Optional[datetime] = None) -> ActivationOutcome:
        key = normalize_key(raw_key)
        if not is_valid_key_format(key):
            return ActivationOutcome(code="INVALID_KEY_FORMAT")

        doc = await self._col.find_one_and_update(
            {"key": key, "status": LicenseStatus.UNUSED.value},
            {"$set": {"status": LicenseStatus.ACTIVE.value, "activated_at": now or utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            logger.info("License activated")
            return ActivationOutcome(code="ACTIVATED", license=_to_license(doc))

        existing = await self.get(key)
        if existing is None:
            return ActivationOutcome(code="KEY_NOT_FOUND")
        if existing.status == LicenseStatus.ACTIVE:
            return ActivationOutcome(code="KEY_ALREADY_ACTIVE", license=existing)
        return ActivationOutcome(code="KEY_REVOKED", license=existing)

    async def revoke(self, key: str) -> bool:
        result = await self._col.update_one({"key": key}, {"$set": {"status": LicenseStatus.REVOKED.value}})
        return result.modified_count == 1

    async def set_notion_connection(self, key: str, access_token: str, workspace_id: Optional[str]) -> None:
        await self._col.update_one(
            {"key": key},
            {"$set": {"notion_access_token": access_token, "notion_workspace_id": workspace_id}},
        )

    async def set_notion_database(self, key: str, database_id: str) -> None:
        await self._col.update_one({"key": key}, {"$set": {"notion_database_id": database_id}})
