from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LicenseStatus(str, Enum):
    UNUSED = "unused"
    ACTIVE = "active"
    REVOKED = "revoked"


class UsageRecord(BaseModel):
    """One identity's counters for one UTC calendar day.

    Exactly one record exists per (identity, date); the unique index in
    state.mongo enforces it. Counts are keyed by operation kind.
    """

    identity: str
    date: str  # YYYY-MM-DD, UTC
    counts: Dict[str, int] = Field(default_factory=dict)
    tokens_in: int = 0
    tokens_out: int = 0
    updated_at: Optional[datetime] = None

    def daily_operation_count(self, kind: str) -> int:
        return int(self.counts.get(kind, 0) or 0)


class License(BaseModel):
    key: str
    status: LicenseStatus = LicenseStatus.UNUSED
    created_at: datetime = Field(default_factory=utcnow)
    activated_at: Optional[datetime] = None
    notion_access_token: Optional[str] = None
    notion_workspace_id: Optional[str] = None
    notion_database_id: Optional[str] = None

    @property
    def has_notion(self) -> bool:
        return bool(self.notion_access_token)
