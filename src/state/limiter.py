import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Mapping, Optional, Union

from .models import utcnow
from .usage import UsageStore

logger = logging.getLogger(__name__)

KIND_PARSE = "parse"
KIND_ANALYSIS = "analysis"

DEFAULT_DAILY_LIMIT = 10
DEFAULT_MONTHLY_LIMIT = 200


@dataclass(frozen=True)
class KindLimits:
    daily: Optional[int] = DEFAULT_DAILY_LIMIT
    monthly: Optional[int] = DEFAULT_MONTHLY_LIMIT


@dataclass(frozen=True)
class Allowed:
    degraded: bool = False  # True when the store failed and the limiter failed open

    allowed = True
    scope_exceeded = None
    reset_at = None


@dataclass(frozen=True)
class DeniedDaily:
    reset_at: datetime

    allowed = False
    scope_exceeded = "daily"


@dataclass(frozen=True)
class DeniedMonthly:
    reset_at: datetime

    allowed = False
    scope_exceeded = "monthly"


RateLimitDecision = Union[Allowed, DeniedDaily, DeniedMonthly]


def next_utc_midnight(now: datetime) -> datetime:
    now = now.astimezone(timezone.utc)
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc) + timedelta(days=1)


def next_month_start(now: datetime) -> datetime:
    now = now.astimezone(timezone.utc)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


class RateLimiter:
    """Daily and monthly ceilings per identity and operation kind.

    ``check_and_consume`` evaluates the monthly ceiling with a read-only sum,
    then consumes one unit of the daily ceiling through the store's
    conditional increment. Store failures fail open.
    """

    def __init__(self, store: UsageStore, limits: Optional[Mapping[str, KindLimits]] = None) -> None:
        self._store = store
        self._limits: Dict[str, KindLimits] = dict(limits or {})

    def limits_for(self, kind: str) -> KindLimits:
        return self._limits.get(kind, KindLimits())

    @property
    def kinds(self):
        return sorted(set(self._limits) | {KIND_PARSE, KIND_ANALYSIS})

    async def check_and_consume(self, identity: str, kind: str, now: Optional[datetime] = None) -> RateLimitDecision:
        now = now or utcnow()
        limits = self.limits_for(kind)
        try:
            if limits.monthly is not None:
                used = await self._store.monthly_total(identity, kind, now)
                if used >= limits.monthly:
                    logger.info("Monthly %s ceiling reached (%d/%d)", kind, used, limits.monthly)
                    return DeniedMonthly(reset_at=next_month_start(now))

            consumed = await self._store.try_increment(identity, kind, limits.daily, now)
            if not consumed:
                logger.info("Daily %s ceiling reached (limit %s)", kind, limits.daily)
                return DeniedDaily(reset_at=next_utc_midnight(now))
        except Exception as e:
            logger.warning("Rate limit check failed for %s; allowing request: %s", kind, e)
            return Allowed(degraded=True)

        return Allowed()

    async def record_token_usage(
        self,
        identity: str,
        tokens_in: int,
        tokens_out: int,
        now: Optional[datetime] = None,
    ) -> None:
        # Telemetry only; the operation count was already consumed up front
        try:
            await self._store.add_tokens(identity, tokens_in, tokens_out, now or utcnow())
        except Exception as e:
            logger.warning("Failed to record token usage: %s", e)

    async def usage_summary(self, identity: str, now: Optional[datetime] = None) -> Dict[str, object]:
        now = now or utcnow()
        summary = await self._store.summary(identity, self.kinds, now)
        summary["limits"] = {
            k: {"daily": self.limits_for(k).daily, "monthly": self.limits_for(k).monthly} for k in self.kinds
        }
        return summary
