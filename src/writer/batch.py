import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from .retry import FailureReason, RetryPolicy, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PACING = 0.34  # seconds; ~3 requests/second
MAX_BATCH_SIZE = 100


@dataclass(frozen=True)
class WriteSuccess:
    index: int
    remote_id: str


@dataclass(frozen=True)
class WriteFailure:
    index: int
    reason: FailureReason
    status_code: Optional[int] = None


@dataclass
class WriteBatchResult:
    succeeded: List[WriteSuccess] = field(default_factory=list)
    failed: List[WriteFailure] = field(default_factory=list)


@dataclass
class RetryState:
    attempt: int = 0
    last_error: Optional[Exception] = None


async def write_with_retry(
    item: T,
    write_one: Callable[[T], Awaitable[str]],
    policy: RetryPolicy,
    state: Optional[RetryState] = None,
) -> str:
    """Write one item, retrying 429/5xx up to ``policy.max_retries`` times.

    Raises the last error once the budget is spent or the error is not retryable.
    """
    state = state or RetryState()
    for attempt in range(policy.max_retries + 1):
        state.attempt = attempt
        try:
            return await write_one(item)
        except Exception as e:
            state.last_error = e
            retryable, reason, status_code = classify_error(e)
            if not retryable or attempt >= policy.max_retries:
                raise
            delay = policy.delay(attempt)
            logger.info("Retrying write after %.2fs (%s, status %s, attempt %d)", delay, reason.value, status_code, attempt + 1)
            await asyncio.sleep(delay)
    raise RuntimeError("unreachable")  # pragma: no cover


async def write_batch_with_retry(
    items: Sequence[T],
    write_one: Callable[[T], Awaitable[str]],
    pacing: float = DEFAULT_PACING,
    policy: Optional[RetryPolicy] = None,
) -> WriteBatchResult:
    """Write ``items`` one at a time against a rate-limited API.

    Items are issued strictly in order with ``pacing`` seconds between them.
    Every index lands in exactly one of ``succeeded``/``failed``; a failed item
    never stops the batch. Callers enforce MAX_BATCH_SIZE beforehand.
    """
    policy = policy or RetryPolicy()
    result = WriteBatchResult()

    for index, item in enumerate(items):
        if index > 0 and pacing > 0:
            await asyncio.sleep(pacing)

        state = RetryState()
        try:
            remote_id = await write_with_retry(item, write_one, policy, state)
        except Exception as e:
            _, reason, status_code = classify_error(e)
            logger.warning(
                "Write %d failed after %d attempt(s): %s (status %s)",
                index,
                state.attempt + 1,
                reason.value,
                status_code,
            )
            result.failed.append(WriteFailure(index=index, reason=reason, status_code=status_code))
            continue

        result.succeeded.append(WriteSuccess(index=index, remote_id=remote_id))

    logger.info("Batch write finished: %d succeeded, %d failed", len(result.succeeded), len(result.failed))
    return result
