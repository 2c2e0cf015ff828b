import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import httpx

from providers.base import MalformedResponseError


class FailureReason(str, Enum):
    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with per-attempt jitter.

    Delay before retry ``n`` (0-based) is ``base_delays[n] + uniform(0, jitter[n])``
    seconds. ``max_retries`` counts retries after the original attempt.
    """

    max_retries: int = 3
    base_delays: Tuple[float, ...] = (0.5, 1.0, 2.0)
    jitter: Tuple[float, ...] = (0.2, 0.4, 0.8)

    def delay(self, retry_index: int) -> float:
        return calculate_backoff(retry_index, self.base_delays, self.jitter)


def _extract_status_code(exc: Exception) -> Optional[int]:
    # Common patterns: custom exc.status_code, httpx.HTTPStatusError.response.status_code
    code = getattr(exc, "status_code", None)
    if isinstance(code, int):
        return code
    resp = getattr(exc, "response", None)
    if resp is not None:
        sc = getattr(resp, "status_code", None)
        if isinstance(sc, int):
            return sc
    return None


def classify_error(exc: Exception) -> Tuple[bool, FailureReason, Optional[int]]:
    """Classify a single-write failure.

    Returns ``(retryable, reason, status_code)``. Only 429 and 5xx are
    retryable; transport errors have already used the client's own retries.
    """
    if isinstance(exc, MalformedResponseError):
        return False, FailureReason.MALFORMED_RESPONSE, None
    if isinstance(exc, httpx.TimeoutException):
        return False, FailureReason.TIMEOUT, None
    if isinstance(exc, httpx.TransportError):
        return False, FailureReason.NETWORK_ERROR, None

    status_code = _extract_status_code(exc)
    if status_code == 429:
        return True, FailureReason.RATE_LIMITED, status_code
    if status_code is not None and 500 <= status_code <= 599:
        return True, FailureReason.SERVER_ERROR, status_code
    if status_code is not None and 400 <= status_code <= 499:
        return False, FailureReason.CLIENT_ERROR, status_code
    return False, FailureReason.UNKNOWN_ERROR, status_code


def calculate_backoff(retry_index: int, base_delays: Tuple[float, ...], jitter: Tuple[float, ...]) -> float:
    # Past the configured schedule, keep using the last entry
    base = base_delays[min(retry_index, len(base_delays) - 1)] if base_delays else 0.0
    spread = jitter[min(retry_index, len(jitter) - 1)] if jitter else 0.0
    return base + random.uniform(0, spread)
