from typing import List, Optional

import httpx
import pytest

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from providers.base import MalformedResponseError, ProviderHTTPError
from writer.batch import RetryState, write_with_retry
from writer.retry import FailureReason, RetryPolicy, calculate_backoff, classify_error


class HTTPExc(Exception):
    def __init__(self, status_code: int):
        self.status_code = status_code


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.notion.com/v1/pages")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError("boom", request=request, response=response)


@pytest.mark.parametrize(
    "exc, retryable, reason",
    [
        (HTTPExc(429), True, FailureReason.RATE_LIMITED),
        (ProviderHTTPError("x", 429, {"retry-after": "2"}), True, FailureReason.RATE_LIMITED),
        (HTTPExc(500), True, FailureReason.SERVER_ERROR),
        (_status_error(503), True, FailureReason.SERVER_ERROR),
        (HTTPExc(400), False, FailureReason.CLIENT_ERROR),
        (HTTPExc(404), False, FailureReason.CLIENT_ERROR),
        (MalformedResponseError("no id"), False, FailureReason.MALFORMED_RESPONSE),
        (httpx.ReadTimeout("slow"), False, FailureReason.TIMEOUT),
        (httpx.ConnectError("down"), False, FailureReason.NETWORK_ERROR),
        (RuntimeError("?"), False, FailureReason.UNKNOWN_ERROR),
    ],
)
def test_classify_error(exc, retryable, reason):
    got_retryable, got_reason, _ = classify_error(exc)
    assert got_retryable is retryable
    assert got_reason == reason


def test_backoff_adds_bounded_jitter(monkeypatch):
    monkeypatch.setattr("writer.retry.random.uniform", lambda a, b: b)
    policy = RetryPolicy()
    assert [policy.delay(i) for i in range(3)] == pytest.approx([0.7, 1.4, 2.8])

    monkeypatch.setattr("writer.retry.random.uniform", lambda a, b: a)
    assert [policy.delay(i) for i in range(3)] == [0.5, 1.0, 2.0]


def test_backoff_reuses_last_step_past_schedule(monkeypatch):
    monkeypatch.setattr("writer.retry.random.uniform", lambda a, b: 0.0)
    assert calculate_backoff(7, (0.5, 1.0), (0.1, 0.2)) == 1.0
    assert calculate_backoff(0, (), ()) == 0.0


def test_backoff_stays_in_range():
    for i in range(3):
        delay = RetryPolicy().delay(i)
        base = (0.5, 1.0, 2.0)[i]
        assert base <= delay <= base + (0.2, 0.4, 0.8)[i]


class Flaky:
    def __init__(self, behavior: List[object]):
        self.behavior = behavior
        self.calls = 0

    async def __call__(self, item) -> str:
        self.calls += 1
        act = self.behavior.pop(0) if self.behavior else HTTPExc(500)
        if isinstance(act, Exception):
            raise act
        return str(act)


@pytest.mark.asyncio
async def test_retry_budget_is_exact(monkeypatch):
    sleeps: List[float] = []

    async def fake_sleep(d):
        sleeps.append(d)

    monkeypatch.setattr("writer.batch.asyncio.sleep", fake_sleep)
    monkeypatch.setattr("writer.retry.random.uniform", lambda a, b: 0.0)

    write = Flaky([])  # always 500
    state = RetryState()
    with pytest.raises(HTTPExc):
        await write_with_retry("x", write, RetryPolicy(max_retries=3), state)

    assert write.calls == 4
    assert state.attempt == 3
    assert isinstance(state.last_error, HTTPExc)
    assert sleeps == [0.5, 1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_on_429_then_success(monkeypatch):
    async def no_sleep(_):
        return None

    monkeypatch.setattr("writer.batch.asyncio.sleep", no_sleep)

    write = Flaky([HTTPExc(429), HTTPExc(502), "page-1"])
    assert await write_with_retry("x", write, RetryPolicy()) == "page-1"
    assert write.calls == 3


@pytest.mark.asyncio
async def test_non_retryable_fails_immediately(monkeypatch):
    sleeps: List[Optional[float]] = []

    async def fake_sleep(d):
        sleeps.append(d)

    monkeypatch.setattr("writer.batch.asyncio.sleep", fake_sleep)

    write = Flaky([HTTPExc(400)])
    with pytest.raises(HTTPExc):
        await write_with_retry("x", write, RetryPolicy())
    assert write.calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_zero_retries_means_single_attempt(monkeypatch):
    async def no_sleep(_):
        return None

    monkeypatch.setattr("writer.batch.asyncio.sleep", no_sleep)
    write = Flaky([HTTPExc(429), "late"])
    with pytest.raises(HTTPExc):
        await write_with_retry("x", write, RetryPolicy(max_retries=0))
    assert write.calls == 1
