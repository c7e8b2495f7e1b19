from __future__ import annotations

import pytest

from planguard.services.resilience import RetryPolicy, is_transient, retry_async


class _ProviderDown(Exception):
    def __init__(self, http_status: int) -> None:
        super().__init__(f"status {http_status}")
        self.http_status = http_status


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(
        flaky,
        policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1),
        sleep=_no_sleep,
    )
    assert result == "ok"
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_retry_async_retries_server_errors_until_exhausted() -> None:
    calls = {"count": 0}

    async def always_503() -> str:
        calls["count"] += 1
        raise _ProviderDown(503)

    with pytest.raises(_ProviderDown):
        await retry_async(always_503, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1), sleep=_no_sleep)
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_client_errors() -> None:
    calls = {"count": 0}

    async def bad_request() -> str:
        calls["count"] += 1
        raise _ProviderDown(400)

    with pytest.raises(_ProviderDown):
        await retry_async(bad_request, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1), sleep=_no_sleep)
    assert calls["count"] == 1


def test_is_transient_classification() -> None:
    assert is_transient(TimeoutError())
    assert is_transient(ConnectionResetError())
    assert is_transient(_ProviderDown(429))
    assert not is_transient(_ProviderDown(402))
    assert not is_transient(ValueError("bad input"))


def test_delay_grows_with_attempts() -> None:
    policy = RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=100)
    assert 0.05 <= policy.delay_s(1) <= 0.15
    assert 0.2 <= policy.delay_s(3) <= 0.6
