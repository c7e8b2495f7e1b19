from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
from typing import Awaitable, Callable, TypeVar

from planguard.core.config import get_settings


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        settings = get_settings()
        return cls(
            timeout_ms=settings.checkout_timeout_ms,
            max_attempts=max(1, settings.ext_retry_max_attempts),
            backoff_ms=settings.ext_retry_backoff_ms,
        )

    def delay_s(self, attempt: int) -> float:
        # Exponential backoff with jitter so retries from many workers spread out.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


def is_transient(exc: Exception) -> bool:
    # Timeouts, connection drops, provider 5xx and 429 are worth another attempt.
    if isinstance(exc, (TimeoutError, OSError)):
        return True
    status = getattr(exc, "http_status", None) or getattr(exc, "status_code", None)
    return isinstance(status, int) and (status >= 500 or status == 429)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] = is_transient,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    policy = policy or RetryPolicy.from_settings()
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless transient
            if attempt >= policy.max_attempts or not retryable(exc):
                raise
            logger.info("external_call_retry attempt=%s error=%s", attempt, type(exc).__name__)
            await sleep(policy.delay_s(attempt))
            attempt += 1
