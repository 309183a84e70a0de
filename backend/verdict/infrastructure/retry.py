"""
Retry with exponential backoff.

A single combinator shared by every price source, so the backoff schedule
lives in one place:

    policy = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0)
    quote = await retry_async(lambda: breaker.call(fetch, asset, day), policy)
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, how long to wait, and which errors to retry."""

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 10.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    never_retry: Tuple[Type[BaseException], ...] = field(default=())

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 1-based failed attempt."""
        return min(self.base_delay * (self.backoff_factor ** (attempt - 1)), self.max_delay)

    def should_retry(self, exc: BaseException) -> bool:
        if self.never_retry and isinstance(exc, self.never_retry):
            return False
        return isinstance(exc, self.retry_on)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: Optional[str] = None,
) -> T:
    """
    Run operation until it succeeds or the policy gives up.

    The last exception is re-raised unchanged, so callers keep the failure
    class of the final attempt.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if attempt >= policy.max_attempts or not policy.should_retry(exc):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "retry_scheduled",
                operation=label,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=delay,
                error=f"{type(exc).__name__}: {exc}",
            )
            await sleep(delay)
