"""Retry with exponential backoff for transient store faults."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from durable_pubsub.errors import StoreUnavailable

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule; ``max_attempts`` None retries forever."""

    max_attempts: Optional[int] = 5
    backoff_base: float = 0.5
    backoff_mult: float = 2.0
    max_backoff: float = 30.0

    def delay(self, attempt: int) -> float:
        """Seconds to sleep after the given (1-based) failed attempt."""
        return min(self.backoff_base * self.backoff_mult ** (attempt - 1), self.max_backoff)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts


FOREVER = RetryPolicy(max_attempts=None)


async def retry_call(
    operation: str,
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    logger: logging.Logger,
    **extra: Any,
) -> T:
    """Await ``func()`` until it succeeds, retrying only on StoreUnavailable.

    Non-transient errors propagate at once; the last transient error
    propagates once the policy is exhausted.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func()
        except StoreUnavailable as e:
            if policy.exhausted(attempt):
                logger.error(
                    "retries_exhausted",
                    extra={"operation": operation, "attempts": attempt, "error": str(e), **extra},
                )
                raise
            backoff_s = policy.delay(attempt)
            logger.warning(
                "store_retry",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "backoff_s": backoff_s,
                    "error": str(e),
                    **extra,
                },
            )
            await asyncio.sleep(backoff_s)
