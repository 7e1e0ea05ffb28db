"""Bounded exponential backoff for sync operations."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration.

    Attributes:
        max_attempts: Total attempts including the first. Default 5.
        base_delay_seconds: Delay before the second attempt. Default 1.0.
        max_delay_seconds: Cap applied before jitter. Default 60.
        jitter_ratio: Fraction of the delay added or removed at random. Default 0.1.
    """

    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    jitter_ratio: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("delays must be >= 0")
        if not 0 <= self.jitter_ratio < 1:
            raise ValueError("jitter_ratio must be in [0, 1)")

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay after the given zero-based failed attempt."""
        delay = min(self.base_delay_seconds * (2 ** attempt), self.max_delay_seconds)
        if self.jitter_ratio:
            spread = delay * self.jitter_ratio
            delay += (rng or random).uniform(-spread, spread)
        return max(delay, 0.0)


class RetryExhaustedError(Exception):
    """Every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run operation, retrying retryable failures with backoff.

    Non-retryable errors propagate immediately. After max_attempts
    retryable failures, RetryExhaustedError is raised.
    """
    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if attempt == policy.max_attempts - 1:
                raise RetryExhaustedError(attempt + 1, exc) from exc
            delay = policy.delay_for(attempt)
            logger.warning(
                "Attempt %s/%s failed (%s), retrying in %.2fs",
                attempt + 1,
                policy.max_attempts,
                exc,
                delay,
            )
            await sleep(delay)
    raise AssertionError("unreachable")
