"""Exponential backoff for outbound provider calls."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from app.services.exceptions import DownstreamServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter: bool = True


def calculate_backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    """Delay before retrying after ``attempt`` (0-indexed) failed."""

    delay = min(policy.base_delay * (policy.exponential_base ** attempt), policy.max_delay)
    if policy.jitter:
        # Between 50% and 150% of the nominal delay.
        delay = delay * (0.5 + random.random())
    return delay


async def call_with_backoff(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str,
) -> T:
    """Await ``func`` until it succeeds or a non-retryable error is raised.

    Only ``DownstreamServiceError`` instances flagged ``retryable`` (transport
    failures, 429 and 5xx) are retried. Client errors surface immediately.
    """

    attempt = 0
    while True:
        try:
            return await func()
        except DownstreamServiceError as exc:
            if not exc.retryable or attempt >= policy.attempts - 1:
                if exc.retryable:
                    logger.error("All %s attempts failed for %s: %s", policy.attempts, label, exc)
                raise
            delay = calculate_backoff_delay(attempt, policy)
            logger.warning(
                "Attempt %s/%s failed for %s: %s. Retrying in %.2fs",
                attempt + 1,
                policy.attempts,
                label,
                exc,
                delay,
            )
            attempt += 1
            await asyncio.sleep(delay)
