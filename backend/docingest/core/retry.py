"""
Backoff helpers shared by the queue scheduler and the embedding service.

Two delay shapes are in use:

  scheduler   delay = min(base · 2^(attempt-1) · (0.5 + U[0,1) · 0.5), cap)
              "equal jitter": never less than half the exponential step.
              Each step's floor equals the previous step's exclusive
              ceiling, so delays strictly grow until the cap is hit.

  embeddings  delay = min(initial · multiplier^attempt, cap) ± 20 %
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def compute_backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay (seconds) to wait after failed attempt number `attempt` (1-based).
    """
    exponential = base_delay * (2 ** max(attempt - 1, 0))
    return min(exponential * (0.5 + rand() * 0.5), max_delay)


def compute_jittered_delay(
    attempt: int,
    initial_delay: float,
    multiplier: float = 2.0,
    max_delay: float = 30.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """Exponential delay for 0-based `attempt` with ±20 % jitter."""
    capped = min(initial_delay * (multiplier ** attempt), max_delay)
    return max(0.0, capped + capped * 0.2 * (rand() - 0.5))


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    should_retry: Callable[[BaseException], bool] = lambda _exc: True,
    sleep: Sleep = asyncio.sleep,
    label: str = "call",
) -> T:
    """
    Await `fn()` up to `max_attempts` times.

    Raises the last error once attempts are exhausted, or immediately when
    `should_retry` rejects it.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if not should_retry(exc) or attempt >= max_attempts - 1:
                raise
            delay = compute_jittered_delay(attempt, initial_delay, max_delay=max_delay)
            logger.warning(
                "Retrying %s | attempt=%d/%d delay=%.2fs error=%s",
                label, attempt + 1, max_attempts, delay, exc,
            )
            await sleep(delay)
        attempt += 1
