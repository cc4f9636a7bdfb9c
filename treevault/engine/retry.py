"""
TreeVault Retry — Exponential backoff with jitter for transport-level callers.

The core services never retry internally (a blind retry inside a delete or a
propagation walk could double-execute a non-idempotent step). Callers wrap
whole operations, or infrastructure bootstrap, with retry().
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger("treevault.engine.retry")

T = TypeVar("T")


def apply_jitter(base_delay: float, spread: float = 0.2) -> float:
    """Randomize a delay by +/- spread (20% by default), never below zero."""
    jitter_range = base_delay * spread
    return max(0.0, base_delay - jitter_range + random.random() * (jitter_range * 2))


def backoff_delay(attempt: int, base_delay: float, max_delay: float, factor: float) -> float:
    """Un-jittered delay before retry number `attempt` (1-based), capped at max_delay."""
    return min(max_delay, base_delay * (factor ** (attempt - 1)))


def retry(
    operation: Callable[[], T],
    attempts: int = 5,
    base_delay: float = 0.5,
    max_delay: float = 5.0,
    factor: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call operation() until it succeeds or attempts are exhausted.

    Args:
        operation: Zero-argument callable.
        attempts: Total attempts including the first call.
        base_delay: Delay in seconds before the first retry.
        max_delay: Upper bound for any single delay.
        factor: Exponential growth factor.
        retry_on: Exception types that trigger a retry; anything else propagates.
        on_retry: Hook called as on_retry(attempt, delay, error) before sleeping.
        sleep: Sleep function (injectable for tests).

    Returns:
        The operation's result.

    Raises:
        The last error once attempts are exhausted.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except retry_on as e:
            if attempt == attempts:
                logger.error(f"Giving up after {attempts} attempts: {e}")
                raise

            delay = apply_jitter(backoff_delay(attempt, base_delay, max_delay, factor))
            if on_retry is not None:
                on_retry(attempt, delay, e)
            logger.warning(f"Attempt {attempt}/{attempts} failed ({e}); retrying in {delay:.2f}s")
            sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover
