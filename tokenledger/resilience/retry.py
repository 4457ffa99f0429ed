"""Timeout and retry wrapper for table store calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tokenledger.errors import is_transient_error
from tokenledger.monitoring.metrics import store_retries_total

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry configuration.

    With the defaults a call is attempted once and retried three times,
    waiting 1 s, 2 s and 4 s between attempts.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    timeout: float | None = 60.0

    def delay_for(self, retry_number: int) -> float:
        """Backoff before the given retry (1-based)."""
        return self.base_delay * (2 ** (retry_number - 1))


async def call_with_retry(
    operation: str,
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``func`` with a timeout, retrying transient failures.

    Args:
        operation: Name used in logs and metrics
        func: Zero-argument coroutine factory, called once per attempt
        policy: Retry configuration
        sleep: Sleep function (injectable for tests)

    Returns:
        The result of the first successful attempt

    Raises:
        Exception: The last error once retries are exhausted, or any
            non-transient error immediately
    """
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            if policy.timeout is not None:
                return await asyncio.wait_for(func(), timeout=policy.timeout)
            return await func()
        except Exception as e:
            if not is_transient_error(e) or attempt >= policy.max_retries:
                raise
            attempt += 1
            delay = policy.delay_for(attempt)
            store_retries_total.labels(operation=operation).inc()
            logger.warning(
                f"{operation} failed with a transient error ({e.__class__.__name__}); "
                f"retry {attempt}/{policy.max_retries} in {delay:.1f}s"
            )
            await sleep(delay)
