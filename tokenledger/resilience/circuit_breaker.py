"""Circuit breaker guarding remote sync.

Counts consecutive failed attempts. At ``failure_threshold`` the breaker opens
and rejects calls. With ``timeout=None`` it stays open until ``reset()``;
otherwise one probe is let through after ``timeout`` seconds.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from tokenledger.monitoring.metrics import sync_consecutive_failures

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"  # one probe allowed


@dataclass
class CircuitBreakerConfig:
    """Breaker thresholds.

    Attributes:
        failure_threshold: Consecutive failures that open the breaker
        probe_successes: Successful probes needed to close from HALF_OPEN
        timeout: Seconds before a probe is allowed; None keeps it open until reset
        call_timeout: Optional limit for each guarded call
    """

    failure_threshold: int = 5
    probe_successes: int = 1
    timeout: float | None = None
    call_timeout: float | None = None


@dataclass
class CircuitBreakerStats:
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    rejected: int = 0
    consecutive_failures: int = 0
    probe_streak: int = 0
    last_failure_at: datetime | None = None
    opened_at: datetime | None = None


class CircuitBreakerError(Exception):
    """A call was refused because the breaker is open."""

    def __init__(self, message: str, state: CircuitState) -> None:
        super().__init__(message)
        self.state = state


class CircuitBreaker:
    """Consecutive-failure breaker for one remote operation.

    Example:
        >>> breaker = CircuitBreaker("backend-sync", CircuitBreakerConfig(failure_threshold=5))
        >>> await breaker.call(run_sync)
    """

    def __init__(self, name: str, config: CircuitBreakerConfig | None = None) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._stats = CircuitBreakerStats()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        return self._stats

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    def snapshot(self) -> dict[str, Any]:
        """Breaker state and counters as plain values for logging."""
        stats = self._stats
        return {
            "name": self.name,
            "state": self._state.value,
            "attempts": stats.attempts,
            "failures": stats.failures,
            "consecutive_failures": stats.consecutive_failures,
            "rejected": stats.rejected,
            "last_failure_at": stats.last_failure_at.isoformat() if stats.last_failure_at else None,
            "opened_at": stats.opened_at.isoformat() if stats.opened_at else None,
        }

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` unless the breaker is open, recording the outcome.

        Raises:
            CircuitBreakerError: If the breaker is open
            TimeoutError: If ``call_timeout`` elapses
            Exception: Whatever ``func`` raises
        """
        await self._admit()

        try:
            if self.config.call_timeout is None:
                result = await func(*args, **kwargs)
            else:
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.config.call_timeout)
        except TimeoutError:
            logger.warning(f"'{self.name}' timed out after {self.config.call_timeout}s")
            await self.record_failure()
            raise
        except Exception:
            await self.record_failure()
            raise

        await self.record_success()
        return result

    async def _admit(self) -> None:
        async with self._lock:
            if self._state is not CircuitState.OPEN:
                return
            if self._probe_due():
                logger.info(f"'{self.name}' breaker half-open; allowing a probe")
                self._state = CircuitState.HALF_OPEN
                self._stats.probe_streak = 0
                return
            self._stats.rejected += 1
            raise CircuitBreakerError(f"'{self.name}' breaker is open", self._state)

    def _probe_due(self) -> bool:
        if self.config.timeout is None:
            return False
        since = self._stats.opened_at or self._stats.last_failure_at
        if since is None:
            return True
        return (datetime.now(UTC) - since).total_seconds() >= self.config.timeout

    async def record_success(self) -> None:
        """Count a success; clears the failure streak."""
        async with self._lock:
            self._stats.attempts += 1
            self._stats.successes += 1
            self._stats.consecutive_failures = 0
            sync_consecutive_failures.set(0)

            if self._state is CircuitState.HALF_OPEN:
                self._stats.probe_streak += 1
                if self._stats.probe_streak >= self.config.probe_successes:
                    logger.info(f"'{self.name}' breaker closed after a successful probe")
                    self._close()

    async def record_failure(self) -> None:
        """Count a failure, opening the breaker at the threshold."""
        async with self._lock:
            stats = self._stats
            stats.attempts += 1
            stats.failures += 1
            stats.consecutive_failures += 1
            stats.last_failure_at = datetime.now(UTC)
            sync_consecutive_failures.set(stats.consecutive_failures)

            if self._state is CircuitState.HALF_OPEN:
                logger.warning(f"'{self.name}' probe failed; breaker open again")
                self._open()
            elif (
                self._state is CircuitState.CLOSED
                and stats.consecutive_failures >= self.config.failure_threshold
            ):
                logger.error(
                    f"'{self.name}' breaker open after {stats.consecutive_failures} consecutive failures"
                )
                self._open()

    async def reset(self) -> None:
        """Close the breaker and clear the failure streak."""
        async with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.info(f"'{self.name}' breaker reset")
            self._close()
            self._stats.consecutive_failures = 0
            sync_consecutive_failures.set(0)

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._stats.opened_at = datetime.now(UTC)
        self._stats.probe_streak = 0

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._stats.opened_at = None
        self._stats.probe_streak = 0
