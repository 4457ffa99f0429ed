"""Unit tests for Prometheus metrics collection."""

from __future__ import annotations

import pytest
from prometheus_client import REGISTRY as DEFAULT_REGISTRY

from tokenledger.monitoring import metrics
from tokenledger.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerConfig


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    return DEFAULT_REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestRecorders:
    """Test suite for metric helper functions."""

    def test_record_sync_outcome(self) -> None:
        labels = {"trigger": "manual", "outcome": "success"}
        before = _sample("tokenledger_sync_attempts_total", labels)

        metrics.record_sync_outcome("manual", "success")

        assert _sample("tokenledger_sync_attempts_total", labels) == before + 1

    def test_record_file_error(self) -> None:
        before = _sample("tokenledger_session_file_errors_total", {"kind": "stat"})

        metrics.record_file_error("stat")

        assert _sample("tokenledger_session_file_errors_total", {"kind": "stat"}) == before + 1

    def test_record_cache_lookup(self) -> None:
        hits = _sample("tokenledger_query_cache_requests_total", {"result": "hit"})
        misses = _sample("tokenledger_query_cache_requests_total", {"result": "miss"})

        metrics.record_cache_lookup(True)
        metrics.record_cache_lookup(False)

        assert _sample("tokenledger_query_cache_requests_total", {"result": "hit"}) == hits + 1
        assert _sample("tokenledger_query_cache_requests_total", {"result": "miss"}) == misses + 1

    @pytest.mark.asyncio
    async def test_breaker_updates_failure_gauge(self) -> None:
        breaker = CircuitBreaker("gauge", CircuitBreakerConfig(failure_threshold=5))

        await breaker.record_failure()
        await breaker.record_failure()
        assert _sample("tokenledger_sync_consecutive_failures") == 2

        await breaker.record_success()
        assert _sample("tokenledger_sync_consecutive_failures") == 0
