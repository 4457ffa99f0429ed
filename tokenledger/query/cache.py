"""Single-entry TTL cache for aggregated query results."""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from typing import Any

from tokenledger.models.schemas import QueryFilters, QueryResult
from tokenledger.monitoring.metrics import record_cache_lookup


def query_cache_key(
    account: str,
    table: str,
    dataset_id: str,
    start_day: str,
    end_day: str,
    filters: QueryFilters,
) -> str:
    """Canonical JSON identifying one query."""
    payload: dict[str, Any] = {
        "account": account,
        "table": table,
        "dataset": dataset_id,
        "start": start_day,
        "end": end_day,
        "filters": filters.model_dump(),
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


class QueryCache:
    """Holds the most recent query result until its TTL expires or a key changes."""

    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._key: str | None = None
        self._result: QueryResult | None = None
        self._stored_at = 0.0

    def get(self, key: str) -> QueryResult | None:
        hit = (
            self._result is not None
            and self._key == key
            and self._clock() - self._stored_at < self.ttl_seconds
        )
        record_cache_lookup(hit)
        return self._result if hit else None

    def put(self, key: str, result: QueryResult) -> None:
        self._key = key
        self._result = result
        self._stored_at = self._clock()

    def invalidate(self) -> None:
        self._key = None
        self._result = None
