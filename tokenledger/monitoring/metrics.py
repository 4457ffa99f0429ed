"""Prometheus metrics collection for tokenledger.

Provides instrumentation for session parsing, sync and query operations.
"""

import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

# =============================================================================
# Parsing Metrics
# =============================================================================

session_files_processed_total = Counter(
    "tokenledger_session_files_processed_total",
    "Total session files folded into rollups",
    ["source"],  # cache, parse
)

session_file_errors_total = Counter(
    "tokenledger_session_file_errors_total",
    "Total session file errors encountered",
    ["kind"],  # parse, stat, read, cache
)

# =============================================================================
# Sync Metrics
# =============================================================================

sync_attempts_total = Counter(
    "tokenledger_sync_attempts_total",
    "Total sync attempts by outcome",
    ["trigger", "outcome"],  # trigger: manual, scheduled, initial; outcome: success, failure, skipped
)

sync_duration_seconds = Histogram(
    "tokenledger_sync_duration_seconds",
    "Sync duration in seconds",
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 300.0],
)

sync_consecutive_failures = Gauge(
    "tokenledger_sync_consecutive_failures",
    "Current number of consecutive sync failures",
)

entities_upserted_total = Counter(
    "tokenledger_entities_upserted_total",
    "Total rollup entities upserted to the table store",
    ["status"],  # success, error
)

store_retries_total = Counter(
    "tokenledger_store_retries_total",
    "Total retried table store calls",
    ["operation"],
)

# =============================================================================
# Query Metrics
# =============================================================================

query_cache_requests_total = Counter(
    "tokenledger_query_cache_requests_total",
    "Total query cache lookups",
    ["result"],  # hit, miss
)

query_entities_decoded_total = Counter(
    "tokenledger_query_entities_decoded_total",
    "Total entities decoded on the read path",
    ["status"],  # accepted, rejected
)


def record_file_error(kind: str) -> None:
    """Record a classified session file error.

    Args:
        kind: One of parse, stat, read, cache
    """
    session_file_errors_total.labels(kind=kind).inc()


def record_sync_outcome(trigger: str, outcome: str) -> None:
    """Record the outcome of one sync attempt.

    Args:
        trigger: What started the sync (manual, scheduled, initial)
        outcome: success, failure or skipped
    """
    sync_attempts_total.labels(trigger=trigger, outcome=outcome).inc()


def record_cache_lookup(hit: bool) -> None:
    """Record a query cache lookup."""
    query_cache_requests_total.labels(result="hit" if hit else "miss").inc()


def start_metrics_server(port: int = 9464, addr: str = "127.0.0.1") -> None:
    """Expose the default registry on ``http://addr:port/metrics``.

    Args:
        port: Port to listen on
        addr: Address to bind
    """
    start_http_server(port=port, addr=addr)
    logger.info(f"Prometheus metrics server started on http://{addr}:{port}/metrics")
