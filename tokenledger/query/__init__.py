"""Query path for remote rollups."""

from tokenledger.query.cache import QueryCache, query_cache_key
from tokenledger.query.service import QueryService, aggregate_entities, matches_filters

__all__ = [
    "QueryCache",
    "QueryService",
    "aggregate_entities",
    "matches_filters",
    "query_cache_key",
]
