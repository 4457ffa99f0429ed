"""tokenledger data models."""

from tokenledger.models.schemas import (
    DEFAULT_MODEL,
    ROLLUP_DIMENSIONS,
    CachedModelUsage,
    CachedRequest,
    DailyRollupEntry,
    DailyRollupKey,
    DailyRollupValue,
    FileStat,
    FluencyMetrics,
    ModelUsage,
    QueryFilters,
    QueryResult,
    RemoteEntity,
    RequestUsage,
    SessionFileCache,
    SessionMetrics,
)

__all__ = [
    "DEFAULT_MODEL",
    "ROLLUP_DIMENSIONS",
    "CachedModelUsage",
    "CachedRequest",
    "DailyRollupEntry",
    "DailyRollupKey",
    "DailyRollupValue",
    "FileStat",
    "FluencyMetrics",
    "ModelUsage",
    "QueryFilters",
    "QueryResult",
    "RemoteEntity",
    "RequestUsage",
    "SessionFileCache",
    "SessionMetrics",
]
