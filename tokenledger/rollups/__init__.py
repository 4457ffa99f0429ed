"""Daily rollup aggregation."""

from tokenledger.rollups.aggregator import (
    RollupMap,
    aggregate_by_dimension,
    aggregate_by_week,
    filter_by_dimension,
    iso_week_key,
    merge_fluency_metrics,
    rollup_map_key,
    upsert_daily_rollup,
)
from tokenledger.rollups.builder import (
    RollupBuilder,
    RollupBuildResult,
    apportion,
    extract_workspace_id,
)
from tokenledger.rollups.daykeys import (
    add_days,
    day_keys_inclusive,
    is_valid_day_key,
    to_utc_day_key,
)

__all__ = [
    "RollupBuildResult",
    "RollupBuilder",
    "RollupMap",
    "add_days",
    "aggregate_by_dimension",
    "aggregate_by_week",
    "apportion",
    "day_keys_inclusive",
    "extract_workspace_id",
    "filter_by_dimension",
    "is_valid_day_key",
    "iso_week_key",
    "merge_fluency_metrics",
    "rollup_map_key",
    "to_utc_day_key",
    "upsert_daily_rollup",
]
