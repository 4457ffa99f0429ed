"""Tests for day keys and rollup aggregation."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from tokenledger.models.schemas import DailyRollupKey, DailyRollupValue, FluencyMetrics
from tokenledger.rollups.aggregator import (
    aggregate_by_dimension,
    aggregate_by_week,
    filter_by_dimension,
    iso_week_key,
    merge_fluency_metrics,
    rollup_map_key,
    upsert_daily_rollup,
)
from tokenledger.rollups.daykeys import (
    add_days,
    day_keys_inclusive,
    is_valid_day_key,
    lookback_start,
    to_utc_day_key,
)


class TestDayKeys:
    """Test suite for UTC day keys."""

    def test_to_utc_day_key(self) -> None:
        moment = datetime(2026, 1, 16, 23, 30, tzinfo=UTC)
        assert to_utc_day_key(moment) == "2026-01-16"
        assert to_utc_day_key(moment.timestamp() * 1000) == "2026-01-16"

    def test_validation(self) -> None:
        assert is_valid_day_key("2026-02-28")
        assert not is_valid_day_key("2026-02-30")
        assert not is_valid_day_key("2026-2-3")

    def test_add_days_crosses_month(self) -> None:
        assert add_days("2026-01-31", 1) == "2026-02-01"
        with pytest.raises(ValueError):
            add_days("bogus", 1)

    def test_inclusive_range(self) -> None:
        assert day_keys_inclusive("2025-12-31", "2026-01-02") == ["2025-12-31", "2026-01-01", "2026-01-02"]
        assert day_keys_inclusive("2026-01-05", "2026-01-05") == ["2026-01-05"]

    @pytest.mark.parametrize(
        ("start", "end"),
        [("2026-01-05", "2026-01-04"), ("2026-13-01", "2026-12-01"), ("2024-01-01", "2026-01-01")],
    )
    def test_invalid_ranges(self, start: str, end: str) -> None:
        with pytest.raises(ValueError):
            day_keys_inclusive(start, end)

    def test_lookback_start(self, now: datetime) -> None:
        assert lookback_start(1, now) == datetime(2026, 1, 16, tzinfo=UTC)
        assert lookback_start(30, now) == datetime(2025, 12, 18, tzinfo=UTC)


class TestUpsertDailyRollup:
    """Test suite for rollup merging."""

    def test_blank_user_keys_same_bucket(self) -> None:
        with_blank = DailyRollupKey("2026-01-16", "m", "w", "mc", "  ")
        without = DailyRollupKey("2026-01-16", "m", "w", "mc")

        assert rollup_map_key(with_blank) == rollup_map_key(without)
        assert rollup_map_key(DailyRollupKey("2026-01-16", "m", "w", "mc", "u1")) != rollup_map_key(without)

    def test_merging_twice_doubles_totals(self) -> None:
        key = DailyRollupKey("2026-01-16", "m", "w", "mc")
        value = DailyRollupValue(input_tokens=10, output_tokens=4, interactions=1)
        rollups: dict = {}

        upsert_daily_rollup(rollups, key, value)
        upsert_daily_rollup(rollups, key, value)

        (entry,) = rollups.values()
        assert (entry.value.input_tokens, entry.value.output_tokens, entry.value.interactions) == (20, 8, 2)
        assert value.input_tokens == 10

    def test_merge_is_order_independent(self) -> None:
        key = DailyRollupKey("2026-01-16", "m", "w", "mc")
        values = [DailyRollupValue(1, 2, 1), DailyRollupValue(5, 0, 0), DailyRollupValue(0, 7, 3)]
        forward: dict = {}
        backward: dict = {}

        for value in values:
            upsert_daily_rollup(forward, key, value)
        for value in reversed(values):
            upsert_daily_rollup(backward, key, value)

        assert list(forward.values())[0].value == list(backward.values())[0].value

    def test_fluency_metrics_merge(self) -> None:
        first = FluencyMetrics(ask_mode_count=2, tool_calls_json='{"read":1}', code_block_apply_rate=0.5)
        second = FluencyMetrics(ask_mode_count=3, tool_calls_json='{"read":2,"edit":1}', code_block_apply_rate=0.9)

        merged = merge_fluency_metrics(first, second)

        assert merged.ask_mode_count == 5
        assert merged.tool_calls_json == '{"read":3,"edit":1}'
        assert merged.code_block_apply_rate == 0.5
        assert first.ask_mode_count == 2


class TestAggregation:
    """Test suite for dimensional aggregation."""

    @pytest.fixture
    def entries(self) -> list:
        rollups: dict = {}
        upsert_daily_rollup(rollups, DailyRollupKey("2026-01-13", "a", "w1", "mc"), DailyRollupValue(1, 1, 1))
        upsert_daily_rollup(rollups, DailyRollupKey("2026-01-12", "b", "w1", "mc", "u1"), DailyRollupValue(2, 2, 1))
        upsert_daily_rollup(rollups, DailyRollupKey("2026-01-12", "a", "w2", "mc"), DailyRollupValue(4, 0, 2))
        return list(rollups.values())

    def test_by_model(self, entries: list) -> None:
        totals = aggregate_by_dimension(entries, "model")

        assert totals["a"].input_tokens == 5
        assert totals["b"].interactions == 1

    def test_missing_user_groups_as_unknown(self, entries: list) -> None:
        totals = aggregate_by_dimension(entries, "user_id")

        assert set(totals) == {"u1", "unknown"}
        assert totals["unknown"].interactions == 3

    def test_unknown_dimension_rejected(self, entries: list) -> None:
        with pytest.raises(ValueError):
            aggregate_by_dimension(entries, "colour")

    def test_filter(self, entries: list) -> None:
        assert len(filter_by_dimension(entries, "workspace_id", "w1")) == 2

    def test_iso_week_year_boundary(self) -> None:
        assert iso_week_key("2026-01-01") == "2026-W01"
        assert iso_week_key("2027-01-01") == "2026-W53"

    def test_by_week(self, entries: list) -> None:
        totals = aggregate_by_week(entries)

        assert list(totals) == ["2026-W03"]
        assert totals["2026-W03"].interactions == 4
