"""Daily rollup merging and dimensional aggregation.

Rollups live in a plain ``dict`` keyed by :func:`rollup_map_key`. Merging is
field-wise addition, so folding the same contribution twice doubles the
totals and folding in a different order gives the same result.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable
from dataclasses import replace
from datetime import date
from typing import Any

from tokenledger.models.schemas import (
    FLUENCY_COUNT_FIELDS,
    FLUENCY_JSON_FIELDS,
    FLUENCY_RATE_FIELDS,
    ROLLUP_DIMENSIONS,
    DailyRollupEntry,
    DailyRollupKey,
    DailyRollupValue,
    FluencyMetrics,
)

logger = logging.getLogger(__name__)

RollupMap = dict[str, DailyRollupEntry]

UNKNOWN_DIMENSION = "unknown"


def rollup_map_key(key: DailyRollupKey) -> str:
    """Build the canonical map key for a rollup.

    Fields are serialized in a fixed order and a blank user id is omitted, so
    keys with and without an empty user id collide.
    """
    user_id = (key.user_id or "").strip()
    payload: dict[str, Any] = {
        "day": key.day,
        "model": key.model,
        "workspaceId": key.workspace_id,
        "machineId": key.machine_id,
    }
    if user_id:
        payload["userId"] = user_id
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _merge_counter_json(existing: str | None, incoming: str) -> str:
    """Merge two JSON counter maps by adding numeric leaves (one level deep)."""
    try:
        current = json.loads(existing) if existing else {}
        update = json.loads(incoming)
    except ValueError:
        return incoming
    if not isinstance(current, dict) or not isinstance(update, dict):
        return incoming

    merged = dict(current)
    for name, value in update.items():
        if _is_number(value):
            merged[name] = (merged.get(name) if _is_number(merged.get(name)) else 0) + value
        elif isinstance(value, dict) and isinstance(merged.get(name), dict):
            nested = dict(merged[name])
            for sub_name, sub_value in value.items():
                if _is_number(sub_value):
                    base = nested.get(sub_name)
                    nested[sub_name] = (base if _is_number(base) else 0) + sub_value
                else:
                    nested[sub_name] = sub_value
            merged[name] = nested
        else:
            merged[name] = value
    return json.dumps(merged, separators=(",", ":"))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def merge_fluency_metrics(
    existing: FluencyMetrics | None,
    incoming: FluencyMetrics | None,
) -> FluencyMetrics | None:
    """Additively merge two extended-metrics blocks into a new block."""
    if incoming is None:
        return existing
    if existing is None:
        return replace(incoming)

    merged = replace(existing)
    for name in FLUENCY_COUNT_FIELDS:
        value = getattr(incoming, name)
        if value is not None:
            setattr(merged, name, (getattr(merged, name) or 0) + value)
    for name in FLUENCY_JSON_FIELDS:
        value = getattr(incoming, name)
        if value:
            setattr(merged, name, _merge_counter_json(getattr(merged, name), value))
    for name in FLUENCY_RATE_FIELDS:
        if getattr(merged, name) is None and getattr(incoming, name) is not None:
            setattr(merged, name, getattr(incoming, name))
    return merged


def upsert_daily_rollup(rollups: RollupMap, key: DailyRollupKey, value: DailyRollupValue) -> None:
    """Add ``value`` into the bucket for ``key``, creating it if needed.

    The incoming value is copied on insert so later merges never mutate the
    caller's object.
    """
    map_key = rollup_map_key(key)
    existing = rollups.get(map_key)

    if existing is None:
        rollups[map_key] = DailyRollupEntry(
            key=replace(key),
            value=DailyRollupValue(
                input_tokens=value.input_tokens,
                output_tokens=value.output_tokens,
                interactions=value.interactions,
                fluency_metrics=replace(value.fluency_metrics) if value.fluency_metrics else None,
            ),
        )
        return

    existing.value.input_tokens += value.input_tokens
    existing.value.output_tokens += value.output_tokens
    existing.value.interactions += value.interactions
    existing.value.fluency_metrics = merge_fluency_metrics(
        existing.value.fluency_metrics, value.fluency_metrics
    )


def _check_dimension(dimension: str) -> None:
    if dimension not in ROLLUP_DIMENSIONS:
        raise ValueError(f"Unknown rollup dimension: {dimension!r}")


def aggregate_by_dimension(
    rollups: Iterable[DailyRollupEntry],
    dimension: str,
) -> dict[str, DailyRollupValue]:
    """Sum rollups grouped by one key dimension.

    Args:
        rollups: Rollup entries
        dimension: One of day, model, workspace_id, machine_id, user_id

    Returns:
        Totals by dimension value (missing or empty values group as ``unknown``)
    """
    _check_dimension(dimension)
    result: dict[str, DailyRollupValue] = {}
    for entry in rollups:
        raw = entry.key.get(dimension)
        group = str(raw) if raw not in (None, "") else UNKNOWN_DIMENSION
        totals = result.setdefault(group, DailyRollupValue())
        totals.input_tokens += entry.value.input_tokens
        totals.output_tokens += entry.value.output_tokens
        totals.interactions += entry.value.interactions
    return result


def filter_by_dimension(
    rollups: Iterable[DailyRollupEntry],
    dimension: str,
    value: str,
) -> list[DailyRollupEntry]:
    """Keep only rollups whose dimension equals ``value`` exactly."""
    _check_dimension(dimension)
    return [entry for entry in rollups if entry.key.get(dimension) == value]


def iso_week_key(day_key: str) -> str:
    """Convert ``YYYY-MM-DD`` to an ISO-8601 week key ``YYYY-Www``.

    The year is the ISO week-numbering year, which differs from the calendar
    year around New Year.
    """
    iso_year, week, _ = date.fromisoformat(day_key).isocalendar()
    return f"{iso_year}-W{week:02d}"


def aggregate_by_week(rollups: Iterable[DailyRollupEntry]) -> dict[str, DailyRollupValue]:
    """Sum rollups per ISO week."""
    result: dict[str, DailyRollupValue] = {}
    for entry in rollups:
        totals = result.setdefault(iso_week_key(entry.key.day), DailyRollupValue())
        totals.input_tokens += entry.value.input_tokens
        totals.output_tokens += entry.value.output_tokens
        totals.interactions += entry.value.interactions
    return result
