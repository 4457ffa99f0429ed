"""Table entity codec for daily rollups.

Entities are flat attribute maps. ``PartitionKey`` groups one dataset-day and
``RowKey`` is built from the rollup dimensions, so re-running a sync for the
same bucket rewrites the same row.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from dataclasses import fields
from datetime import UTC, datetime
from typing import Any

from tokenledger.models.schemas import DailyRollupKey, DailyRollupValue, FluencyMetrics, RemoteEntity

logger = logging.getLogger(__name__)

SCHEMA_VERSION_NO_USER = 1
SCHEMA_VERSION_WITH_USER = 2
SCHEMA_VERSION_WITH_USER_AND_CONSENT = 3
SCHEMA_VERSION_WITH_FLUENCY = 4

KEY_UNSAFE_PATTERN = re.compile(r"[/\\#?\x00-\x1f\x7f-\x9f]")

FILTERABLE_FIELDS = frozenset({"PartitionKey", "RowKey", "model", "workspaceId", "machineId", "userId"})

# FluencyMetrics attribute -> entity property
FLUENCY_PROPERTIES = {
    f.name: "".join(part.capitalize() if i else part for i, part in enumerate(f.name.split("_")))
    for f in fields(FluencyMetrics)
}


def sanitize_table_key(value: str) -> str:
    """Replace ``/ \\ # ?`` and control characters with ``_``."""
    if not value:
        return value
    return KEY_UNSAFE_PATTERN.sub("_", value)


def build_partition_key(dataset_id: str, day: str) -> str:
    return sanitize_table_key(f"ds:{dataset_id}|d:{day}")


def build_row_key(key: DailyRollupKey) -> str:
    parts = [f"m:{key.model}", f"w:{key.workspace_id}", f"mc:{key.machine_id}"]
    user_id = (key.user_id or "").strip()
    if user_id:
        parts.append(f"u:{user_id}")
    return sanitize_table_key("|".join(parts))


def day_from_partition_key(partition_key: str) -> str | None:
    """Extract the ``d:`` day component of a partition key."""
    for part in (partition_key or "").split("|"):
        if part.startswith("d:") and len(part) > 2:
            return part[2:]
    return None


def build_odata_eq_filter(field: str, value: str) -> str:
    """Build an equality filter for one allowed field.

    Raises:
        ValueError: If ``field`` is not filterable
    """
    if field not in FILTERABLE_FIELDS:
        raise ValueError(f"Invalid filter field: {field}")
    escaped = str(value).replace("'", "''")
    return f"{field} eq '{escaped}'"


def validate_consent_timestamp(value: str | None, now: datetime | None = None) -> str | None:
    """Normalize a consent timestamp to ISO-8601 UTC.

    Returns:
        The normalized timestamp, or None when missing, unparsable or in the future
    """
    if not value or not str(value).strip():
        return None
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring consent timestamp that is not a valid date")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    if parsed > (now or datetime.now(UTC)):
        logger.warning("Ignoring consent timestamp in the future")
        return None
    return _iso(parsed)


def _iso(moment: datetime) -> str:
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _encode_fluency(metrics: FluencyMetrics) -> dict[str, Any]:
    encoded: dict[str, Any] = {}
    for name, prop in FLUENCY_PROPERTIES.items():
        value = getattr(metrics, name)
        if value is not None:
            encoded[prop] = value
    return encoded


def encode_entity(
    dataset_id: str,
    key: DailyRollupKey,
    value: DailyRollupValue,
    workspace_name: str | None = None,
    machine_name: str | None = None,
    user_key_type: str | None = None,
    share_with_team: bool = False,
    consent_at: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Encode one rollup as a table entity.

    The schema version is derived from the content: 1 without a user, 2 with a
    user, 3 with a user plus consent metadata, and 4 whenever extended metrics
    are attached. Consent metadata is only written alongside a user.
    """
    now = now or datetime.now(UTC)
    user_id = (key.user_id or "").strip()
    with_consent = bool(user_id) and share_with_team

    if with_consent:
        schema_version = SCHEMA_VERSION_WITH_USER_AND_CONSENT
    elif user_id:
        schema_version = SCHEMA_VERSION_WITH_USER
    else:
        schema_version = SCHEMA_VERSION_NO_USER

    fluency = _encode_fluency(value.fluency_metrics) if value.fluency_metrics else {}
    if fluency:
        schema_version = SCHEMA_VERSION_WITH_FLUENCY

    entity: dict[str, Any] = {
        "PartitionKey": build_partition_key(dataset_id, key.day),
        "RowKey": build_row_key(key),
        "schemaVersion": schema_version,
        "datasetId": dataset_id,
        "day": key.day,
        "model": key.model,
        "workspaceId": key.workspace_id,
        "machineId": key.machine_id,
    }
    if workspace_name and workspace_name.strip():
        entity["workspaceName"] = workspace_name
    if machine_name and machine_name.strip():
        entity["machineName"] = machine_name
    if user_id:
        entity["userId"] = user_id
    if with_consent:
        if user_key_type:
            entity["userKeyType"] = user_key_type
        entity["shareWithTeam"] = True
        consent = validate_consent_timestamp(consent_at, now)
        if consent:
            entity["consentAt"] = consent

    entity.update(
        {
            "inputTokens": value.input_tokens,
            "outputTokens": value.output_tokens,
            "interactions": value.interactions,
            "updatedAt": _iso(now),
        }
    )
    entity.update(fluency)
    return entity


def _clamp_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if not math.isfinite(value) or value < 0:
        return 0
    return int(value)


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _optional_name(value: Any) -> str | None:
    return value if isinstance(value, str) and value.strip() else None


def _decode_fluency(raw: Mapping[str, Any]) -> FluencyMetrics | None:
    values: dict[str, Any] = {}
    for name, prop in FLUENCY_PROPERTIES.items():
        value = raw.get(prop)
        if name.endswith("_json"):
            if isinstance(value, str) and value:
                values[name] = value
        elif isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
            values[name] = max(value, 0)
    return FluencyMetrics(**values) if values else None


def decode_entity(raw: Mapping[str, Any], default_day: str | None = None) -> RemoteEntity | None:
    """Decode a table entity defensively.

    Args:
        raw: Entity properties as returned by the store
        default_day: Day used when the entity has none (defaults to the partition's day)

    Returns:
        The decoded entity, or None if model, workspace or machine is missing
    """
    partition_key = _text(raw.get("PartitionKey", raw.get("partitionKey")))
    day = _text(raw.get("day")) or default_day or day_from_partition_key(partition_key) or ""

    model = _text(raw.get("model"))
    workspace_id = _text(raw.get("workspaceId"))
    machine_id = _text(raw.get("machineId"))
    if not (model and workspace_id and machine_id):
        return None

    schema_version = raw.get("schemaVersion")
    share_with_team = raw.get("shareWithTeam")

    return RemoteEntity(
        partition_key=partition_key,
        row_key=_text(raw.get("RowKey", raw.get("rowKey"))),
        schema_version=(
            int(schema_version)
            if isinstance(schema_version, (int, float)) and not isinstance(schema_version, bool)
            and math.isfinite(schema_version)
            else None
        ),
        dataset_id=_text(raw.get("datasetId")),
        day=day,
        model=model,
        workspace_id=workspace_id,
        machine_id=machine_id,
        input_tokens=_clamp_count(raw.get("inputTokens")),
        output_tokens=_clamp_count(raw.get("outputTokens")),
        interactions=_clamp_count(raw.get("interactions")),
        updated_at=_text(raw.get("updatedAt")) or _iso(datetime.now(UTC)),
        workspace_name=_optional_name(raw.get("workspaceName")),
        machine_name=_optional_name(raw.get("machineName")),
        user_id=_text(raw.get("userId")) or None,
        user_key_type=_text(raw.get("userKeyType")) or None,
        share_with_team=share_with_team if isinstance(share_with_team, bool) else None,
        consent_at=_text(raw.get("consentAt")) or None,
        fluency_metrics=_decode_fluency(raw),
    )
