"""Data models for tokenledger.

Internal records (rollup keys and values, per-file metrics) are plain
dataclasses. Data crossing a trust boundary (cached session metrics, query
filters) is validated with Pydantic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokenledger.config import DEFAULT_LOOKBACK_DAYS, clamp_lookback_days

DEFAULT_MODEL = "gpt-4o"


# ============================================================================
# Rollups
# ============================================================================


@dataclass(frozen=True)
class DailyRollupKey:
    """Dimensions identifying one daily rollup bucket.

    A blank ``user_id`` is normalized to ``None`` so that it keys the same
    bucket as an absent user.
    """

    day: str
    model: str
    workspace_id: str
    machine_id: str
    user_id: str | None = None

    def __post_init__(self) -> None:
        user_id = (self.user_id or "").strip()
        object.__setattr__(self, "user_id", user_id or None)

    def get(self, dimension: str) -> str | None:
        """Return a dimension value by field name."""
        return getattr(self, dimension, None)


ROLLUP_DIMENSIONS = ("day", "model", "workspace_id", "machine_id", "user_id")


@dataclass
class FluencyMetrics:
    """Extended per-bucket usage-pattern metrics.

    Counts merge by addition. The ``*_json`` fields hold JSON-encoded counter
    maps that merge by adding numeric leaves. Rates and averages are kept
    from the first bucket that reported them.
    """

    ask_mode_count: int | None = None
    edit_mode_count: int | None = None
    agent_mode_count: int | None = None
    plan_mode_count: int | None = None
    custom_agent_mode_count: int | None = None
    tool_calls_json: str | None = None
    context_refs_json: str | None = None
    mcp_tools_json: str | None = None
    model_switching_json: str | None = None
    repo_customization_rate: float | None = None
    multi_turn_sessions: int | None = None
    avg_turns_per_session: float | None = None
    multi_file_edits: int | None = None
    avg_files_per_edit: float | None = None
    code_block_apply_rate: float | None = None
    session_count: int | None = None


FLUENCY_COUNT_FIELDS = (
    "ask_mode_count",
    "edit_mode_count",
    "agent_mode_count",
    "plan_mode_count",
    "custom_agent_mode_count",
    "multi_turn_sessions",
    "multi_file_edits",
    "session_count",
)
FLUENCY_JSON_FIELDS = (
    "tool_calls_json",
    "context_refs_json",
    "mcp_tools_json",
    "model_switching_json",
)
FLUENCY_RATE_FIELDS = (
    "repo_customization_rate",
    "avg_turns_per_session",
    "avg_files_per_edit",
    "code_block_apply_rate",
)


@dataclass
class DailyRollupValue:
    """Token and interaction totals for one bucket."""

    input_tokens: int = 0
    output_tokens: int = 0
    interactions: int = 0
    fluency_metrics: FluencyMetrics | None = None


@dataclass
class DailyRollupEntry:
    """A rollup key paired with its accumulated value."""

    key: DailyRollupKey
    value: DailyRollupValue


# ============================================================================
# Session metrics
# ============================================================================


@dataclass
class ModelUsage:
    """Input and output tokens attributed to one model."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class RequestUsage:
    """Usage of a single request inside a session file.

    Attributes:
        timestamp_ms: Request time in epoch milliseconds (None when unknown)
        model: Effective model id
        input_tokens: Estimated prompt tokens
        output_tokens: Estimated response tokens (thinking excluded)
        thinking_tokens: Estimated reasoning tokens
        is_interaction: Whether the request counts as a user interaction
    """

    timestamp_ms: float | None
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    thinking_tokens: int = 0
    is_interaction: bool = False


@dataclass
class SessionMetrics:
    """Parsed metrics of one session file.

    ``tokens`` includes thinking tokens while ``model_usage`` does not.
    """

    tokens: int = 0
    interactions: int = 0
    model_usage: dict[str, ModelUsage] = field(default_factory=dict)
    thinking_tokens: int = 0
    requests: list[RequestUsage] = field(default_factory=list)
    last_message_ms: float | None = None
    parse_failed: bool = False

    @classmethod
    def empty(cls) -> SessionMetrics:
        return cls()

    @classmethod
    def failed(cls) -> SessionMetrics:
        """Empty metrics for a file that could not be decoded."""
        return cls(parse_failed=True)


@dataclass(frozen=True)
class FileStat:
    """Filesystem metadata of a session file."""

    mtime_ms: float
    size: int


# ============================================================================
# Cached session metrics (validated)
# ============================================================================


class CachedModelUsage(BaseModel):
    """Per-model token counts in a cached session entry."""

    model_config = ConfigDict(strict=True, populate_by_name=True)

    input_tokens: float = Field(..., alias="inputTokens", ge=0, allow_inf_nan=False)
    output_tokens: float = Field(..., alias="outputTokens", ge=0, allow_inf_nan=False)


class CachedRequest(BaseModel):
    """One request of a cached session entry."""

    model_config = ConfigDict(strict=True, populate_by_name=True)

    timestamp_ms: float | None = Field(None, alias="timestampMs", gt=0, allow_inf_nan=False)
    model: str
    input_tokens: int = Field(0, alias="inputTokens", ge=0)
    output_tokens: int = Field(0, alias="outputTokens", ge=0)
    interaction: bool = False


class SessionFileCache(BaseModel):
    """Cached metrics of one session file, keyed by ``(path, mtime)``.

    Strict validation rejects strings, booleans, negative values, NaN and
    infinities so that a corrupt entry is treated as a cache miss. ``requests``
    is optional; entries without it only carry file totals.
    """

    model_config = ConfigDict(strict=True, populate_by_name=True)

    tokens: float = Field(..., ge=0, allow_inf_nan=False)
    interactions: float = Field(..., ge=0, allow_inf_nan=False)
    model_usage: dict[str, CachedModelUsage] = Field(default_factory=dict, alias="modelUsage")
    mtime: float = Field(..., ge=0, allow_inf_nan=False)
    requests: list[CachedRequest] | None = None

    def usage_by_model(self) -> dict[str, ModelUsage]:
        """Convert cached usage to integer ``ModelUsage`` records."""
        return {
            model: ModelUsage(int(usage.input_tokens), int(usage.output_tokens))
            for model, usage in self.model_usage.items()
        }

    def request_usage(self) -> list[RequestUsage] | None:
        """Return the cached request timeline, or None when it was not stored."""
        if self.requests is None:
            return None
        return [
            RequestUsage(
                timestamp_ms=request.timestamp_ms,
                model=request.model,
                input_tokens=request.input_tokens,
                output_tokens=request.output_tokens,
                is_interaction=request.interaction,
            )
            for request in self.requests
        ]


# ============================================================================
# Query
# ============================================================================


class QueryFilters(BaseModel):
    """Filters applied on the read path.

    ``lookback_days`` is clamped to [1, 90]. Dimension filters match exactly.
    """

    lookback_days: int = DEFAULT_LOOKBACK_DAYS
    model: str | None = None
    workspace_id: str | None = None
    machine_id: str | None = None
    user_id: str | None = None

    @field_validator("lookback_days", mode="before")
    @classmethod
    def clamp_lookback(cls, v: Any) -> int:
        return clamp_lookback_days(v)

    @field_validator("model", "workspace_id", "machine_id", "user_id", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> str | None:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    def dimension_filters(self) -> dict[str, str]:
        """Return the active exact-match filters by dimension name."""
        return {
            name: value
            for name in ("model", "workspace_id", "machine_id", "user_id")
            if (value := getattr(self, name)) is not None
        }


@dataclass
class RemoteEntity:
    """A decoded rollup row from the table store."""

    partition_key: str
    row_key: str
    schema_version: int | None
    dataset_id: str
    day: str
    model: str
    workspace_id: str
    machine_id: str
    input_tokens: int = 0
    output_tokens: int = 0
    interactions: int = 0
    updated_at: str = ""
    workspace_name: str | None = None
    machine_name: str | None = None
    user_id: str | None = None
    user_key_type: str | None = None
    share_with_team: bool | None = None
    consent_at: str | None = None
    fluency_metrics: FluencyMetrics | None = None


@dataclass
class QueryResult:
    """Aggregated view over decoded remote entities."""

    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_interactions: int = 0
    model_usage: dict[str, ModelUsage] = field(default_factory=dict)
    available_models: list[str] = field(default_factory=list)
    available_workspaces: list[str] = field(default_factory=list)
    available_machines: list[str] = field(default_factory=list)
    available_users: list[str] = field(default_factory=list)
    workspace_names: dict[str, str] = field(default_factory=dict)
    machine_names: dict[str, str] = field(default_factory=dict)
    workspace_token_totals: list[tuple[str, int]] = field(default_factory=list)
    machine_token_totals: list[tuple[str, int]] = field(default_factory=list)
    entity_count: int = 0

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens
