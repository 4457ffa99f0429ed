"""Read path: list remote rollups for a window, filter and aggregate them."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from tokenledger.config import BackendSettings, QuerySettings, clamp_lookback_days
from tokenledger.models.schemas import ModelUsage, QueryFilters, QueryResult, RemoteEntity
from tokenledger.query.cache import QueryCache, query_cache_key
from tokenledger.rollups.daykeys import lookback_start, to_utc_day_key
from tokenledger.storage.data_plane import DataPlane

if TYPE_CHECKING:
    from tokenledger.storage.table_client import TableStoreClient

logger = logging.getLogger(__name__)


def matches_filters(entity: RemoteEntity, filters: dict[str, str]) -> bool:
    """Exact match on every active dimension filter."""
    return all(getattr(entity, name) == value for name, value in filters.items())


def _top_totals(totals: dict[str, int], limit: int) -> list[tuple[str, int]]:
    ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    return ranked[:limit]


def aggregate_entities(entities: Iterable[RemoteEntity], max_list_items: int = 50) -> QueryResult:
    """Aggregate decoded entities into totals, per-model usage and dimension lists.

    The first non-empty name seen for a workspace or machine wins.

    Args:
        entities: Decoded, already filtered entities
        max_list_items: Maximum rows in the workspace and machine token totals

    Returns:
        The aggregated result
    """
    result = QueryResult()
    models: set[str] = set()
    workspaces: set[str] = set()
    machines: set[str] = set()
    users: set[str] = set()
    workspace_totals: dict[str, int] = {}
    machine_totals: dict[str, int] = {}

    for entity in entities:
        result.entity_count += 1
        result.total_input_tokens += entity.input_tokens
        result.total_output_tokens += entity.output_tokens
        result.total_interactions += entity.interactions

        usage = result.model_usage.setdefault(entity.model, ModelUsage())
        usage.input_tokens += entity.input_tokens
        usage.output_tokens += entity.output_tokens

        models.add(entity.model)
        workspaces.add(entity.workspace_id)
        machines.add(entity.machine_id)
        if entity.user_id:
            users.add(entity.user_id)

        if entity.workspace_name and entity.workspace_id not in result.workspace_names:
            result.workspace_names[entity.workspace_id] = entity.workspace_name
        if entity.machine_name and entity.machine_id not in result.machine_names:
            result.machine_names[entity.machine_id] = entity.machine_name

        tokens = entity.input_tokens + entity.output_tokens
        workspace_totals[entity.workspace_id] = workspace_totals.get(entity.workspace_id, 0) + tokens
        machine_totals[entity.machine_id] = machine_totals.get(entity.machine_id, 0) + tokens

    result.available_models = sorted(models)
    result.available_workspaces = sorted(workspaces)
    result.available_machines = sorted(machines)
    result.available_users = sorted(users)
    result.workspace_token_totals = _top_totals(workspace_totals, max_list_items)
    result.machine_token_totals = _top_totals(machine_totals, max_list_items)
    return result


class QueryService:
    """Cached aggregate reads from the rollup table."""

    def __init__(
        self,
        backend: BackendSettings,
        settings: QuerySettings,
        client: TableStoreClient,
        data_plane: DataPlane | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self.client = client
        self.data_plane = data_plane or DataPlane(secrets=backend.secrets_to_redact())
        self.cache = QueryCache(settings.cache_ttl_seconds, clock)
        self._filters = QueryFilters(lookback_days=backend.lookback_days)

    @property
    def filters(self) -> QueryFilters:
        return self._filters

    def set_filters(self, **changes: Any) -> QueryFilters:
        """Update filters and drop the cached result.

        ``lookback_days`` is clamped to [1, 90]; other keys are dimension
        filters where a blank value clears the filter.
        """
        data = self._filters.model_dump()
        data.update(changes)
        if "lookback_days" in changes:
            data["lookback_days"] = clamp_lookback_days(changes["lookback_days"])
        self._filters = QueryFilters(**data)
        self.cache.invalidate()
        return self._filters

    def invalidate(self) -> None:
        self.cache.invalidate()

    async def query_rollups(self, now: datetime | None = None, force: bool = False) -> QueryResult:
        """Aggregate remote rollups for the current filters.

        Args:
            now: Reference time (defaults to the current UTC time)
            force: Bypass the cached result

        Returns:
            Aggregated result for the lookback window ending today
        """
        now = now or datetime.now(UTC)
        filters = self._filters
        start_day = to_utc_day_key(lookback_start(filters.lookback_days, now))
        end_day = to_utc_day_key(now)
        key = query_cache_key(
            self.backend.storage_account or "",
            self.client.table_name,
            self.backend.dataset_id,
            start_day,
            end_day,
            filters,
        )

        if not force:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("Query served from cache")
                return cached

        entities = await self.data_plane.list_entities_for_range(
            self.client, self.backend.dataset_id, start_day, end_day
        )
        active = filters.dimension_filters()
        result = aggregate_entities(
            (entity for entity in entities if matches_filters(entity, active)),
            self.settings.max_list_items,
        )
        logger.info(
            f"Query {start_day}..{end_day}: {result.entity_count} of {len(entities)} entities, "
            f"{result.total_tokens} tokens"
        )
        self.cache.put(key, result)
        return result
