"""Data plane operations on the rollup table: range reads and batched upserts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from tokenledger.errors import safe_stringify_error
from tokenledger.models.schemas import RemoteEntity
from tokenledger.monitoring.metrics import entities_upserted_total, query_entities_decoded_total
from tokenledger.resilience.retry import RetryPolicy, call_with_retry
from tokenledger.rollups.daykeys import day_keys_inclusive
from tokenledger.storage.codec import build_odata_eq_filter, build_partition_key, decode_entity
from tokenledger.storage.table_client import TableStoreClient, UpsertMode

logger = logging.getLogger(__name__)


@dataclass
class UpsertReport:
    """Outcome of a batch upsert."""

    success_count: int = 0
    errors: list[tuple[dict[str, Any], str]] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors)


class DataPlane:
    """Read and write rollup entities with timeouts and transient-error retries."""

    def __init__(
        self,
        write_policy: RetryPolicy | None = None,
        read_policy: RetryPolicy | None = None,
        secrets: list[str] | None = None,
    ) -> None:
        """Initialize data plane.

        Args:
            write_policy: Retry policy for upserts (default 60 s timeout)
            read_policy: Retry policy for reads (default 30 s timeout)
            secrets: Secrets to redact from logged errors
        """
        self.write_policy = write_policy or RetryPolicy(timeout=60.0)
        self.read_policy = read_policy or RetryPolicy(timeout=30.0)
        self.secrets = secrets or []

    async def list_partition(
        self,
        client: TableStoreClient,
        partition_key: str,
        default_day: str,
    ) -> list[RemoteEntity]:
        """List and decode one partition; entities missing dimensions are dropped."""

        async def _collect() -> list[dict[str, Any]]:
            filter_expr = build_odata_eq_filter("PartitionKey", partition_key)
            return [entity async for entity in client.list_entities(filter_expr)]

        raw_entities = await call_with_retry("list_entities", _collect, self.read_policy)

        decoded: list[RemoteEntity] = []
        for raw in raw_entities:
            entity = decode_entity(raw, default_day)
            if entity is None:
                query_entities_decoded_total.labels(status="rejected").inc()
                continue
            query_entities_decoded_total.labels(status="accepted").inc()
            decoded.append(entity)
        return decoded

    async def list_entities_for_range(
        self,
        client: TableStoreClient,
        dataset_id: str,
        start_day: str,
        end_day: str,
    ) -> list[RemoteEntity]:
        """List decoded entities for every day partition in ``[start_day, end_day]``."""
        entities: list[RemoteEntity] = []
        for day in day_keys_inclusive(start_day, end_day):
            partition_key = build_partition_key(dataset_id, day)
            entities.extend(await self.list_partition(client, partition_key, day))
        logger.debug(f"Listed {len(entities)} entities for {start_day}..{end_day}")
        return entities

    async def upsert_entities(
        self,
        client: TableStoreClient,
        entities: list[dict[str, Any]],
        mode: UpsertMode = UpsertMode.REPLACE,
    ) -> UpsertReport:
        """Upsert entities one by one, grouped by partition.

        A failing entity is recorded and does not stop the rest of the batch.
        """
        report = UpsertReport()
        by_partition: dict[str, list[dict[str, Any]]] = {}
        for entity in entities:
            by_partition.setdefault(entity["PartitionKey"], []).append(entity)

        for partition_key, partition_entities in by_partition.items():
            for entity in partition_entities:
                try:
                    await call_with_retry(
                        "upsert_entity",
                        lambda entity=entity: client.upsert_entity(entity, mode),
                        self.write_policy,
                    )
                except Exception as e:
                    message = safe_stringify_error(e, self.secrets)
                    report.errors.append((entity, message))
                    entities_upserted_total.labels(status="error").inc()
                    logger.warning(f"Failed to upsert entity in partition {partition_key}: {message}")
                    continue
                report.success_count += 1
                entities_upserted_total.labels(status="success").inc()

        return report
