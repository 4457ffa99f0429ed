"""Table store client protocol."""

from __future__ import annotations

from collections.abc import AsyncIterator
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class UpsertMode(str, Enum):
    """How an upsert treats properties of an existing row.

    ``REPLACE`` drops properties missing from the new entity, ``MERGE`` keeps them.
    """

    MERGE = "Merge"
    REPLACE = "Replace"


@runtime_checkable
class TableStoreClient(Protocol):
    """Attribute-keyed table store holding rollup entities."""

    table_name: str

    def list_entities(self, partition_filter: str | None = None) -> AsyncIterator[dict[str, Any]]: ...

    async def upsert_entity(self, entity: dict[str, Any], mode: UpsertMode = UpsertMode.REPLACE) -> None: ...

    async def create_table_if_missing(self) -> None: ...

    async def table_exists(self) -> bool: ...
