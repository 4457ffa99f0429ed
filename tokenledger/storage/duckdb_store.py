"""DuckDB-backed table store.

Stores entities as JSON documents keyed by ``(PartitionKey, RowKey)`` in one
DuckDB table per logical table name. Works in memory or on a file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import duckdb

from tokenledger.errors import ProvisioningBlockedError
from tokenledger.storage.table_client import UpsertMode

logger = logging.getLogger(__name__)

TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9]{2,62}$")
FILTER_CLAUSE_PATTERN = re.compile(r"(\w+) eq '((?:[^']|'')*)'(?:\s+and\s+|\s*$)")
KEY_COLUMNS = {"PartitionKey": "partition_key", "RowKey": "row_key"}


def parse_eq_filter(expression: str | None) -> list[tuple[str, str]]:
    """Parse ``field eq 'value'`` clauses joined by ``and``.

    Raises:
        ValueError: For expressions outside that subset
    """
    if not expression or not expression.strip():
        return []
    text = expression.strip()
    clauses: list[tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        match = FILTER_CLAUSE_PATTERN.match(text, pos)
        if match is None:
            raise ValueError(f"Unsupported filter expression: {expression!r}")
        clauses.append((match.group(1), match.group(2).replace("''", "'")))
        pos = match.end()
    return clauses


class DuckDBTableStore:
    """Table store with DuckDB storage.

    Example:
        >>> store = DuckDBTableStore("usageAggDaily")
        >>> await store.initialize()
        >>> await store.create_table_if_missing()
    """

    def __init__(
        self,
        table_name: str,
        database_path: str | Path = ":memory:",
        allow_create: bool = True,
    ) -> None:
        """Initialize table store.

        Args:
            table_name: Logical table name (letters and digits, 3-63 chars)
            database_path: DuckDB database path (":memory:" for in-memory)
            allow_create: When False, table creation is refused as if blocked by policy
        """
        if not TABLE_NAME_PATTERN.match(table_name):
            raise ValueError(f"Invalid table name: {table_name!r}")
        self.table_name = table_name
        self.db_path = database_path
        self.allow_create = allow_create
        self.conn: duckdb.DuckDBPyConnection | None = None
        self._lock = asyncio.Lock()

    @property
    def _sql_table(self) -> str:
        return f"tbl_{self.table_name}"

    @property
    def in_memory(self) -> bool:
        return str(self.db_path) == ":memory:"

    async def initialize(self) -> None:
        """Open the database connection, creating the parent directory of a file store."""
        async with self._lock:
            if self.conn is None:
                if not self.in_memory:
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                self.conn = duckdb.connect(str(self.db_path))
                logger.info(f"Table store opened for '{self.table_name}'")

    async def close(self) -> None:
        async with self._lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None
                logger.info("Table store closed")

    def _require_conn(self) -> duckdb.DuckDBPyConnection:
        if self.conn is None:
            raise RuntimeError("Table store not initialized")
        return self.conn

    def _exists(self, conn: duckdb.DuckDBPyConnection) -> bool:
        row = conn.execute(
            "SELECT COUNT(*) FROM information_schema.tables WHERE lower(table_name) = lower(?)",
            [self._sql_table],
        ).fetchone()
        return bool(row and row[0])

    async def table_exists(self) -> bool:
        async with self._lock:
            return self._exists(self._require_conn())

    async def create_table_if_missing(self) -> None:
        """Create the backing table.

        Raises:
            ProvisioningBlockedError: If creation is not allowed, whether or not
                the table already exists
        """
        async with self._lock:
            conn = self._require_conn()
            if not self.allow_create:
                raise ProvisioningBlockedError(
                    "RequestDisallowedByPolicy: table creation is disabled for this store",
                    details={"table": self.table_name},
                )
            if self._exists(conn):
                return
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self._sql_table} (
                    partition_key VARCHAR NOT NULL,
                    row_key VARCHAR NOT NULL,
                    properties VARCHAR NOT NULL,
                    PRIMARY KEY (partition_key, row_key)
                )
            """)
            logger.info(f"Created table '{self.table_name}'")

    async def upsert_entity(
        self,
        entity: dict[str, Any],
        mode: UpsertMode = UpsertMode.REPLACE,
    ) -> None:
        """Insert or update one entity.

        Args:
            entity: Entity properties including PartitionKey and RowKey
            mode: Replace the stored properties or merge into them
        """
        partition_key = entity.get("PartitionKey")
        row_key = entity.get("RowKey")
        if not isinstance(partition_key, str) or not isinstance(row_key, str):
            raise ValueError("Entity requires string PartitionKey and RowKey")

        async with self._lock:
            conn = self._require_conn()
            properties = dict(entity)
            if mode is UpsertMode.MERGE:
                row = conn.execute(
                    f"SELECT properties FROM {self._sql_table} WHERE partition_key = ? AND row_key = ?",
                    [partition_key, row_key],
                ).fetchone()
                if row is not None:
                    properties = {**json.loads(row[0]), **entity}

            conn.execute(
                f"INSERT OR REPLACE INTO {self._sql_table} VALUES (?, ?, ?)",
                [partition_key, row_key, json.dumps(properties)],
            )

    async def list_entities(self, partition_filter: str | None = None) -> AsyncIterator[dict[str, Any]]:
        """Yield entities matching an equality filter.

        Args:
            partition_filter: ``field eq 'value'`` clauses joined by ``and``
        """
        clauses = parse_eq_filter(partition_filter)
        where: list[str] = []
        params: list[str] = []
        property_clauses: list[tuple[str, str]] = []
        for field, value in clauses:
            if field in KEY_COLUMNS:
                where.append(f"{KEY_COLUMNS[field]} = ?")
                params.append(value)
            else:
                property_clauses.append((field, value))

        query = f"SELECT properties FROM {self._sql_table}"
        if where:
            query += " WHERE " + " AND ".join(where)
        query += " ORDER BY partition_key, row_key"

        async with self._lock:
            conn = self._require_conn()
            if not self._exists(conn):
                logger.debug(f"Table '{self.table_name}' does not exist; nothing to list")
                return
            rows = conn.execute(query, params).fetchall()

        for (raw,) in rows:
            entity = json.loads(raw)
            if all(str(entity.get(f, "")) == v for f, v in property_clauses):
                yield entity
