"""tokenledger storage layer."""

from tokenledger.storage.codec import (
    build_odata_eq_filter,
    build_partition_key,
    build_row_key,
    decode_entity,
    encode_entity,
    sanitize_table_key,
)
from tokenledger.storage.data_plane import DataPlane, UpsertReport
from tokenledger.storage.duckdb_store import DuckDBTableStore
from tokenledger.storage.table_client import TableStoreClient, UpsertMode

__all__ = [
    "DataPlane",
    "DuckDBTableStore",
    "TableStoreClient",
    "UpsertMode",
    "UpsertReport",
    "build_odata_eq_filter",
    "build_partition_key",
    "build_row_key",
    "decode_entity",
    "encode_entity",
    "sanitize_table_key",
]
