"""Pytest configuration and fixtures for tokenledger tests."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from tokenledger.config import BackendSettings, SyncSettings
from tokenledger.models.schemas import FileStat
from tokenledger.storage.duckdb_store import DuckDBTableStore

NOW = datetime(2026, 1, 16, 12, 0, tzinfo=UTC)


def ms(moment: datetime) -> float:
    return moment.timestamp() * 1000


class InMemorySessionFiles:
    """File enumerator and provider backed by a dict of ``path -> (mtime_ms, content)``."""

    def __init__(self, files: dict[str, tuple[float, bytes | str]] | None = None) -> None:
        self.files: dict[str, tuple[float, bytes]] = {}
        self.reads: list[str] = []
        for path, (mtime_ms, content) in (files or {}).items():
            self.add(path, mtime_ms, content)

    def add(self, path: str, mtime_ms: float, content: bytes | str | dict | list) -> None:
        if isinstance(content, (dict, list)):
            content = json.dumps(content)
        if isinstance(content, str):
            content = content.encode("utf-8")
        self.files[path] = (mtime_ms, content)

    async def list_files(self) -> list[str]:
        return sorted(p for p in self.files if not p.endswith(("workspace.json", "meta.json")))

    async def stat(self, path: str) -> FileStat:
        if path not in self.files:
            raise FileNotFoundError(path)
        mtime_ms, content = self.files[path]
        return FileStat(mtime_ms=mtime_ms, size=len(content))

    async def read(self, path: str) -> bytes:
        if path not in self.files:
            raise FileNotFoundError(path)
        self.reads.append(path)
        return self.files[path][1]


@pytest.fixture
def now() -> datetime:
    """Fixed reference time (2026-01-16 12:00 UTC)."""
    return NOW


@pytest.fixture
def length_estimate():
    """Token estimator counting one token per character."""

    def _estimate(text: str, model: str) -> int:
        return len(text)

    return _estimate


@pytest.fixture
def session_files() -> InMemorySessionFiles:
    return InMemorySessionFiles()


@pytest.fixture
async def table_store() -> DuckDBTableStore:
    """Fresh in-memory table store for each test."""
    store = DuckDBTableStore("usageAggDaily", database_path=":memory:")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def backend_settings() -> BackendSettings:
    """Backend settings addressing a store, sharing as teamAnonymized."""
    return BackendSettings(
        enabled=True,
        dataset_id="team-a",
        sharing_profile="teamAnonymized",
        subscription_id="sub-1",
        resource_group="rg-1",
        storage_account="acct1",
        agg_table="usageAggDaily",
        shared_key="super-secret-key",
    )


@pytest.fixture
def sync_settings() -> SyncSettings:
    """Sync settings with fast retries."""
    return SyncSettings(retry_base_delay_seconds=0, max_retry_attempts=1)


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    """Point the default data directory at the test's temporary directory."""
    data_dir = tmp_path / "user-data"
    monkeypatch.setenv("XDG_DATA_HOME", str(data_dir))
    monkeypatch.setenv("LOCALAPPDATA", str(data_dir))
    return data_dir
