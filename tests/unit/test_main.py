"""Tests for application wiring and lifecycle."""

from __future__ import annotations

import signal
from pathlib import Path

import pytest

from tokenledger.config import SessionSettings, TokenLedgerConfig
from tokenledger.errors import TokenLedgerError
from tokenledger.main import TokenLedgerApplication, default_machine_id


@pytest.fixture
def config(backend_settings, sync_settings, tmp_path: Path) -> TokenLedgerConfig:
    return TokenLedgerConfig(
        backend=backend_settings,
        sync=sync_settings,
        sessions=SessionSettings(roots=[tmp_path], machine_id="box-1"),
    )


class TestTokenLedgerApplication:
    """Test suite for TokenLedgerApplication."""

    def test_default_machine_id_is_stable(self) -> None:
        assert default_machine_id() == default_machine_id()
        assert len(default_machine_id()) == 16

    @pytest.mark.asyncio
    async def test_initialize_wires_services(self, config, table_store) -> None:
        ledger = TokenLedgerApplication(config, store=table_store)

        await ledger.initialize()

        assert ledger.builder is not None and ledger.builder.machine_id == "box-1"
        assert ledger.sync is not None and ledger.sync.client is table_store
        assert ledger.query is not None
        await ledger.dispose()
        assert table_store.conn is not None

    @pytest.mark.asyncio
    async def test_sync_invalidates_query_cache(self, config, table_store) -> None:
        ledger = TokenLedgerApplication(config, store=table_store)
        await ledger.initialize()
        assert ledger.query is not None and ledger.sync is not None

        await ledger.query.query_rollups()
        await ledger.sync.sync(force=True)

        assert ledger.query.cache._result is None
        await ledger.dispose()

    @pytest.mark.asyncio
    async def test_owned_store_closed_on_dispose(self, config) -> None:
        ledger = TokenLedgerApplication(config)
        await ledger.initialize()
        store = ledger.store

        await ledger.dispose()

        assert store is not None and store.conn is None

    @pytest.mark.asyncio
    async def test_shutdown_signal_sets_event(self, config, table_store) -> None:
        ledger = TokenLedgerApplication(config, store=table_store)

        ledger._handle_shutdown(signal.SIGTERM)

        assert ledger.shutdown_event.is_set()

    def test_services_before_initialize_raises(self, config) -> None:
        ledger = TokenLedgerApplication(config)

        with pytest.raises(TokenLedgerError):
            ledger.services()

    @pytest.mark.asyncio
    async def test_run_starts_metrics_server(self, config, table_store, monkeypatch) -> None:
        ports: list[int] = []
        monkeypatch.setattr("tokenledger.main.start_metrics_server", ports.append)
        monkeypatch.setattr("tokenledger.main.signal.signal", lambda *args: None)
        config.metrics_port = 9999
        ledger = TokenLedgerApplication(config, store=table_store)
        ledger.shutdown_event.set()

        await ledger.run()

        assert ports == [9999]

    @pytest.mark.asyncio
    async def test_run_without_metrics(self, config, table_store, monkeypatch) -> None:
        ports: list[int] = []
        monkeypatch.setattr("tokenledger.main.start_metrics_server", ports.append)
        monkeypatch.setattr("tokenledger.main.signal.signal", lambda *args: None)
        config.metrics_enabled = False
        ledger = TokenLedgerApplication(config, store=table_store)
        ledger.shutdown_event.set()

        await ledger.run()

        assert ports == []
