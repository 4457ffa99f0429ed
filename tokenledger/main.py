"""tokenledger application wiring and lifecycle."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import signal
import socket
from typing import Any

from tokenledger.config import TokenLedgerConfig, get_config
from tokenledger.errors import TokenLedgerError
from tokenledger.monitoring.metrics import start_metrics_server
from tokenledger.observability.redaction import RedactingFilter, install_redaction
from tokenledger.query.service import QueryService
from tokenledger.rollups.builder import RollupBuilder, local_machine_name
from tokenledger.sources.files import LocalSessionFiles, MemorySessionCache
from tokenledger.storage.duckdb_store import DuckDBTableStore
from tokenledger.sync.service import SyncService

logger = logging.getLogger(__name__)


def default_machine_id() -> str:
    """Stable identifier for this machine derived from its hostname."""
    hostname = socket.gethostname().strip().lower() or "localhost"
    return hashlib.sha256(f"machine:{hostname}".encode()).hexdigest()[:16]


class TokenLedgerApplication:
    """tokenledger application with lifecycle management.

    Collaborators are created in ``initialize()`` and released in
    ``dispose()``. Tests may pass a pre-built ``store`` to share one table
    store between applications.

    Attributes:
        config: Loaded configuration
        store: Table store holding the rollup table
        session_files: Local session discovery and file access
        session_cache: In-memory cache of parsed session files
        builder: Local rollup builder
        sync: Sync orchestrator
        query: Cached read path
        shutdown_event: Event for graceful shutdown
    """

    def __init__(self, config: TokenLedgerConfig | None = None, store: DuckDBTableStore | None = None) -> None:
        self.config = config or get_config()
        self.store = store
        self._owns_store = store is None
        self.session_files: LocalSessionFiles | None = None
        self.session_cache: MemorySessionCache | None = None
        self.builder: RollupBuilder | None = None
        self.sync: SyncService | None = None
        self.query: QueryService | None = None
        self.redaction: RedactingFilter | None = None
        self.shutdown_event = asyncio.Event()
        self._initialized = False

    async def initialize(self) -> None:
        """Create and wire all collaborators."""
        if self._initialized:
            return

        backend = self.config.backend
        self.redaction = install_redaction(backend.secrets_to_redact())

        if self.store is None:
            self.store = DuckDBTableStore(backend.agg_table, database_path=backend.store_path)
        await self.store.initialize()

        sessions = self.config.sessions
        self.session_files = LocalSessionFiles(sessions.roots)
        self.session_cache = MemorySessionCache(sessions.cache_max_entries)
        self.builder = RollupBuilder(
            self.session_files,
            self.session_files,
            machine_id=sessions.machine_id or default_machine_id(),
            machine_name=local_machine_name(),
            cache=self.session_cache,
            max_concurrency=self.config.sync.max_concurrent_files,
        )
        self.query = QueryService(backend, self.config.query, self.store)
        self.sync = SyncService(
            backend,
            self.config.sync,
            self.builder,
            self.store,
            on_synced=self.query.invalidate,
        )

        self._initialized = True
        logger.info(
            f"tokenledger initialized (dataset: {backend.dataset_id}, "
            f"profile: {self.sync.policy.profile.value}, table: {self.store.table_name})"
        )

    def services(self) -> tuple[RollupBuilder, SyncService, QueryService]:
        """Return the builder, sync and query services.

        Raises:
            TokenLedgerError: If ``initialize()`` has not run
        """
        if self.builder is None or self.sync is None or self.query is None:
            raise TokenLedgerError("Application is not initialized")
        return self.builder, self.sync, self.query

    async def run(self) -> None:
        """Run the periodic sync until SIGINT or SIGTERM."""
        await self.initialize()
        _, sync_service, _ = self.services()

        if self.config.metrics_enabled:
            start_metrics_server(self.config.metrics_port)

        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

        if not sync_service.start_timer():
            logger.warning("Periodic sync is not running; check sharing profile and backend settings")
        try:
            await self.shutdown_event.wait()
        except asyncio.CancelledError:
            logger.info("Application cancelled")
        finally:
            await self.dispose()

    def _handle_shutdown(self, signum: int, _frame: Any = None) -> None:
        signal_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
        logger.info(f"Received {signal_name} signal, initiating graceful shutdown")
        self.shutdown_event.set()

    async def dispose(self) -> None:
        """Stop the timer, let an in-flight sync finish, then release the store."""
        if not self._initialized:
            return

        if self.sync is not None:
            self.sync.dispose()
            await self.sync.wait_idle()

        if self.store is not None and self._owns_store:
            await self.store.close()

        self._initialized = False
        logger.info("tokenledger disposed")
