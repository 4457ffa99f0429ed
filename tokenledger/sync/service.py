"""Sync orchestrator.

Every sync attempt, scheduled or manual, runs under one ``asyncio.Lock`` so at
most one remote write sequence is in flight. A circuit breaker counts
consecutive failures; when it opens, the periodic timer stops until
``reset_circuit()`` or ``start_timer()`` re-enables it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from tokenledger.config import BackendSettings, SyncSettings, is_backend_configured
from tokenledger.errors import BackendConfigError, BackendSyncError, TokenLedgerError, safe_stringify_error
from tokenledger.monitoring.metrics import record_sync_outcome, sync_duration_seconds
from tokenledger.policy.identity import ResolvedIdentity, explain_unresolved_identity, resolve_identity
from tokenledger.policy.sharing import (
    IdStrategy,
    SharingPolicy,
    hash_machine_id,
    hash_workspace_id,
    policy_from_settings,
)
from tokenledger.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
)
from tokenledger.resilience.retry import RetryPolicy
from tokenledger.rollups.aggregator import RollupMap, upsert_daily_rollup
from tokenledger.storage.codec import encode_entity
from tokenledger.storage.data_plane import DataPlane
from tokenledger.storage.table_client import UpsertMode
from tokenledger.sync.provisioning import ensure_table

if TYPE_CHECKING:
    from tokenledger.rollups.builder import RollupBuilder, RollupBuildResult
    from tokenledger.storage.table_client import TableStoreClient

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str | None]]


class SyncTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    INITIAL = "initial"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"
    DISABLED = "disabled"


@dataclass
class SyncResult:
    """Outcome of one sync attempt.

    Attributes:
        status: What happened
        trigger: What started the attempt
        entities_written: Entities upserted successfully
        reason: Why the attempt was skipped, disabled or failed (redacted)
        warnings: Non-fatal warnings such as a provisioning fallback
    """

    status: SyncStatus
    trigger: SyncTrigger
    entities_written: int = 0
    reason: str | None = None
    warnings: list[str] = field(default_factory=list)


class SyncService:
    """Serialized sync of local rollups to the table store."""

    def __init__(
        self,
        backend: BackendSettings,
        sync_settings: SyncSettings,
        builder: RollupBuilder,
        client: TableStoreClient,
        data_plane: DataPlane | None = None,
        token_provider: TokenProvider | None = None,
        on_synced: Callable[[], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize sync service.

        Args:
            backend: Backend and sharing settings
            sync_settings: Timing, retry and threshold settings
            builder: Local rollup builder
            client: Table store holding the rollup table
            data_plane: Data plane (built from ``sync_settings`` when omitted)
            token_provider: Async source of an access token for pseudonymous keys
            on_synced: Called after each successful sync (e.g. cache invalidation)
            clock: Monotonic clock in seconds
            sleep: Sleep function for the periodic timer
        """
        self.backend = backend
        self.settings = sync_settings
        self.builder = builder
        self.client = client
        self.secrets = backend.secrets_to_redact()
        self.data_plane = data_plane or DataPlane(
            write_policy=RetryPolicy(
                max_retries=sync_settings.max_retry_attempts,
                base_delay=sync_settings.retry_base_delay_seconds,
                timeout=sync_settings.write_timeout_seconds,
            ),
            read_policy=RetryPolicy(
                max_retries=sync_settings.max_retry_attempts,
                base_delay=sync_settings.retry_base_delay_seconds,
                timeout=sync_settings.query_timeout_seconds,
            ),
            secrets=self.secrets,
        )
        self.token_provider = token_provider
        self.on_synced = on_synced
        self._clock = clock
        self._sleep = sleep

        self._lock = asyncio.Lock()
        self._breaker = CircuitBreaker(
            "backend-sync",
            CircuitBreakerConfig(failure_threshold=sync_settings.max_consecutive_failures, timeout=None),
        )
        self._timer_task: asyncio.Task[None] | None = None
        self._in_flight: set[asyncio.Task[Any]] = set()
        self._last_success: float | None = None
        self._last_manual_trigger: float | None = None

    @property
    def policy(self) -> SharingPolicy:
        return policy_from_settings(self.backend)

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def timer_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def consecutive_failures(self) -> int:
        return self._breaker.stats.consecutive_failures

    # ------------------------------------------------------------------
    # Public triggers
    # ------------------------------------------------------------------

    async def sync(self, force: bool = False, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncResult:
        """Run one sync attempt; never raises.

        Args:
            force: Ignore the minimum interval since the last successful sync
            trigger: What started the attempt

        Returns:
            The attempt's outcome
        """
        result = await self._attempt(force, trigger)
        await self._record(result)
        return result

    async def trigger_manual_sync(self) -> SyncResult:
        """Forced sync requested by the user, dropped inside the manual cooldown."""
        now = self._clock()
        if (
            self._last_manual_trigger is not None
            and now - self._last_manual_trigger < self.settings.manual_cooldown_seconds
        ):
            logger.info("Manual sync ignored (cooldown)")
            record_sync_outcome(SyncTrigger.MANUAL.value, "skipped")
            return SyncResult(SyncStatus.SKIPPED, SyncTrigger.MANUAL, reason="cooldown")
        self._last_manual_trigger = now
        return await self.sync(force=True, trigger=SyncTrigger.MANUAL)

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def start_timer(self, initial_sync: bool = True) -> bool:
        """Start the periodic sync timer.

        Clears an open circuit. With ``initial_sync`` a forced sync runs
        immediately.

        Returns:
            False when sync is disabled by policy or the backend is not configured
        """
        self.stop_timer()
        if not self.policy.allow_cloud_sync:
            logger.info(f"Sync timer not started (cloud sync disabled, profile: {self.policy.profile.value})")
            return False
        if not is_backend_configured(self.backend):
            logger.info("Sync timer not started (backend not configured)")
            return False

        self._breaker = CircuitBreaker("backend-sync", self._breaker.config)
        logger.info(f"Starting sync timer (interval {self.settings.interval_seconds:.0f}s)")
        if initial_sync:
            self._spawn(self.sync(force=True, trigger=SyncTrigger.INITIAL))
        self._timer_task = asyncio.create_task(self._run_timer())
        return True

    def stop_timer(self) -> None:
        """Stop the periodic timer; an attempt already running is left to finish."""
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
            logger.debug("Sync timer stopped")

    async def reset_circuit(self) -> bool:
        """Close the circuit and restart the timer."""
        await self._breaker.reset()
        return self.start_timer(initial_sync=False)

    def dispose(self) -> None:
        """Stop the timer without cancelling an in-flight sync."""
        self.stop_timer()

    async def wait_idle(self) -> None:
        """Wait for any spawned sync attempts to finish."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    def next_delay(self) -> float:
        """Delay before the next scheduled attempt.

        Grows as ``interval * 2**failures`` after consecutive failures, capped at
        ``max_backoff_seconds``.
        """
        failures = self.consecutive_failures
        interval = self.settings.interval_seconds
        if failures <= 0:
            return interval
        return min(interval * (2**failures), self.settings.max_backoff_seconds)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _run_timer(self) -> None:
        while True:
            await self._sleep(self.next_delay())
            # Shielded so stopping the timer never cancels a running attempt
            attempt = self._spawn(self._breaker.call(self._scheduled_attempt))
            try:
                await asyncio.shield(attempt)
            except CircuitBreakerError:
                logger.warning("Scheduled sync rejected (circuit open); stopping timer")
                self._timer_task = None
                return
            except BackendSyncError as e:
                logger.warning(f"Scheduled sync failed: {e.message}")

            if self._breaker.is_open:
                logger.error(
                    f"Stopping sync timer after {self.consecutive_failures} consecutive failures; "
                    "reset the circuit to resume"
                )
                logger.debug(f"Breaker state: {self._breaker.snapshot()}")
                self._timer_task = None
                return

    async def _scheduled_attempt(self) -> SyncResult:
        result = await self._attempt(False, SyncTrigger.SCHEDULED)
        if result.status is SyncStatus.FAILED:
            raise BackendSyncError(result.reason or "sync failed")
        return result

    # ------------------------------------------------------------------
    # Attempt
    # ------------------------------------------------------------------

    async def _record(self, result: SyncResult) -> None:
        if result.status is SyncStatus.SUCCESS:
            await self._breaker.record_success()
        elif result.status is SyncStatus.FAILED:
            await self._breaker.record_failure()
            if self._breaker.is_open and self.timer_running:
                logger.error("Circuit opened after repeated sync failures; stopping timer")
                self.stop_timer()

    async def _attempt(self, force: bool, trigger: SyncTrigger) -> SyncResult:
        policy = self.policy
        if not policy.allow_cloud_sync:
            record_sync_outcome(trigger.value, "skipped")
            return SyncResult(SyncStatus.DISABLED, trigger, reason=f"cloud sync disabled ({policy.profile.value})")
        if not is_backend_configured(self.backend):
            record_sync_outcome(trigger.value, "skipped")
            return SyncResult(SyncStatus.DISABLED, trigger, reason="backend not configured")

        async with self._lock:
            now = self._clock()
            if (
                not force
                and self._last_success is not None
                and now - self._last_success < self.settings.interval_seconds
            ):
                logger.debug("Sync skipped (minimum interval not reached)")
                record_sync_outcome(trigger.value, "skipped")
                return SyncResult(SyncStatus.SKIPPED, trigger, reason="minimum interval")

            started = time.perf_counter()
            try:
                result = await self._run(policy, trigger)
            except Exception as e:
                message = safe_stringify_error(e, self.secrets)
                if isinstance(e, TokenLedgerError):
                    message = safe_stringify_error(e.message, self.secrets)
                logger.warning(f"Sync failed ({trigger.value}): {message}")
                record_sync_outcome(trigger.value, "failure")
                return SyncResult(SyncStatus.FAILED, trigger, reason=message)
            finally:
                sync_duration_seconds.observe(time.perf_counter() - started)

            self._last_success = self._clock()
            record_sync_outcome(trigger.value, "success")

        if self.on_synced is not None:
            outcome = self.on_synced()
            if asyncio.iscoroutine(outcome):
                await outcome
        return result

    async def _run(self, policy: SharingPolicy, trigger: SyncTrigger) -> SyncResult:
        if not self.backend.dataset_id:
            raise BackendConfigError("Dataset id is required")

        warnings: list[str] = []
        provisioning = await ensure_table(self.client, self.data_plane.write_policy, self.secrets)
        if provisioning.warning:
            warnings.append(provisioning.warning)

        identity = await self._resolve_identity(policy)
        build = await self.builder.build(
            self.backend.lookback_days,
            user_id=identity.user_id if identity else None,
        )
        entities = self._encode(build, policy, identity)

        report = await self.data_plane.upsert_entities(self.client, entities, UpsertMode.REPLACE)
        if report.failed:
            raise BackendSyncError(
                f"{len(report.errors)} of {len(entities)} entities failed to upload",
                details={"succeeded": report.success_count},
            )

        logger.info(
            f"Sync complete ({trigger.value}): {report.success_count} entities for "
            f"{build.start_day}..{build.end_day}"
        )
        return SyncResult(SyncStatus.SUCCESS, trigger, entities_written=report.success_count, warnings=warnings)

    async def _resolve_identity(self, policy: SharingPolicy) -> ResolvedIdentity | None:
        if not policy.include_user_dimension:
            return None

        token: str | None = None
        if self.backend.user_identity_mode == "pseudonymous" and self.backend.auth_mode == "entraId":
            if self.token_provider is not None:
                try:
                    token = await self.token_provider()
                except Exception as e:
                    logger.warning(
                        f"Access token unavailable for user identity: {safe_stringify_error(e, self.secrets)}"
                    )
            elif self.backend.access_token is not None:
                token = self.backend.access_token.get_secret_value()

        identity = resolve_identity(
            True,
            self.backend.user_identity_mode,
            self.backend.user_id,
            self.backend.dataset_id,
            token,
        )
        if identity is None:
            reason = explain_unresolved_identity(self.backend.user_identity_mode, self.backend.user_id)
            logger.warning(f"User dimension unavailable; syncing without it. Reason: {reason}")
        return identity

    def _encode(
        self,
        build: RollupBuildResult,
        policy: SharingPolicy,
        identity: ResolvedIdentity | None,
    ) -> list[dict[str, Any]]:
        dataset_id = self.backend.dataset_id
        hashed_workspaces = policy.workspace_id_strategy is IdStrategy.HASHED
        hashed_machines = policy.machine_id_strategy is IdStrategy.HASHED

        remote: RollupMap = {}
        workspace_names: dict[str, str | None] = {}
        machine_names: dict[str, str | None] = {}
        for entry in build.rollups.values():
            key = entry.key
            workspace_id = hash_workspace_id(dataset_id, key.workspace_id) if hashed_workspaces else key.workspace_id
            machine_id = hash_machine_id(dataset_id, key.machine_id) if hashed_machines else key.machine_id
            remote_key = replace(key, workspace_id=workspace_id, machine_id=machine_id)
            upsert_daily_rollup(remote, remote_key, entry.value)
            if policy.include_names:
                workspace_names[workspace_id] = build.workspace_names.get(key.workspace_id)
                machine_names[machine_id] = build.machine_names.get(key.machine_id)

        entities: list[dict[str, Any]] = []
        for entry in remote.values():
            key = entry.key
            entities.append(
                encode_entity(
                    dataset_id,
                    key,
                    entry.value,
                    workspace_name=workspace_names.get(key.workspace_id),
                    machine_name=machine_names.get(key.machine_id),
                    user_key_type=identity.user_key_type.value if identity else None,
                    share_with_team=identity is not None,
                    consent_at=self.backend.share_consent_at,
                )
            )
        return entities
