"""tokenledger configuration management with environment variable overrides.

This module provides centralized configuration management with support for:
- Environment variable overrides (highest priority)
- YAML config file loading
- Pydantic validation (lookback clamping, dataset defaults)

Priority order for configuration values:
1. Environment variables (TOKENLEDGER_*)
2. YAML config file
3. Pydantic defaults (lowest priority)
"""

from __future__ import annotations

import logging
import os
import platform
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

MIN_LOOKBACK_DAYS = 1
MAX_LOOKBACK_DAYS = 90
DEFAULT_LOOKBACK_DAYS = 30
DEFAULT_DATASET_ID = "default"
DEFAULT_AGG_TABLE = "usageAggDaily"
DEFAULT_EVENTS_TABLE = "usageEvents"


def clamp_lookback_days(value: Any) -> int:
    """Clamp a lookback value to the supported [1, 90] day window.

    Args:
        value: Raw value (non-numeric falls back to the default)

    Returns:
        Clamped number of days
    """
    try:
        days = int(value)
    except (TypeError, ValueError):
        return DEFAULT_LOOKBACK_DAYS
    return max(MIN_LOOKBACK_DAYS, min(MAX_LOOKBACK_DAYS, days))


def default_session_roots() -> list[Path]:
    """Return the usual editor user-data roots for this platform.

    Returns:
        Candidate roots (existence is checked at discovery time)
    """
    home = Path.home()
    editions = ["Code", "Code - Insiders", "VSCodium"]
    system = platform.system()

    if system == "Darwin":
        base = home / "Library" / "Application Support"
    elif system == "Windows":
        base = Path(os.getenv("APPDATA", str(home / "AppData" / "Roaming")))
    else:
        base = Path(os.getenv("XDG_CONFIG_HOME", str(home / ".config")))

    roots = [base / edition / "User" for edition in editions]
    roots.append(home / ".copilot" / "session-state")
    return roots


def default_data_dir() -> Path:
    """Return the per-user data directory for tokenledger.

    ``%LOCALAPPDATA%`` on Windows, otherwise ``$XDG_DATA_HOME`` when set, with
    the platform's usual fallback.
    """
    system = platform.system()
    if system == "Windows":
        local_app_data = os.getenv("LOCALAPPDATA")
        if local_app_data:
            return Path(local_app_data) / "tokenledger"
        return Path.home() / ".tokenledger" / "data"

    xdg_data = os.getenv("XDG_DATA_HOME")
    if xdg_data:
        return Path(xdg_data) / "tokenledger"
    if system == "Darwin":
        return Path.home() / "Library" / "Application Support" / "tokenledger"
    return Path.home() / ".local" / "share" / "tokenledger"


def default_store_path() -> str:
    return str(default_data_dir() / "ledger.duckdb")


class BackendSettings(BaseModel):
    """Remote table store and sharing settings.

    Attributes:
        enabled: Master switch for cloud sync
        auth_mode: Credential flavour (entraId, sharedKey)
        dataset_id: Dataset the rollups belong to (also the id-hashing key)
        sharing_profile: Explicit sharing profile (inferred when unset)
        share_with_team: Legacy team-sharing flag
        share_workspace_machine_names: Ask to include workspace/machine names
        share_consent_at: ISO timestamp of the user's sharing consent
        user_identity_mode: How the user dimension is derived
        user_id: Configured alias or object id
        access_token: Bearer token used only for claims extraction under entraId
        shared_key: Storage shared key (secret, always redacted)
        subscription_id: Opaque resource identifier, passed through
        resource_group: Opaque resource identifier, passed through
        storage_account: Storage account name
        agg_table: Aggregate rollup table name
        events_table: Events table name
        store_path: DuckDB path for the local table store (":memory:" is not persisted)
        lookback_days: Days of local history to sync, clamped to [1, 90]
    """

    enabled: bool = False
    auth_mode: Literal["entraId", "sharedKey"] = "entraId"
    dataset_id: str = DEFAULT_DATASET_ID
    sharing_profile: str | None = None
    share_with_team: bool = False
    share_workspace_machine_names: bool = False
    share_consent_at: str = ""
    user_identity_mode: Literal["pseudonymous", "teamAlias", "entraObjectId"] = "pseudonymous"
    user_id: str = ""
    access_token: SecretStr | None = None
    shared_key: SecretStr | None = None
    subscription_id: str = ""
    resource_group: str = ""
    storage_account: str = ""
    agg_table: str = DEFAULT_AGG_TABLE
    events_table: str = DEFAULT_EVENTS_TABLE
    store_path: str = Field(default_factory=default_store_path)
    lookback_days: int = DEFAULT_LOOKBACK_DAYS

    @field_validator("dataset_id", mode="before")
    @classmethod
    def default_blank_dataset(cls, v: Any) -> str:
        """Normalize blank dataset ids to the default dataset."""
        text = str(v or "").strip()
        return text or DEFAULT_DATASET_ID

    @field_validator("user_id", mode="before")
    @classmethod
    def strip_user_id(cls, v: Any) -> str:
        """Trim the configured user id."""
        return str(v or "").strip()

    @field_validator("lookback_days", mode="before")
    @classmethod
    def clamp_lookback(cls, v: Any) -> int:
        """Clamp lookback days to the supported window."""
        return clamp_lookback_days(v)

    def secrets_to_redact(self) -> list[str]:
        """Return every configured secret value.

        Returns:
            Secrets that must never appear in logs or error text
        """
        secrets: list[str] = []
        for secret in (self.shared_key, self.access_token):
            if secret is not None and secret.get_secret_value().strip():
                secrets.append(secret.get_secret_value())
        return secrets


class SyncSettings(BaseModel):
    """Sync orchestration settings.

    Attributes:
        interval_seconds: Periodic sync interval (also the minimum gap between non-forced syncs)
        manual_cooldown_seconds: Window in which repeated manual triggers are dropped
        max_consecutive_failures: Failures before the periodic timer is disabled
        max_backoff_seconds: Cap for the delay after consecutive failures
        write_timeout_seconds: Timeout for each remote write
        query_timeout_seconds: Timeout for each remote read
        max_retry_attempts: Retries for transient remote failures
        retry_base_delay_seconds: First retry delay (doubles per attempt)
        max_concurrent_files: Session files parsed concurrently
    """

    interval_seconds: float = 5 * 60
    manual_cooldown_seconds: float = 5.0
    max_consecutive_failures: int = 5
    max_backoff_seconds: float = 60 * 60
    write_timeout_seconds: float = 60.0
    query_timeout_seconds: float = 30.0
    max_retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    max_concurrent_files: int = 16


class QuerySettings(BaseModel):
    """Read path settings.

    Attributes:
        cache_ttl_seconds: Lifetime of the cached query result
        max_list_items: Maximum rows in top-N token totals
    """

    cache_ttl_seconds: float = 30.0
    max_list_items: int = 50


class SessionSettings(BaseModel):
    """Local session discovery settings.

    Attributes:
        roots: Directories searched for session logs
        machine_id: Stable machine identifier (derived from hostname when unset)
        cache_max_entries: Bound of the in-memory session file cache
    """

    roots: list[Path] = Field(default_factory=default_session_roots)
    machine_id: str | None = None
    cache_max_entries: int = 1000


class TokenLedgerConfig(BaseSettings):
    """Main tokenledger configuration.

    This class loads configuration from multiple sources:
    1. Environment variables (TOKENLEDGER_*, nested with ``__``)
    2. YAML config file (if passed to ``get_config``)
    3. Pydantic defaults
    """

    backend: BackendSettings = Field(default_factory=BackendSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    query: QuerySettings = Field(default_factory=QuerySettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)

    debug: bool = False
    metrics_enabled: bool = True
    metrics_port: int = 9464

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        env_prefix="tokenledger_",
    )


def is_backend_configured(settings: BackendSettings) -> bool:
    """Check that the remote store is addressable.

    Args:
        settings: Backend settings

    Returns:
        True when subscription, resource group, storage account and table are set
    """
    return bool(
        settings.subscription_id
        and settings.resource_group
        and settings.storage_account
        and settings.agg_table
    )


def load_config_from_file(config_path: str) -> dict[str, Any]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Configuration dictionary
    """
    path = Path(config_path).expanduser()
    if not path.exists():
        logger.warning(f"Config file not found: {config_path}")
        return {}

    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
        if not isinstance(config, dict):
            logger.error(f"Config file {config_path} must contain a mapping")
            return {}
        logger.info(f"Loaded configuration from {config_path}")
        return config
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return {}


def get_config(config_path: str | None = None) -> TokenLedgerConfig:
    """Get configuration instance.

    Args:
        config_path: Optional path to YAML config file

    Returns:
        TokenLedgerConfig instance
    """
    if config_path:
        file_config = load_config_from_file(config_path)
        return TokenLedgerConfig(**file_config)

    return TokenLedgerConfig()
