"""Sharing policy engine.

Maps a sharing profile to the concrete data-minimization rules applied before
any rollup leaves the machine:

=================  ============  ==============  =============  ==========
profile            cloud sync    user dimension  names          ids
=================  ============  ==============  =============  ==========
off                never         no              no             raw
soloFull           if enabled    no              yes            raw
teamAnonymized     if enabled    no              never          hashed
teamPseudonymous   if enabled    yes             if requested   hashed
teamIdentified     if enabled    yes             if requested   hashed
=================  ============  ==============  =============  ==========
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tokenledger.config import BackendSettings

logger = logging.getLogger(__name__)

HASH_HEX_CHARS = 16


class SharingProfile(str, Enum):
    """Named sharing profiles."""

    OFF = "off"
    SOLO_FULL = "soloFull"
    TEAM_ANONYMIZED = "teamAnonymized"
    TEAM_PSEUDONYMOUS = "teamPseudonymous"
    TEAM_IDENTIFIED = "teamIdentified"


class IdStrategy(str, Enum):
    RAW = "raw"
    HASHED = "hashed"


@dataclass(frozen=True)
class SharingPolicy:
    """Concrete rules derived from a sharing profile."""

    profile: SharingProfile
    allow_cloud_sync: bool
    include_user_dimension: bool
    include_names: bool
    workspace_id_strategy: IdStrategy
    machine_id_strategy: IdStrategy


def parse_sharing_profile(value: Any) -> SharingProfile | None:
    """Accept exactly one of the five profile names; anything else is None."""
    if isinstance(value, SharingProfile):
        return value
    if not isinstance(value, str):
        return None
    try:
        return SharingProfile(value)
    except ValueError:
        return None


def compute_sharing_policy(
    enabled: bool,
    profile: SharingProfile,
    names_requested: bool,
) -> SharingPolicy:
    """Compute the policy for a profile.

    Args:
        enabled: Backend master switch
        profile: Sharing profile
        names_requested: Whether the user asked to share workspace/machine names

    Returns:
        The policy; ``off`` never allows sync and ``teamAnonymized`` never
        includes names, whatever else is requested
    """
    allow_cloud_sync = enabled and profile is not SharingProfile.OFF

    if profile is SharingProfile.OFF:
        return SharingPolicy(profile, allow_cloud_sync, False, False, IdStrategy.RAW, IdStrategy.RAW)

    if profile is SharingProfile.SOLO_FULL:
        return SharingPolicy(profile, allow_cloud_sync, False, True, IdStrategy.RAW, IdStrategy.RAW)

    if profile is SharingProfile.TEAM_ANONYMIZED:
        return SharingPolicy(
            profile, allow_cloud_sync, False, False, IdStrategy.HASHED, IdStrategy.HASHED
        )

    return SharingPolicy(
        profile,
        allow_cloud_sync,
        True,
        bool(names_requested),
        IdStrategy.HASHED,
        IdStrategy.HASHED,
    )


def infer_sharing_profile(
    enabled: bool,
    share_with_team: bool,
    user_identity_mode: str,
) -> SharingProfile:
    """Pick a profile for installs that never chose one explicitly."""
    if not enabled:
        return SharingProfile.OFF
    if share_with_team:
        if user_identity_mode == "pseudonymous":
            return SharingProfile.TEAM_PSEUDONYMOUS
        return SharingProfile.TEAM_IDENTIFIED
    return SharingProfile.TEAM_ANONYMIZED


def effective_profile(settings: BackendSettings) -> SharingProfile:
    """Return the configured profile, inferring it when unset or unknown."""
    explicit = parse_sharing_profile(settings.sharing_profile)
    if explicit is not None:
        return explicit
    if settings.sharing_profile:
        logger.warning("Unknown sharing profile configured; inferring one from legacy settings")
    return infer_sharing_profile(
        settings.enabled, settings.share_with_team, settings.user_identity_mode
    )


def policy_from_settings(settings: BackendSettings) -> SharingPolicy:
    """Compute the effective sharing policy for backend settings."""
    return compute_sharing_policy(
        settings.enabled,
        effective_profile(settings),
        settings.share_workspace_machine_names,
    )


def _dataset_key(dataset_id: str | None) -> str:
    return (dataset_id or "").strip() or "default"


def _hmac_hex(key: str, message: str) -> str:
    digest = hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256)
    return digest.hexdigest()[:HASH_HEX_CHARS]


def hash_workspace_id(dataset_id: str | None, workspace_id: str) -> str:
    """Dataset-keyed HMAC-SHA256 of a workspace id, truncated to 16 hex chars."""
    return _hmac_hex(_dataset_key(dataset_id), f"workspace:{workspace_id}")


def hash_machine_id(dataset_id: str | None, machine_id: str) -> str:
    """Dataset-keyed HMAC-SHA256 of a machine id, truncated to 16 hex chars."""
    return _hmac_hex(_dataset_key(dataset_id), f"machine:{machine_id}")
