"""User identity resolution for the optional per-user rollup dimension."""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from enum import Enum

import jwt

logger = logging.getLogger(__name__)

TEAM_ALIAS_PATTERN = re.compile(r"^[a-z0-9-]+$")
MAX_TEAM_ALIAS_LENGTH = 32
COMMON_NAME_PATTERN = re.compile(r"\b(john|jane|smith|doe|admin|user|dev|test|demo)\b", re.IGNORECASE)
GUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


class UserKeyType(str, Enum):
    PSEUDONYMOUS = "pseudonymous"
    TEAM_ALIAS = "teamAlias"
    ENTRA_OBJECT_ID = "entraObjectId"


@dataclass(frozen=True)
class ResolvedIdentity:
    user_id: str
    user_key_type: UserKeyType


@dataclass(frozen=True)
class AliasValidation:
    """Outcome of team alias validation."""

    valid: bool
    alias: str | None = None
    reason: str | None = None


def validate_team_alias(value: str | None) -> AliasValidation:
    """Check that a team alias is a non-identifying handle.

    Args:
        value: Raw alias

    Returns:
        Validation result with the trimmed alias or a readable reason
    """
    alias = (value or "").strip()
    if not alias:
        return AliasValidation(False, reason="Team alias is required. Use a handle like 'team-frontend'.")
    if len(alias) > MAX_TEAM_ALIAS_LENGTH:
        return AliasValidation(
            False,
            reason=f"Team alias is too long (maximum {MAX_TEAM_ALIAS_LENGTH} characters).",
        )
    if "@" in alias:
        return AliasValidation(False, reason="Team alias cannot contain '@' (looks like an email address).")
    if " " in alias:
        return AliasValidation(False, reason="Team alias cannot contain spaces (looks like a display name).")
    if not TEAM_ALIAS_PATTERN.match(alias):
        return AliasValidation(
            False, reason="Team alias may only use lowercase letters, numbers and dashes."
        )
    if COMMON_NAME_PATTERN.search(alias):
        return AliasValidation(
            False,
            reason="Team alias looks like a real name or common identifier. Use a handle like 'qa-lead'.",
        )
    return AliasValidation(True, alias=alias)


def is_entra_object_id(value: str | None) -> bool:
    return bool(GUID_PATTERN.match((value or "").strip()))


def parse_token_claims(access_token: str | None) -> tuple[str | None, str | None]:
    """Read tenant (``tid``) and object (``oid``) claims without verifying the signature.

    The token is only used as a source of stable identifiers, never for
    authorization.

    Returns:
        ``(tenant_id, object_id)``; either is None when missing or undecodable
    """
    token = (access_token or "").strip()
    if token.count(".") != 2:
        return None, None
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        logger.debug(f"Access token claims could not be decoded: {e.__class__.__name__}")
        return None, None

    tenant_id = claims.get("tid")
    object_id = claims.get("oid")
    return (
        tenant_id if isinstance(tenant_id, str) and tenant_id else None,
        object_id if isinstance(object_id, str) and object_id else None,
    )


def derive_pseudonymous_user_key(tenant_id: str, object_id: str, dataset_id: str) -> str:
    """Stable 16-hex-char user key scoped to a dataset.

    Changing the dataset id rotates every key.
    """
    material = f"tenant:{tenant_id}|object:{object_id}|dataset:{dataset_id}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]


def resolve_identity(
    share_with_team: bool,
    identity_mode: str,
    configured_user_id: str | None,
    dataset_id: str,
    access_token: str | None = None,
) -> ResolvedIdentity | None:
    """Resolve the user dimension for a sync pass.

    Args:
        share_with_team: Gate for any user dimension
        identity_mode: pseudonymous, teamAlias or entraObjectId
        configured_user_id: Alias or object id from settings
        dataset_id: Dataset id mixed into pseudonymous keys
        access_token: Token whose claims feed pseudonymous keys

    Returns:
        The identity, or None when sharing is off or the input is invalid
    """
    if not share_with_team:
        return None

    if identity_mode == UserKeyType.TEAM_ALIAS.value:
        validation = validate_team_alias(configured_user_id)
        if not validation.valid or validation.alias is None:
            return None
        return ResolvedIdentity(validation.alias, UserKeyType.TEAM_ALIAS)

    if identity_mode == UserKeyType.ENTRA_OBJECT_ID.value:
        object_id = (configured_user_id or "").strip()
        if not is_entra_object_id(object_id):
            return None
        return ResolvedIdentity(object_id, UserKeyType.ENTRA_OBJECT_ID)

    tenant_id, object_id = parse_token_claims(access_token)
    if not tenant_id or not object_id:
        return None
    return ResolvedIdentity(
        derive_pseudonymous_user_key(tenant_id, object_id, dataset_id),
        UserKeyType.PSEUDONYMOUS,
    )


def explain_unresolved_identity(identity_mode: str, configured_user_id: str | None) -> str:
    """Describe why the user dimension could not be resolved, without echoing the value."""
    if identity_mode == UserKeyType.TEAM_ALIAS.value:
        validation = validate_team_alias(configured_user_id)
        if not validation.valid and validation.reason:
            return validation.reason
    if identity_mode == UserKeyType.ENTRA_OBJECT_ID.value:
        return "Configured user id is not a valid object id (expected a GUID)."
    return f"Could not resolve user identity for mode {identity_mode}."
