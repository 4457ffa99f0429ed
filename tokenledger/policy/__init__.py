"""Sharing policy and user identity."""

from tokenledger.policy.identity import (
    AliasValidation,
    ResolvedIdentity,
    UserKeyType,
    derive_pseudonymous_user_key,
    parse_token_claims,
    resolve_identity,
    validate_team_alias,
)
from tokenledger.policy.sharing import (
    IdStrategy,
    SharingPolicy,
    SharingProfile,
    compute_sharing_policy,
    hash_machine_id,
    hash_workspace_id,
    infer_sharing_profile,
    parse_sharing_profile,
    policy_from_settings,
)

__all__ = [
    "AliasValidation",
    "IdStrategy",
    "ResolvedIdentity",
    "SharingPolicy",
    "SharingProfile",
    "UserKeyType",
    "compute_sharing_policy",
    "derive_pseudonymous_user_key",
    "hash_machine_id",
    "hash_workspace_id",
    "infer_sharing_profile",
    "parse_sharing_profile",
    "parse_token_claims",
    "policy_from_settings",
    "resolve_identity",
    "validate_team_alias",
]
