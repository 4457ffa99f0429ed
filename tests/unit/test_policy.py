"""Tests for the sharing policy engine and identity resolution."""

from __future__ import annotations

import hashlib

import jwt
import pytest

from tokenledger.config import BackendSettings
from tokenledger.policy.identity import (
    UserKeyType,
    derive_pseudonymous_user_key,
    explain_unresolved_identity,
    parse_token_claims,
    resolve_identity,
    validate_team_alias,
)
from tokenledger.policy.sharing import (
    IdStrategy,
    SharingProfile,
    compute_sharing_policy,
    effective_profile,
    hash_machine_id,
    hash_workspace_id,
    infer_sharing_profile,
    parse_sharing_profile,
    policy_from_settings,
)

OBJECT_ID = "0f8fad5b-d9cb-469f-a165-70867728950e"


def _token(claims: dict) -> str:
    return jwt.encode(claims, "unverified-signing-key-0123456789abcdef", algorithm="HS256")


class TestSharingPolicy:
    """Test suite for profile to policy mapping."""

    @pytest.mark.parametrize("enabled", [True, False])
    @pytest.mark.parametrize("names", [True, False])
    def test_off_never_syncs(self, enabled: bool, names: bool) -> None:
        policy = compute_sharing_policy(enabled, SharingProfile.OFF, names)

        assert not policy.allow_cloud_sync
        assert not policy.include_user_dimension
        assert not policy.include_names

    def test_team_anonymized_never_includes_names(self) -> None:
        policy = compute_sharing_policy(True, SharingProfile.TEAM_ANONYMIZED, True)

        assert policy.allow_cloud_sync
        assert not policy.include_names
        assert not policy.include_user_dimension
        assert policy.workspace_id_strategy is IdStrategy.HASHED
        assert policy.machine_id_strategy is IdStrategy.HASHED

    def test_solo_full_keeps_raw_ids_and_names(self) -> None:
        policy = compute_sharing_policy(True, SharingProfile.SOLO_FULL, False)

        assert policy.include_names
        assert policy.workspace_id_strategy is IdStrategy.RAW

    @pytest.mark.parametrize("profile", [SharingProfile.TEAM_PSEUDONYMOUS, SharingProfile.TEAM_IDENTIFIED])
    def test_team_user_profiles(self, profile: SharingProfile) -> None:
        assert compute_sharing_policy(True, profile, True).include_names
        assert not compute_sharing_policy(True, profile, False).include_names
        assert compute_sharing_policy(True, profile, False).include_user_dimension

    def test_disabled_backend_blocks_every_profile(self) -> None:
        for profile in SharingProfile:
            assert not compute_sharing_policy(False, profile, True).allow_cloud_sync

    def test_parse_profile(self) -> None:
        assert parse_sharing_profile("teamPseudonymous") is SharingProfile.TEAM_PSEUDONYMOUS
        assert parse_sharing_profile("TeamPseudonymous") is None
        assert parse_sharing_profile(3) is None

    def test_inference(self) -> None:
        assert infer_sharing_profile(False, True, "teamAlias") is SharingProfile.OFF
        assert infer_sharing_profile(True, False, "pseudonymous") is SharingProfile.TEAM_ANONYMIZED
        assert infer_sharing_profile(True, True, "pseudonymous") is SharingProfile.TEAM_PSEUDONYMOUS
        assert infer_sharing_profile(True, True, "teamAlias") is SharingProfile.TEAM_IDENTIFIED

    def test_explicit_profile_wins_over_legacy_flags(self) -> None:
        settings = BackendSettings(enabled=True, sharing_profile="soloFull", share_with_team=True)

        assert effective_profile(settings) is SharingProfile.SOLO_FULL

    def test_unknown_profile_falls_back_to_inference(self) -> None:
        settings = BackendSettings(enabled=True, sharing_profile="everything", share_with_team=False)

        assert policy_from_settings(settings).profile is SharingProfile.TEAM_ANONYMIZED


class TestIdHashing:
    """Test suite for dataset-keyed id hashing."""

    def test_deterministic_and_short(self) -> None:
        first = hash_workspace_id("ds", "ws1")

        assert first == hash_workspace_id("ds", "ws1")
        assert len(first) == 16
        assert all(c in "0123456789abcdef" for c in first)

    def test_dataset_scoped(self) -> None:
        assert hash_workspace_id("ds-a", "ws1") != hash_workspace_id("ds-b", "ws1")
        assert hash_workspace_id("", "ws1") == hash_workspace_id("default", "ws1")
        assert hash_workspace_id("  ", "ws1") == hash_workspace_id(None, "ws1")

    def test_namespaced_by_kind(self) -> None:
        assert hash_workspace_id("ds", "x") != hash_machine_id("ds", "x")


class TestTeamAlias:
    """Test suite for team alias validation."""

    @pytest.mark.parametrize("alias", ["team-frontend", "qa-lead", "a1"])
    def test_valid(self, alias: str) -> None:
        result = validate_team_alias(f" {alias} ")

        assert result.valid
        assert result.alias == alias

    @pytest.mark.parametrize(
        "alias",
        ["", "me@example.com", "jane doe", "Team-Frontend", "x" * 33, "john", "team-admin", "under_score"],
    )
    def test_invalid(self, alias: str) -> None:
        result = validate_team_alias(alias)

        assert not result.valid
        assert result.reason

    def test_reason_never_echoes_value(self) -> None:
        reason = explain_unresolved_identity("teamAlias", "me@example.com")

        assert "me@example.com" not in reason


class TestResolveIdentity:
    """Test suite for resolve_identity."""

    def test_requires_share_with_team(self) -> None:
        assert resolve_identity(False, "teamAlias", "team-frontend", "ds") is None

    def test_team_alias(self) -> None:
        identity = resolve_identity(True, "teamAlias", "team-frontend", "ds")

        assert identity.user_id == "team-frontend"
        assert identity.user_key_type is UserKeyType.TEAM_ALIAS

    def test_entra_object_id(self) -> None:
        identity = resolve_identity(True, "entraObjectId", OBJECT_ID, "ds")

        assert identity.user_id == OBJECT_ID
        assert resolve_identity(True, "entraObjectId", "not-a-guid", "ds") is None

    def test_pseudonymous_key(self) -> None:
        token = _token({"tid": "tenant-1", "oid": "object-1"})

        identity = resolve_identity(True, "pseudonymous", "", "ds", token)

        expected = hashlib.sha256(b"tenant:tenant-1|object:object-1|dataset:ds").hexdigest()[:16]
        assert identity.user_id == expected
        assert identity.user_key_type is UserKeyType.PSEUDONYMOUS

    def test_pseudonymous_key_rotates_with_dataset(self) -> None:
        assert derive_pseudonymous_user_key("t", "o", "a") != derive_pseudonymous_user_key("t", "o", "b")

    @pytest.mark.parametrize(
        "token",
        [None, "", "abc", "a.b", "a.b.c", _token({"tid": "t"}), _token({"oid": "o"})],
    )
    def test_pseudonymous_missing_claims(self, token) -> None:
        assert resolve_identity(True, "pseudonymous", "", "ds", token) is None

    def test_parse_claims(self) -> None:
        assert parse_token_claims(_token({"tid": "t", "oid": "o", "name": "x"})) == ("t", "o")
