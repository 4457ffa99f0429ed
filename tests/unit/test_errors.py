"""Tests for error helpers and log redaction."""

from __future__ import annotations

import logging

import pytest

from tokenledger.errors import (
    BackendSyncError,
    ProvisioningBlockedError,
    TransientStoreError,
    is_local_auth_disallowed_error,
    is_policy_disallowed_error,
    is_transient_error,
    redact_secrets,
    safe_stringify_error,
)
from tokenledger.observability.redaction import RedactingFilter, install_redaction


class CodedError(Exception):
    def __init__(self, message: str, code: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class TestRedaction:
    """Test suite for secret redaction."""

    def test_redact_every_occurrence(self) -> None:
        assert redact_secrets("key=abc123 again abc123", ["abc123"]) == "key=[REDACTED] again [REDACTED]"

    def test_blank_secrets_ignored(self) -> None:
        assert redact_secrets("text", ["", "  "]) == "text"

    def test_safe_stringify_shapes(self) -> None:
        assert safe_stringify_error(ValueError("bad abc")) == "ValueError: bad abc"
        assert safe_stringify_error(ValueError("bad abc"), ["abc"]) == "ValueError: bad [REDACTED]"
        assert safe_stringify_error({"message": "from dict"}) == "from dict"
        assert safe_stringify_error({"status": 500}) == '{"status": 500}'
        assert safe_stringify_error(42) == "42"

    def test_error_to_dict(self) -> None:
        error = BackendSyncError("Sync failed", details={"failed": 2})

        assert error.to_dict() == {
            "error": "BackendSyncError",
            "message": "Sync failed",
            "details": {"failed": 2},
        }

    def test_logging_filter(self, caplog: pytest.LogCaptureFixture) -> None:
        test_logger = logging.getLogger("tokenledger.test.redaction")
        redacting = RedactingFilter(["s3cr3t"])
        test_logger.addFilter(redacting)
        try:
            with caplog.at_level(logging.INFO, logger="tokenledger.test.redaction"):
                test_logger.info("token is %s", "s3cr3t")
        finally:
            test_logger.removeFilter(redacting)

        assert "s3cr3t" not in caplog.text
        assert "[REDACTED]" in caplog.text

    def test_install_on_handlers(self) -> None:
        target = logging.getLogger("tokenledger.test.install")
        handler = logging.NullHandler()
        target.addHandler(handler)
        try:
            redacting = install_redaction(["x"], target)
            assert redacting in handler.filters
        finally:
            target.removeHandler(handler)


class TestClassification:
    """Test suite for remote error classification."""

    def test_policy_disallowed(self) -> None:
        assert is_policy_disallowed_error(CodedError("denied", code="RequestDisallowedByPolicy"))
        assert is_policy_disallowed_error(Exception("blocked by policy assignment 'no-tables'"))
        assert is_policy_disallowed_error(ProvisioningBlockedError("blocked"))
        assert not is_policy_disallowed_error(Exception("not found"))
        assert not is_policy_disallowed_error(None)

    def test_local_auth_disallowed(self) -> None:
        assert is_local_auth_disallowed_error(Exception("AllowSharedKeyAccess is false"))
        assert is_local_auth_disallowed_error(Exception("Shared key access denied by policy"))
        assert not is_local_auth_disallowed_error(Exception("shared key is wrong"))

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_transient_status(self, status: int) -> None:
        assert is_transient_error(CodedError("x", status_code=status))

    def test_not_transient(self) -> None:
        assert not is_transient_error(CodedError("x", status_code=404))
        assert not is_transient_error(ValueError("x"))
        assert is_transient_error(TimeoutError())
        assert is_transient_error(TransientStoreError("busy"))
        assert is_transient_error(CodedError("reset", code="ECONNRESET"))
