"""Error types and helpers for tokenledger.

This module provides:
- A small exception hierarchy for backend configuration, auth and sync errors
- Secret redaction for any text shown to users or written to logs
- Classification of remote-store errors (policy blocks, transient failures)
"""

from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

__all__ = [
    "BackendAuthError",
    "BackendConfigError",
    "BackendSyncError",
    "ProvisioningBlockedError",
    "TokenLedgerError",
    "TransientStoreError",
    "is_local_auth_disallowed_error",
    "is_policy_disallowed_error",
    "is_transient_error",
    "redact_secrets",
    "safe_stringify_error",
]

REDACTED = "[REDACTED]"

# Status codes a table store returns for throttling or temporary unavailability
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class TokenLedgerError(Exception):
    """Base exception for tokenledger errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize error.

        Args:
            message: Error message
            details: Additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary.

        Returns:
            Error dictionary with type, message and details
        """
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class BackendConfigError(TokenLedgerError):
    """Raised when backend settings are incomplete or invalid."""


class BackendAuthError(TokenLedgerError):
    """Raised when credentials for the table store are unavailable."""


class BackendSyncError(TokenLedgerError):
    """Raised when a sync attempt fails."""


class ProvisioningBlockedError(TokenLedgerError):
    """Raised when an external policy blocks resource creation and no fallback exists."""


class TransientStoreError(TokenLedgerError):
    """Raised by store adapters for throttling or temporary unavailability."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        """Initialize transient error.

        Args:
            message: Error message
            status_code: HTTP-like status code reported by the store
            details: Additional error details
        """
        super().__init__(message, details)
        self.status_code = status_code


def redact_secrets(text: str, secrets_to_redact: list[str] | None) -> str:
    """Replace every occurrence of each secret with a placeholder.

    Args:
        text: Text to redact
        secrets_to_redact: Secret values (blank entries are ignored)

    Returns:
        Text with secrets replaced by ``[REDACTED]``
    """
    if not text or not secrets_to_redact:
        return text

    result = text
    for secret in secrets_to_redact:
        if not secret or not secret.strip():
            continue
        result = result.replace(secret, REDACTED)
    return result


def safe_stringify_error(error: Any, secrets_to_redact: list[str] | None = None) -> str:
    """Convert an error of any shape to a redacted string.

    Args:
        error: Exception, string, mapping or anything else
        secrets_to_redact: Optional secrets to redact from the message

    Returns:
        A safe string representation of the error
    """
    if isinstance(error, BaseException):
        message = f"{error.__class__.__name__}: {error}" if str(error) else error.__class__.__name__
    elif isinstance(error, str):
        message = error
    elif isinstance(error, dict):
        message = error.get("message") or error.get("error") or ""
        if not message:
            try:
                message = json.dumps(error, default=str)
            except (TypeError, ValueError):
                message = "[object]"
        message = str(message)
    else:
        message = str(error)

    return redact_secrets(message, secrets_to_redact)


def _error_code(error: Any) -> Any:
    return getattr(error, "code", None) or getattr(error, "error_code", None)


def _error_status(error: Any) -> int | None:
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "statusCode", None)
    return status if isinstance(status, int) else None


def is_policy_disallowed_error(error: Any) -> bool:
    """Check whether an error is a policy block on resource creation.

    Args:
        error: The error to check

    Returns:
        True if the error carries ``RequestDisallowedByPolicy`` or mentions a policy assignment
    """
    if error is None:
        return False

    if isinstance(error, ProvisioningBlockedError):
        return True

    if _error_code(error) == "RequestDisallowedByPolicy":
        return True

    message = str(error)
    return "RequestDisallowedByPolicy" in message or "policy assignment" in message


def is_local_auth_disallowed_error(error: Any) -> bool:
    """Check whether an error says shared-key (local) auth is disabled by policy.

    Args:
        error: The error to check

    Returns:
        True for shared-key policy errors
    """
    if error is None:
        return False

    message = str(error).lower()
    return (
        "allowsharedkeyaccess" in message
        or "local authentication" in message
        or ("shared key" in message and "policy" in message)
    )


def is_transient_error(error: BaseException) -> bool:
    """Check whether a remote error should be retried.

    Args:
        error: The error to check

    Returns:
        True for timeouts, throttling and temporary unavailability
    """
    if isinstance(error, TimeoutError):
        return True

    if isinstance(error, TransientStoreError):
        return True

    status = _error_status(error)
    if status is not None and status in TRANSIENT_STATUS_CODES:
        return True

    return _error_code(error) in {"ETIMEDOUT", "ECONNRESET"}
