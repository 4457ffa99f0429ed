"""Logging filter that scrubs configured secrets from log records."""

from __future__ import annotations

import logging

from tokenledger.errors import redact_secrets

logger = logging.getLogger(__name__)


class RedactingFilter(logging.Filter):
    """Redact secrets from every record passing through a handler.

    The message is rendered once with its arguments, redacted, and stored back
    on the record so later handlers and formatters never see the raw secret.

    Example:
        handler.addFilter(RedactingFilter([settings.backend.shared_key]))
    """

    def __init__(self, secrets: list[str] | None = None) -> None:
        """Initialize filter.

        Args:
            secrets: Secret values to redact
        """
        super().__init__()
        self._secrets: list[str] = [s for s in (secrets or []) if s and s.strip()]

    def add_secret(self, secret: str | None) -> None:
        """Register another secret to redact."""
        if secret and secret.strip() and secret not in self._secrets:
            self._secrets.append(secret)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True

        message = record.getMessage()
        redacted = redact_secrets(message, self._secrets)
        if redacted != message:
            record.msg = redacted
            record.args = None

        if record.exc_text:
            record.exc_text = redact_secrets(record.exc_text, self._secrets)

        return True


def install_redaction(secrets: list[str], target: logging.Logger | None = None) -> RedactingFilter:
    """Attach a redacting filter to every handler of a logger.

    Args:
        secrets: Secret values to redact
        target: Logger whose handlers get the filter (default: root logger)

    Returns:
        The installed filter
    """
    target = target or logging.getLogger()
    redacting = RedactingFilter(secrets)
    for handler in target.handlers:
        handler.addFilter(redacting)
    logger.debug(f"Installed secret redaction on {len(target.handlers)} handler(s)")
    return redacting
