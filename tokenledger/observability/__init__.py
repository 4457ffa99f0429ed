"""Logging helpers for tokenledger."""

from tokenledger.observability.redaction import RedactingFilter, install_redaction

__all__ = ["RedactingFilter", "install_redaction"]
