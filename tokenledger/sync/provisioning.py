"""Table provisioning with fallback to an existing table when creation is blocked."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tokenledger.errors import (
    ProvisioningBlockedError,
    is_local_auth_disallowed_error,
    is_policy_disallowed_error,
    safe_stringify_error,
)
from tokenledger.resilience.retry import RetryPolicy, call_with_retry
from tokenledger.storage.table_client import TableStoreClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisioningOutcome:
    """Result of making sure the rollup table exists.

    Attributes:
        fallback: True when creation was blocked and an existing table is used
        warning: Non-fatal, user-facing warning (already redacted)
    """

    fallback: bool = False
    warning: str | None = None


async def ensure_table(
    client: TableStoreClient,
    policy: RetryPolicy | None = None,
    secrets: list[str] | None = None,
) -> ProvisioningOutcome:
    """Create the rollup table if missing.

    When an external policy blocks creation, an already existing table is used
    instead and a warning is returned rather than raised.

    Raises:
        ProvisioningBlockedError: If creation is blocked and no table exists
        Exception: Any other provisioning error
    """
    try:
        await call_with_retry("create_table", client.create_table_if_missing, policy)
        return ProvisioningOutcome()
    except Exception as e:
        if not (is_policy_disallowed_error(e) or is_local_auth_disallowed_error(e)):
            raise
        reason = safe_stringify_error(e, secrets)

    if await call_with_retry("table_exists", client.table_exists, policy):
        warning = (
            f"Table creation for '{client.table_name}' was blocked by policy; "
            f"using the existing table instead ({reason})"
        )
        logger.warning(warning)
        return ProvisioningOutcome(fallback=True, warning=warning)

    raise ProvisioningBlockedError(
        f"Table creation for '{client.table_name}' was blocked by policy and no existing "
        "table is available. Create a compliant table externally and retry.",
        details={"table": client.table_name, "reason": reason},
    )
