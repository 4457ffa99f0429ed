"""Sync of local rollups to the table store."""

from tokenledger.sync.provisioning import ProvisioningOutcome, ensure_table
from tokenledger.sync.service import SyncResult, SyncService, SyncStatus, SyncTrigger

__all__ = [
    "ProvisioningOutcome",
    "SyncResult",
    "SyncService",
    "SyncStatus",
    "SyncTrigger",
    "ensure_table",
]
