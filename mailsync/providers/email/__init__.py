"""Direct Email Sync Providers

Gmail and Outlook sync engines sharing one state machine.

Features:
- Full sync within a lookback window, resumable at page granularity
- Cursor-based incremental sync with fallback to full sync
- Per-message failure tracking and retry
- Conflict reconciliation for locally modified messages
"""

from mailsync.providers.email.base import (
    AccountSyncState,
    BaseEmailSync,
    EmailRecord,
    EmailSyncConfig,
    SyncContext,
    SyncProgress,
    SyncResult,
    SyncStatus,
)
from mailsync.providers.email.gmail_sync import DirectGmailSync, GmailAdapter
from mailsync.providers.email.outlook_sync import DirectOutlookSync, OutlookAdapter

__all__ = [
    "AccountSyncState",
    "BaseEmailSync",
    "EmailRecord",
    "EmailSyncConfig",
    "SyncContext",
    "SyncProgress",
    "SyncResult",
    "SyncStatus",
    "DirectGmailSync",
    "GmailAdapter",
    "DirectOutlookSync",
    "OutlookAdapter",
]
