"""
Email Provider Package

Collaborator interfaces, paging types and exceptions shared by the
provider sync engines.

Supported Providers:
- Gmail (Gmail API, history-based incremental sync)
- Outlook / Microsoft 365 (Microsoft Graph, delta query sync)
"""

from mailsync.providers.base import (
    CredentialProvider,
    DeltaPage,
    MessagePage,
    MessageRef,
    NetworkStatus,
    ProviderAdapter,
    ProviderType,
    SyncError,
)

__all__ = [
    "CredentialProvider",
    "DeltaPage",
    "MessagePage",
    "MessageRef",
    "NetworkStatus",
    "ProviderAdapter",
    "ProviderType",
    "SyncError",
]
