"""
Base Provider Interface for Email Sync

Defines the collaborator interfaces the sync engine consumes (credentials,
network status, provider adapters), the paging types adapters return, and
the exception hierarchy shared by every provider.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Mapping, Optional


class ProviderType(str, Enum):
    """Supported email providers."""
    GMAIL = "gmail"
    OUTLOOK = "outlook"


@dataclass
class MessageRef:
    """
    Reference to a remote message found while listing or reading changes.

    `raw` is set when the listing already returned the full payload, in
    which case no separate fetch is needed.
    """
    id: str
    raw: Optional[dict[str, Any]] = None


@dataclass
class MessagePage:
    """One page of a full-sync listing."""
    refs: list[MessageRef] = field(default_factory=list)
    next_page_token: Optional[str] = None
    result_size_estimate: Optional[int] = None


@dataclass
class DeltaPage:
    """
    One page of incremental changes since a cursor.

    `cursor` is only set on the final page; it is the position the next
    incremental sync should start from.
    """
    added: list[MessageRef] = field(default_factory=list)
    updated: list[MessageRef] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    next_page_token: Optional[str] = None
    cursor: Optional[str] = None


# ==================== Collaborator Interfaces ====================

class CredentialProvider(ABC):
    """Supplies OAuth access tokens for accounts."""

    @abstractmethod
    async def get_valid_access_token(self, account_id: str) -> str:
        """Return a token believed to be valid."""
        pass

    @abstractmethod
    async def refresh(self, account_id: str) -> str:
        """
        Force a token refresh.

        Raises:
            AuthenticationError: If the refresh grant was rejected
        """
        pass


class NetworkStatus(ABC):
    """Reports connectivity and online/offline transitions."""

    @abstractmethod
    def is_online(self) -> bool:
        pass

    @abstractmethod
    def subscribe(self, listener: Callable[[bool], Any]) -> Callable[[], None]:
        """Register for online(True)/offline(False) transitions. Returns an unsubscribe function."""
        pass


class ProviderAdapter(ABC):
    """
    Wire-level access to one account on one provider.

    Adapters raise ProviderHTTPError for non-2xx responses and
    CursorExpiredError when a stored cursor is no longer accepted.
    """

    def __init__(self, account_id: str, credentials: CredentialProvider):
        self.account_id = account_id
        self.credentials = credentials

    @abstractmethod
    async def list_page(self, page_token: Optional[str], since: datetime) -> MessagePage:
        """List one page of messages received since `since`."""
        pass

    @abstractmethod
    async def fetch_item(self, message_id: str) -> dict[str, Any]:
        """Fetch the full raw payload of one message."""
        pass

    @abstractmethod
    def normalize(self, raw: dict[str, Any]):
        """Convert a raw payload into a canonical EmailRecord."""
        pass

    @abstractmethod
    async def get_current_cursor(self) -> Optional[str]:
        """Return a cursor marking the mailbox's current position."""
        pass

    @abstractmethod
    async def fetch_delta(self, cursor: str, page_token: Optional[str] = None) -> DeltaPage:
        """Read one page of changes since `cursor`."""
        pass

    def namespaced_id(self, native_id: str) -> str:
        """Globally unique record id for a provider-native message id."""
        return f"{self.provider_type.value}-{native_id}"

    def native_id(self, email_id: str) -> str:
        """Inverse of namespaced_id."""
        prefix = f"{self.provider_type.value}-"
        return email_id[len(prefix):] if email_id.startswith(prefix) else email_id

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        pass

    async def close(self) -> None:
        """Clean up any resources (HTTP clients, etc.)."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


# ==================== Custom Exceptions ====================

class SyncError(Exception):
    """Base exception for sync operations."""
    def __init__(self, message: str, account_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.account_id = account_id


class ProviderHTTPError(SyncError):
    """Provider answered with a non-success HTTP status."""
    def __init__(
        self,
        message: str,
        status_code: int,
        headers: Optional[Mapping[str, str]] = None,
        account_id: Optional[str] = None,
    ):
        super().__init__(message, account_id)
        self.status_code = status_code
        self.headers = dict(headers or {})


class AuthenticationError(SyncError):
    """Authentication failed or credentials expired."""
    pass


class ReauthenticationRequiredError(AuthenticationError):
    """Token refresh failed; the user has to sign in again."""
    def __init__(self, account_id: Optional[str] = None):
        super().__init__("Token refresh failed. User must re-authenticate.", account_id)


class RateLimitError(SyncError):
    """Rate limit exceeded."""
    def __init__(self, message: str, retry_after: Optional[float] = None, account_id: Optional[str] = None):
        super().__init__(message, account_id)
        self.retry_after = retry_after


class CursorExpiredError(SyncError):
    """Stored history id or delta link is no longer valid."""
    pass


class SyncAlreadyInProgressError(SyncError):
    """A sync for the account is already running."""
    def __init__(self, account_id: str):
        super().__init__(f"Sync already in progress for account {account_id}", account_id)


class CircuitOpenError(SyncError):
    """Provider circuit is open; attempts are being short-circuited."""
    def __init__(self, provider: str, cooldown_remaining: float):
        super().__init__(
            f"Circuit for {provider} is open. Retry in {cooldown_remaining:.1f}s"
        )
        self.provider = provider
        self.cooldown_remaining = cooldown_remaining


class AccountNotFoundError(SyncError):
    """No sync state exists for the account."""
    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}", account_id)
