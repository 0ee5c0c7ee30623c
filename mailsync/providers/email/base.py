"""
Base types and classes for email synchronization.

Provides the canonical email record, the persisted per-account sync state
and the BaseEmailSync state machine shared by every provider:

    idle -> syncing (full | incremental) -> idle
    syncing -> paused   (network loss or cancel, resumable from checkpoint)
    syncing -> error    (unrecoverable, e.g. re-authentication required)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from mailsync.core.events import EventChannel, SyncLifecycleEvent, SyncLifecycleStatus
from mailsync.providers.base import (
    AuthenticationError,
    CursorExpiredError,
    CredentialProvider,
    MessageRef,
    NetworkStatus,
    ProviderAdapter,
    ProviderHTTPError,
    ProviderType,
    ReauthenticationRequiredError,
    SyncAlreadyInProgressError,
)
from mailsync.services.rate_limiter import RateLimiter
from mailsync.services.retry_engine import DEFAULT_RETRY_CONFIG, RetryConfig, execute_with_retry

if TYPE_CHECKING:
    from mailsync.core.database import DocumentCollection
    from mailsync.services.bankruptcy import SyncBankruptcyDetector
    from mailsync.services.conflict_manager import ConflictManager
    from mailsync.services.sync_failures import SyncFailureTracker
    from mailsync.services.sync_progress import SyncProgressService

logger = logging.getLogger(__name__)


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class SyncStatus(str, Enum):
    """Lifecycle status of an account's sync."""
    IDLE = "idle"
    SYNCING = "syncing"
    PAUSED = "paused"
    ERROR = "error"


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass
class EmailAttachment:
    """Attachment metadata. Content is never transferred by sync."""
    id: str
    filename: str
    content_type: str
    size_bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
        }


@dataclass
class EmailRecord:
    """Provider-agnostic email. `id` is namespaced by provider and globally unique."""
    id: str
    account_id: str
    provider: str
    native_id: str
    subject: str = ""
    from_address: str = ""
    from_name: str = ""
    to_addresses: List[str] = field(default_factory=list)
    cc_addresses: List[str] = field(default_factory=list)
    bcc_addresses: List[str] = field(default_factory=list)
    body_html: str = ""
    body_text: str = ""
    snippet: str = ""
    timestamp: Optional[datetime] = None  # received time
    server_updated_at: Optional[datetime] = None  # last server-side modification, if reported
    thread_id: Optional[str] = None
    folder: str = ""
    labels: List[str] = field(default_factory=list)
    read: bool = False
    starred: bool = False
    importance: str = "normal"
    attachments: List[EmailAttachment] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)
    ai_metadata: Optional[Dict[str, Any]] = None
    cursor_hint: Optional[str] = None  # e.g. Gmail historyId of this message
    local_modified_at: Optional[datetime] = None
    is_draft: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "provider": self.provider,
            "native_id": self.native_id,
            "subject": self.subject,
            "from_address": self.from_address,
            "from_name": self.from_name,
            "to_addresses": self.to_addresses,
            "cc_addresses": self.cc_addresses,
            "bcc_addresses": self.bcc_addresses,
            "body": {"html": self.body_html, "text": self.body_text},
            "snippet": self.snippet,
            "timestamp": self.timestamp,
            "server_updated_at": self.server_updated_at,
            "thread_id": self.thread_id,
            "folder": self.folder,
            "labels": self.labels,
            "read": self.read,
            "starred": self.starred,
            "importance": self.importance,
            "has_attachments": len(self.attachments) > 0,
            "attachments": [a.to_dict() for a in self.attachments],
            "attributes": self.attributes,
            "ai_metadata": self.ai_metadata,
            "cursor_hint": self.cursor_hint,
            "local_modified_at": self.local_modified_at,
            "is_draft": self.is_draft,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmailRecord":
        body = data.get("body") or {}
        return cls(
            id=data["id"],
            account_id=data["account_id"],
            provider=data.get("provider", ""),
            native_id=data.get("native_id", ""),
            subject=data.get("subject", ""),
            from_address=data.get("from_address", ""),
            from_name=data.get("from_name", ""),
            to_addresses=list(data.get("to_addresses", [])),
            cc_addresses=list(data.get("cc_addresses", [])),
            bcc_addresses=list(data.get("bcc_addresses", [])),
            body_html=body.get("html", ""),
            body_text=body.get("text", ""),
            snippet=data.get("snippet", ""),
            timestamp=_as_datetime(data.get("timestamp")),
            server_updated_at=_as_datetime(data.get("server_updated_at")),
            thread_id=data.get("thread_id"),
            folder=data.get("folder", ""),
            labels=list(data.get("labels", [])),
            read=data.get("read", False),
            starred=data.get("starred", False),
            importance=data.get("importance", "normal"),
            attachments=[EmailAttachment(**a) for a in data.get("attachments", [])],
            attributes=dict(data.get("attributes") or {}),
            ai_metadata=data.get("ai_metadata"),
            cursor_hint=data.get("cursor_hint"),
            local_modified_at=_as_datetime(data.get("local_modified_at")),
            is_draft=data.get("is_draft", False),
        )


@dataclass
class AccountSyncState:
    """
    Persisted sync state for one account.

    Supports:
    - Cursor for incremental sync (history id / delta link)
    - Page-level resume of an interrupted full sync
    - Progress, ETA and error counters for the UI
    """
    account_id: str
    provider: str
    status: SyncStatus = SyncStatus.IDLE
    initial_sync_complete: bool = False

    # Cursors
    sync_token: str = ""
    pending_cursor: str = ""  # captured at full-sync start, promoted on completion
    page_token: str = ""
    page_start_count: int = 0  # emails_synced when the current page began

    # Progress
    emails_synced: int = 0
    total_emails_to_sync: int = 0
    progress_percentage: float = 0.0
    estimated_time_remaining: int = 0  # seconds
    average_sync_rate: float = 0.0  # emails per second

    # Errors
    error_count: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    # Rate window
    request_count: int = 0
    last_request_at: Optional[datetime] = None

    # Timestamps
    last_sync_at: Optional[datetime] = None
    next_sync_at: Optional[datetime] = None
    sync_started_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.account_id,
            "account_id": self.account_id,
            "provider": self.provider,
            "status": self.status.value,
            "initial_sync_complete": self.initial_sync_complete,
            "sync_token": self.sync_token,
            "pending_cursor": self.pending_cursor,
            "page_token": self.page_token,
            "page_start_count": self.page_start_count,
            "emails_synced": self.emails_synced,
            "total_emails_to_sync": self.total_emails_to_sync,
            "progress_percentage": self.progress_percentage,
            "estimated_time_remaining": self.estimated_time_remaining,
            "average_sync_rate": self.average_sync_rate,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at,
            "request_count": self.request_count,
            "last_request_at": self.last_request_at,
            "last_sync_at": self.last_sync_at,
            "next_sync_at": self.next_sync_at,
            "sync_started_at": self.sync_started_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccountSyncState":
        """Reconstruct state from dictionary."""
        return cls(
            account_id=data["account_id"],
            provider=data["provider"],
            status=SyncStatus(data.get("status", "idle")),
            initial_sync_complete=data.get("initial_sync_complete", False),
            sync_token=data.get("sync_token", ""),
            pending_cursor=data.get("pending_cursor", ""),
            page_token=data.get("page_token", ""),
            page_start_count=data.get("page_start_count", 0),
            emails_synced=data.get("emails_synced", 0),
            total_emails_to_sync=data.get("total_emails_to_sync", 0),
            progress_percentage=data.get("progress_percentage", 0.0),
            estimated_time_remaining=data.get("estimated_time_remaining", 0),
            average_sync_rate=data.get("average_sync_rate", 0.0),
            error_count=data.get("error_count", 0),
            last_error=data.get("last_error"),
            last_error_at=_as_datetime(data.get("last_error_at")),
            request_count=data.get("request_count", 0),
            last_request_at=_as_datetime(data.get("last_request_at")),
            last_sync_at=_as_datetime(data.get("last_sync_at")),
            next_sync_at=_as_datetime(data.get("next_sync_at")),
            sync_started_at=_as_datetime(data.get("sync_started_at")),
        )

    def get_resume_point(self) -> tuple[Optional[str], int]:
        """Page token and synced count to resume a full sync from."""
        if self.page_token:
            return self.page_token, self.page_start_count
        return None, self.emails_synced


@dataclass
class SyncProgress:
    """Real-time sync progress for UI updates."""
    account_id: str
    provider: str
    status: SyncStatus
    initial_sync_complete: bool = False
    emails_synced: int = 0
    total_emails_to_sync: int = 0
    progress_percentage: float = 0.0
    estimated_time_remaining: int = 0
    last_sync_at: Optional[datetime] = None
    next_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    failures: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "provider": self.provider,
            "status": self.status.value,
            "initial_sync_complete": self.initial_sync_complete,
            "emails_synced": self.emails_synced,
            "total_emails_to_sync": self.total_emails_to_sync,
            "progress_percentage": self.progress_percentage,
            "estimated_time_remaining": self.estimated_time_remaining,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "next_sync_at": self.next_sync_at.isoformat() if self.next_sync_at else None,
            "last_error": self.last_error,
            "failures": self.failures,
        }


@dataclass
class EmailSyncConfig:
    """Configuration for a provider sync engine."""
    lookback_days: int = 90
    page_size: int = 100
    checkpoint_interval: int = 10  # Save state every N messages
    list_cost: int = 1  # rate-limiter tokens per listing/delta request
    fetch_cost: int = 1  # rate-limiter tokens per message fetch
    retry: RetryConfig = DEFAULT_RETRY_CONFIG


@dataclass
class SyncResult:
    """Partial-success report of one sync run."""
    account_id: str
    mode: SyncMode = SyncMode.INCREMENTAL
    succeeded: int = 0
    failed: int = 0
    retrying: int = 0
    deleted: int = 0
    new_messages: int = 0
    conflicts: int = 0
    fell_back_to_full: bool = False
    paused: bool = False
    bankrupt: bool = False

    @property
    def had_new_messages(self) -> bool:
        return self.new_messages > 0

    def summary(self) -> str:
        return f"{self.succeeded} succeeded, {self.failed} failed, {self.retrying} retrying"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "mode": self.mode.value,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "retrying": self.retrying,
            "deleted": self.deleted,
            "new_messages": self.new_messages,
            "conflicts": self.conflicts,
            "fell_back_to_full": self.fell_back_to_full,
            "paused": self.paused,
            "bankrupt": self.bankrupt,
        }


@dataclass
class RetrySweepResult:
    processed: int = 0
    succeeded: int = 0


@dataclass
class SyncContext:
    """Collaborators shared by the provider engines."""
    emails: "DocumentCollection"
    progress: "SyncProgressService"
    failures: "SyncFailureTracker"
    conflicts: "ConflictManager"
    credentials: CredentialProvider
    network: NetworkStatus
    bankruptcy: Optional["SyncBankruptcyDetector"] = None
    lifecycle_events: EventChannel[SyncLifecycleEvent] = field(
        default_factory=lambda: EventChannel("sync-lifecycle")
    )
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


class BaseEmailSync(ABC):
    """
    Abstract base class for provider sync engines.

    One engine per provider serves all accounts of that provider and owns
    the provider's shared rate limiter. Subclasses supply the adapter for an
    account; everything else (full/incremental state machine, retries,
    failure tracking, conflict handling, checkpoints) lives here.
    """

    provider_type: ProviderType

    def __init__(
        self,
        context: SyncContext,
        config: Optional[EmailSyncConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        adapter_factory: Optional[Callable[[str], ProviderAdapter]] = None,
    ):
        self.context = context
        self.config = config or self.default_config()
        self.rate_limiter = rate_limiter or self.create_rate_limiter()
        self._adapter_factory = adapter_factory
        self._active_syncs: set[str] = set()
        self._cancel_requested: set[str] = set()

    def create_adapter(self, account_id: str) -> ProviderAdapter:
        """Build the wire adapter for an account."""
        if self._adapter_factory is not None:
            return self._adapter_factory(account_id)
        return self.build_adapter(account_id)

    @abstractmethod
    def build_adapter(self, account_id: str) -> ProviderAdapter:
        pass

    @abstractmethod
    def create_rate_limiter(self) -> RateLimiter:
        pass

    def default_config(self) -> EmailSyncConfig:
        return EmailSyncConfig()

    def is_syncing(self, account_id: str) -> bool:
        return account_id in self._active_syncs

    def request_cancel(self, account_id: str):
        """Ask an in-flight sync to stop at its next checkpoint."""
        if account_id in self._active_syncs:
            self._cancel_requested.add(account_id)

    def _publish(self, account_id: str, status: SyncLifecycleStatus, email_id: Optional[str] = None, detail: str = ""):
        self.context.lifecycle_events.publish(
            SyncLifecycleEvent(account_id=account_id, status=status, email_id=email_id, detail=detail)
        )

    def _should_pause(self, account_id: str) -> bool:
        return account_id in self._cancel_requested or not self.context.network.is_online()

    # ==================== Entry point ====================

    async def start_sync(self, account_id: str) -> SyncResult:
        """
        Run one sync for an account.

        Chooses full sync when there is no cursor or the initial sync never
        completed, incremental sync otherwise.

        Raises:
            SyncAlreadyInProgressError: If the account is already syncing
        """
        if account_id in self._active_syncs:
            raise SyncAlreadyInProgressError(account_id)
        self._active_syncs.add(account_id)
        self._cancel_requested.discard(account_id)

        progress = self.context.progress
        provider = self.provider_type.value
        result = SyncResult(account_id=account_id)
        adapter: Optional[ProviderAdapter] = None

        try:
            state = await progress.get_state(account_id)
            if state is None:
                state = await progress.initialize_sync_state(account_id, provider)

            if not self.context.network.is_online():
                logger.info(f"Offline, not syncing {account_id}")
                await progress.update_progress(account_id, status=SyncStatus.PAUSED)
                result.paused = True
                return result

            bankruptcy = self.context.bankruptcy
            if bankruptcy is not None:
                decision = bankruptcy.should_declare_bankruptcy(account_id, provider, state.last_sync_at)
                if decision.bankrupt:
                    await bankruptcy.perform_fresh_sync_reset(account_id, provider)
                    state = await progress.get_state(account_id)
                    result.bankrupt = True

            adapter = self.create_adapter(account_id)
            self._publish(account_id, SyncLifecycleStatus.PROCESSING)

            if state.sync_token and state.initial_sync_complete:
                await self._perform_incremental_sync(account_id, adapter, state, result)
            else:
                await self._perform_full_sync(account_id, adapter, state, result)

            stats = await self.context.failures.get_stats(account_id)
            result.retrying = stats.open_count

            if result.paused:
                logger.info(f"Sync for {account_id} paused: {result.summary()}")
            else:
                logger.info(f"{result.mode.value.capitalize()} sync for {account_id} finished: {result.summary()}")
                self._publish(account_id, SyncLifecycleStatus.SYNCED, detail=result.summary())
            return result

        except Exception as e:
            logger.error(f"Sync failed for {account_id}: {e}")
            await progress.update_progress(account_id, status=SyncStatus.ERROR, error=str(e))
            self._publish(account_id, SyncLifecycleStatus.FAILED, detail=str(e))
            raise

        finally:
            self._active_syncs.discard(account_id)
            self._cancel_requested.discard(account_id)
            if adapter is not None:
                await adapter.close()

    # ==================== Full sync ====================

    async def _perform_full_sync(
        self,
        account_id: str,
        adapter: ProviderAdapter,
        state: AccountSyncState,
        result: SyncResult,
    ):
        progress = self.context.progress
        result.mode = SyncMode.FULL

        pending_cursor = state.pending_cursor
        if not pending_cursor:
            # Captured before listing so changes made during the listing are replayed later
            pending_cursor = await self._call(account_id, adapter.get_current_cursor) or ""

        page_token, synced = state.get_resume_point()
        if page_token:
            logger.info(f"Resuming full sync for {account_id} from checkpoint ({synced} synced)")
        else:
            logger.info(f"Starting full sync for {account_id}")

        state = await progress.update_progress(
            account_id,
            status=SyncStatus.SYNCING,
            pending_cursor=pending_cursor,
            emails_synced=synced,
        )
        total = state.total_emails_to_sync
        since = datetime.now(timezone.utc) - timedelta(days=self.config.lookback_days)
        since_checkpoint = 0

        while True:
            if self._should_pause(account_id):
                await self._pause(account_id, page_token, synced, result)
                return

            await self.rate_limiter.acquire_with_throttling(self.config.list_cost)
            page = await self._call(account_id, adapter.list_page, page_token, since)
            await progress.record_request(account_id)

            if page.result_size_estimate:
                total = max(total, page.result_size_estimate)
            total = max(total, synced + len(page.refs))
            page_start = synced
            await progress.update_progress(
                account_id, total_emails_to_sync=total, page_token=page_token or "", page_start_count=page_start
            )

            for ref in page.refs:
                if self._should_pause(account_id):
                    await self._pause(account_id, page_token, page_start, result, emails_synced=synced)
                    return

                if await self._sync_item(account_id, adapter, ref, result):
                    synced += 1

                since_checkpoint += 1
                if since_checkpoint >= self.config.checkpoint_interval:
                    await progress.update_progress(account_id, emails_synced=synced)
                    since_checkpoint = 0

            page_token = page.next_page_token
            # Page fully upserted: safe to move the resume point past it
            await progress.update_progress(
                account_id, emails_synced=synced, page_token=page_token or "", page_start_count=synced
            )
            if not page_token:
                break

        if not pending_cursor:
            pending_cursor = await self._call(account_id, adapter.get_current_cursor) or ""

        await progress.mark_sync_complete(account_id, sync_token=pending_cursor)

    async def _pause(
        self,
        account_id: str,
        page_token: Optional[str],
        page_start: int,
        result: SyncResult,
        emails_synced: Optional[int] = None,
    ):
        reason = "cancelled" if account_id in self._cancel_requested else "offline"
        logger.warning(f"Pausing sync for {account_id} ({reason}), checkpoint saved")
        await self.context.progress.update_progress(
            account_id,
            status=SyncStatus.PAUSED,
            page_token=page_token or "",
            page_start_count=page_start,
            emails_synced=emails_synced if emails_synced is not None else page_start,
        )
        result.paused = True

    # ==================== Incremental sync ====================

    async def _perform_incremental_sync(
        self,
        account_id: str,
        adapter: ProviderAdapter,
        state: AccountSyncState,
        result: SyncResult,
    ):
        progress = self.context.progress
        result.mode = SyncMode.INCREMENTAL
        await progress.update_progress(account_id, status=SyncStatus.SYNCING)

        cursor = state.sync_token
        new_cursor: Optional[str] = None
        page_token: Optional[str] = None

        try:
            while True:
                if self._should_pause(account_id):
                    # Cursor untouched: the whole delta is replayed next time
                    await progress.update_progress(account_id, status=SyncStatus.PAUSED)
                    result.paused = True
                    return

                await self.rate_limiter.acquire_with_throttling(self.config.list_cost)
                delta = await self._call(account_id, adapter.fetch_delta, cursor, page_token)
                await progress.record_request(account_id)

                for ref in delta.added:
                    await self._sync_item(account_id, adapter, ref, result)
                for ref in delta.updated:
                    await self._sync_item(account_id, adapter, ref, result)
                for native_id in delta.removed:
                    email_id = adapter.namespaced_id(native_id)
                    if await self.context.emails.delete(email_id):
                        result.deleted += 1
                    await self.context.failures.mark_resolved_by_email_id(email_id, account_id)

                if delta.cursor:
                    new_cursor = delta.cursor
                page_token = delta.next_page_token
                if not page_token:
                    break

        except CursorExpiredError:
            logger.warning(f"Sync cursor expired for {account_id}, falling back to full sync")
            result.fell_back_to_full = True
            state = await progress.reset_for_full_sync(account_id)
            await self._perform_full_sync(account_id, adapter, state, result)
            return

        await progress.update_progress(account_id, emails_synced=state.emails_synced + result.new_messages)
        await progress.mark_sync_complete(account_id, sync_token=new_cursor or cursor)

    # ==================== Items ====================

    async def _fetch_with_retry(self, account_id: str, adapter: ProviderAdapter, native_id: str) -> Dict[str, Any]:
        async def fetch():
            await self.rate_limiter.acquire_with_throttling(self.config.fetch_cost)
            return await self._call(account_id, adapter.fetch_item, native_id)

        return await execute_with_retry(fetch, config=self.config.retry, sleep=self.context.sleep)

    async def _sync_item(
        self,
        account_id: str,
        adapter: ProviderAdapter,
        ref: MessageRef,
        result: SyncResult,
    ) -> bool:
        """
        Fetch, normalize and store one message.

        Failures are recorded in the failure tracker and never abort the
        batch; only a failed re-authentication propagates.
        """
        email_id = adapter.namespaced_id(ref.id)
        try:
            raw = ref.raw
            if raw is None:
                raw = await self._fetch_with_retry(account_id, adapter, ref.id)
            record = adapter.normalize(raw)
            is_new = await self._store_record(account_id, record, result)
            await self.context.failures.mark_resolved_by_email_id(email_id, account_id)
            result.succeeded += 1
            if is_new:
                result.new_messages += 1
            return True

        except ReauthenticationRequiredError:
            raise

        except Exception as e:
            outcome = await self.context.failures.record_failure(
                email_id, account_id, self.provider_type.value, e
            )
            result.failed += 1
            logger.warning(f"Failed to sync {email_id}: {e}")
            status = SyncLifecycleStatus.RETRY_SCHEDULED if outcome.should_retry else SyncLifecycleStatus.FAILED
            self._publish(account_id, status, email_id=email_id, detail=outcome.failure.error_message)
            return False

    async def _store_record(self, account_id: str, record: EmailRecord, result: SyncResult) -> bool:
        """
        Upsert a normalized record. Returns True if it was not stored before.

        Locally modified copies go through conflict reconciliation; local-only
        attributes and AI metadata survive the upsert.
        """
        emails = self.context.emails
        incoming = record.to_dict()
        existing = await emails.get(record.id)

        if existing is None:
            await emails.upsert(incoming)
            return True

        if not incoming.get("attributes"):
            incoming["attributes"] = existing.get("attributes") or {}
        if incoming.get("ai_metadata") is None:
            incoming["ai_metadata"] = existing.get("ai_metadata")

        if existing.get("local_modified_at"):
            outcome = await self.context.conflicts.reconcile(account_id, existing, incoming)
            if outcome.conflict is not None:
                result.conflicts += 1
            if outcome.record is None:
                return False
            incoming = outcome.record

        await emails.upsert(incoming)
        return False

    # ==================== Auth ====================

    @staticmethod
    def _is_unauthorized(error: Exception) -> bool:
        if isinstance(error, ReauthenticationRequiredError):
            return False
        if isinstance(error, ProviderHTTPError):
            return error.status_code == 401
        return isinstance(error, AuthenticationError)

    async def _call(self, account_id: str, func: Callable[..., Awaitable[Any]], *args):
        """
        Run one provider step; on 401 refresh the token and retry the step once.

        Raises:
            ReauthenticationRequiredError: If the token refresh fails
        """
        try:
            return await func(*args)
        except Exception as e:
            if not self._is_unauthorized(e):
                raise
            logger.info(f"Access token rejected for {account_id}, refreshing")

        try:
            await self.context.credentials.refresh(account_id)
        except Exception as refresh_error:
            logger.error(f"Token refresh failed for {account_id}: {refresh_error}")
            raise ReauthenticationRequiredError(account_id) from refresh_error

        return await func(*args)

    # ==================== Retry sweep ====================

    async def process_pending_retries(self, account_id: str) -> RetrySweepResult:
        """
        Retry every failure of the account whose next attempt is due.

        Raises:
            SyncAlreadyInProgressError: If the account is currently syncing
        """
        failures = self.context.failures
        due = await failures.get_pending_retries(account_id)
        sweep = RetrySweepResult()
        if not due:
            return sweep

        if account_id in self._active_syncs:
            raise SyncAlreadyInProgressError(account_id)
        self._active_syncs.add(account_id)

        adapter: Optional[ProviderAdapter] = None
        result = SyncResult(account_id=account_id)
        try:
            adapter = self.create_adapter(account_id)
            for failure in due:
                if not self.context.network.is_online():
                    break
                sweep.processed += 1
                await failures.mark_retrying(failure.id)
                try:
                    await self.rate_limiter.acquire_with_throttling(self.config.fetch_cost)
                    raw = await self._call(account_id, adapter.fetch_item, adapter.native_id(failure.email_id))
                    record = adapter.normalize(raw)
                    await self._store_record(account_id, record, result)
                    await failures.mark_resolved(failure.id)
                    sweep.succeeded += 1
                    self._publish(account_id, SyncLifecycleStatus.SYNCED, email_id=failure.email_id)
                except ReauthenticationRequiredError:
                    raise
                except Exception as e:
                    outcome = await failures.record_failure(
                        failure.email_id, account_id, self.provider_type.value, e
                    )
                    status = (
                        SyncLifecycleStatus.RETRY_SCHEDULED if outcome.should_retry
                        else SyncLifecycleStatus.FAILED
                    )
                    self._publish(account_id, status, email_id=failure.email_id)

            logger.info(
                f"Retry sweep for {account_id}: {sweep.succeeded}/{sweep.processed} recovered"
            )
            return sweep
        finally:
            self._active_syncs.discard(account_id)
            if adapter is not None:
                await adapter.close()
