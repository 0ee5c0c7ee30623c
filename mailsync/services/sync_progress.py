"""
Sync progress tracking.

Reads and writes AccountSyncState documents: status transitions, counts,
progress percentage and ETA, error counters and cursors. The owning
provider engine is the only writer for an account.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from mailsync.core.database import DocumentStore
from mailsync.providers.email.base import AccountSyncState, SyncProgress, SyncStatus

logger = logging.getLogger(__name__)

SYNC_STATE_COLLECTION = "sync_state"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncProgressService:
    """Persisted per-account sync state."""

    def __init__(
        self,
        store: DocumentStore,
        clock: Callable[[], datetime] = _utcnow,
        collection_name: str = SYNC_STATE_COLLECTION,
    ):
        self._collection = store.collection(collection_name)
        self._clock = clock

    async def initialize_sync_state(self, account_id: str, provider: str) -> AccountSyncState:
        """Create (or overwrite) an account's state with pre-initial-sync defaults."""
        state = AccountSyncState(account_id=account_id, provider=provider)
        await self._save(state)
        logger.info(f"Initialized sync state for {account_id} ({provider})")
        return state

    async def get_state(self, account_id: str) -> Optional[AccountSyncState]:
        doc = await self._collection.get(account_id)
        return AccountSyncState.from_dict(doc) if doc else None

    async def get_all_states(self) -> List[AccountSyncState]:
        docs = await self._collection.find({})
        return [AccountSyncState.from_dict(d) for d in docs]

    async def delete_state(self, account_id: str) -> bool:
        return await self._collection.delete(account_id)

    async def _require(self, account_id: str) -> AccountSyncState:
        state = await self.get_state(account_id)
        if state is None:
            raise KeyError(f"No sync state for account {account_id}")
        return state

    async def _save(self, state: AccountSyncState):
        await self._collection.upsert(state.to_dict())

    async def update_progress(
        self,
        account_id: str,
        status: Optional[SyncStatus] = None,
        emails_synced: Optional[int] = None,
        total_emails_to_sync: Optional[int] = None,
        page_token: Optional[str] = None,
        page_start_count: Optional[int] = None,
        pending_cursor: Optional[str] = None,
        sync_token: Optional[str] = None,
        error: Optional[str] = None,
    ) -> AccountSyncState:
        """
        Apply a partial update and recompute derived progress fields.

        A transition into `syncing` stamps `sync_started_at` and clears the
        error counter; an `error` increments it.
        """
        state = await self._require(account_id)
        now = self._clock()

        if status is not None:
            if status == SyncStatus.SYNCING and state.status != SyncStatus.SYNCING:
                state.sync_started_at = now
                state.error_count = 0
                state.last_error = None
            if status == SyncStatus.ERROR:
                state.error_count += 1
                state.last_error = error
                state.last_error_at = now
            state.status = status
        elif error is not None:
            state.last_error = error
            state.last_error_at = now

        if emails_synced is not None:
            state.emails_synced = emails_synced
        if total_emails_to_sync is not None:
            state.total_emails_to_sync = total_emails_to_sync
        if page_token is not None:
            state.page_token = page_token
        if page_start_count is not None:
            state.page_start_count = page_start_count
        if pending_cursor is not None:
            state.pending_cursor = pending_cursor
        if sync_token is not None:
            state.sync_token = sync_token

        self._recompute(state, now)
        await self._save(state)
        return state

    def _recompute(self, state: AccountSyncState, now: datetime):
        if state.total_emails_to_sync > 0:
            pct = min(state.emails_synced / state.total_emails_to_sync * 100, 100.0)
            state.progress_percentage = round(pct, 1)

        if state.sync_started_at and state.emails_synced > 0:
            elapsed = (now - state.sync_started_at).total_seconds()
            if elapsed > 0:
                state.average_sync_rate = round(state.emails_synced / elapsed, 2)
                remaining = max(0, state.total_emails_to_sync - state.emails_synced)
                if state.average_sync_rate > 0:
                    state.estimated_time_remaining = int(remaining / state.average_sync_rate)

    async def record_request(self, account_id: str):
        """Count a provider request in the account's rate window."""
        state = await self._require(account_id)
        state.request_count += 1
        state.last_request_at = self._clock()
        await self._save(state)

    async def mark_sync_complete(self, account_id: str, sync_token: Optional[str] = None) -> AccountSyncState:
        state = await self._require(account_id)
        state.status = SyncStatus.IDLE
        state.initial_sync_complete = True
        state.last_sync_at = self._clock()
        state.progress_percentage = 100.0
        state.estimated_time_remaining = 0
        state.page_token = ""
        state.page_start_count = 0
        state.pending_cursor = ""
        state.error_count = 0
        state.last_error = None
        if sync_token:
            state.sync_token = sync_token
        await self._save(state)
        return state

    async def schedule_next_sync(self, account_id: str, interval: float) -> Optional[datetime]:
        state = await self.get_state(account_id)
        if state is None:
            return None
        state.next_sync_at = self._clock() + timedelta(seconds=interval)
        await self._save(state)
        return state.next_sync_at

    async def reset_for_full_sync(self, account_id: str) -> AccountSyncState:
        """Drop cursors and progress so the next run is a fresh full sync."""
        state = await self._require(account_id)
        state.initial_sync_complete = False
        state.sync_token = ""
        state.last_sync_at = None
        state.pending_cursor = ""
        state.page_token = ""
        state.page_start_count = 0
        state.emails_synced = 0
        state.total_emails_to_sync = 0
        state.progress_percentage = 0.0
        state.estimated_time_remaining = 0
        state.average_sync_rate = 0.0
        state.status = SyncStatus.IDLE
        await self._save(state)
        return state

    async def get_progress(self, account_id: str, failures=None) -> Optional[SyncProgress]:
        """
        Snapshot of an account's progress, optionally with failure counts.

        Args:
            account_id: Account to report on
            failures: Optional SyncFailureTracker to include failure stats
        """
        state = await self.get_state(account_id)
        if state is None:
            return None
        failure_counts = {}
        if failures is not None:
            failure_counts = (await failures.get_stats(account_id)).to_dict()
        return SyncProgress(
            account_id=state.account_id,
            provider=state.provider,
            status=state.status,
            initial_sync_complete=state.initial_sync_complete,
            emails_synced=state.emails_synced,
            total_emails_to_sync=state.total_emails_to_sync,
            progress_percentage=state.progress_percentage,
            estimated_time_remaining=state.estimated_time_remaining,
            last_sync_at=state.last_sync_at,
            next_sync_at=state.next_sync_at,
            last_error=state.last_error,
            failures=failure_counts,
        )

    async def get_all_progress(self, failures=None) -> List[SyncProgress]:
        states = await self.get_all_states()
        return [await self.get_progress(s.account_id, failures) for s in states]
