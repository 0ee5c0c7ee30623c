"""
Sync bankruptcy detection.

When an account has not synced for longer than the staleness threshold,
catching up incrementally is slower than starting over (or impossible once
the provider has dropped the cursor). Declaring bankruptcy clears the
account's cached emails and resets its sync state for a fresh full sync.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from mailsync.core.database import DocumentStore
from mailsync.core.events import BankruptcyEvent, EventChannel
from mailsync.services.adaptive_interval import AdaptiveIntervalService
from mailsync.services.sync_progress import SyncProgressService

logger = logging.getLogger(__name__)

EMAILS_COLLECTION = "emails"
DEFAULT_STALENESS_THRESHOLD = timedelta(days=7)

PROVIDER_REASONS = {
    "gmail": "Gmail history is only retained for a limited time",
    "outlook": "Outlook delta tokens expire after extended inactivity",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BankruptcyDecision:
    bankrupt: bool
    reason: Optional[str] = None


class SyncBankruptcyDetector:
    """
    Decides on and performs fresh-sync resets.

    Args:
        store: Document store holding the email collection
        progress: Sync state service to reset
        adaptive_interval: Adaptive polling state to reset
        threshold: Staleness after which bankruptcy is declared
    """

    def __init__(
        self,
        store: DocumentStore,
        progress: SyncProgressService,
        adaptive_interval: Optional[AdaptiveIntervalService] = None,
        threshold: timedelta = DEFAULT_STALENESS_THRESHOLD,
        clock: Callable[[], datetime] = _utcnow,
        emails_collection: str = EMAILS_COLLECTION,
    ):
        self._emails = store.collection(emails_collection)
        self._progress = progress
        self._adaptive_interval = adaptive_interval
        self.threshold = threshold
        self._clock = clock
        self.events: EventChannel[BankruptcyEvent] = EventChannel("bankruptcy")

    def set_threshold_days(self, days: float):
        self.threshold = timedelta(days=days)

    def get_staleness(self, last_sync_at: Optional[datetime]) -> Optional[timedelta]:
        if last_sync_at is None:
            return None
        return self._clock() - last_sync_at

    def should_declare_bankruptcy(
        self,
        account_id: str,
        provider: str,
        last_sync_at: Optional[datetime],
    ) -> BankruptcyDecision:
        """
        Bankrupt when the last successful sync is older than the threshold.

        An account that never synced is not bankrupt; it gets a full sync anyway.
        """
        staleness = self.get_staleness(last_sync_at)
        if staleness is None or staleness <= self.threshold:
            return BankruptcyDecision(bankrupt=False)

        days = staleness.total_seconds() / 86400
        prefix = PROVIDER_REASONS.get(provider, "Sync data is stale")
        reason = f"{prefix}; last sync was {days:.1f} days ago"
        logger.info(f"Declaring sync bankruptcy for {account_id}: {reason}")
        return BankruptcyDecision(bankrupt=True, reason=reason)

    async def perform_fresh_sync_reset(self, account_id: str, provider: str) -> int:
        """
        Clear the account's cached emails and reset its sync state.

        Drafts and locally created records are left alone. Returns the
        number of emails deleted.
        """
        cleared = await self._emails.delete_many({
            "account_id": account_id,
            "is_draft": {"$ne": True},
        })
        await self._progress.reset_for_full_sync(account_id)
        if self._adaptive_interval is not None:
            await self._adaptive_interval.reset(account_id)

        event = BankruptcyEvent(
            account_id=account_id,
            provider=provider,
            reason=f"Fresh sync reset: {cleared} emails cleared",
            emails_cleared=cleared,
            timestamp=self._clock(),
        )
        logger.info(f"Sync bankruptcy for {account_id} ({provider}): {event.reason}")
        self.events.publish(event)
        return cleared

    async def check_and_reset(
        self,
        account_id: str,
        provider: str,
        last_sync_at: Optional[datetime],
    ) -> bool:
        decision = self.should_declare_bankruptcy(account_id, provider, last_sync_at)
        if decision.bankrupt:
            await self.perform_fresh_sync_reset(account_id, provider)
        return decision.bankrupt
