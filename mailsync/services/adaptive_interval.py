"""
Adaptive polling intervals.

Accounts that keep receiving mail are polled often; accounts that stay
quiet back off through idle tiers. A local user action snaps the account
back to the fastest tier.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from mailsync.core.database import DocumentStore

logger = logging.getLogger(__name__)

ADAPTIVE_INTERVAL_COLLECTION = "adaptive_interval"
SETTINGS_DOC_ID = "__settings__"

# Interval tiers in seconds
ACTIVE_INTERVAL = 60.0
DEFAULT_INTERVAL = 180.0
IDLE_3_INTERVAL = 300.0
IDLE_10_INTERVAL = 600.0

IDLE_THRESHOLD_MID = 3
IDLE_THRESHOLD_SLOW = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AccountActivityState:
    """Adaptive polling state for one account."""
    consecutive_idle_syncs: int = 0
    last_sync_had_activity: bool = False
    last_user_action_at: Optional[datetime] = None
    current_interval: float = DEFAULT_INTERVAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consecutive_idle_syncs": self.consecutive_idle_syncs,
            "last_sync_had_activity": self.last_sync_had_activity,
            "last_user_action_at": self.last_user_action_at,
            "current_interval": self.current_interval,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccountActivityState":
        return cls(
            consecutive_idle_syncs=data.get("consecutive_idle_syncs", 0),
            last_sync_had_activity=data.get("last_sync_had_activity", False),
            last_user_action_at=data.get("last_user_action_at"),
            current_interval=data.get("current_interval", DEFAULT_INTERVAL),
        )


class AdaptiveIntervalService:
    """
    Computes per-account polling intervals from recent activity.

    State is written through to the document store when one is given, so
    idle streaks survive restarts.
    """

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        min_interval: float = ACTIVE_INTERVAL,
        max_interval: float = IDLE_10_INTERVAL,
        enabled: bool = True,
        clock: Callable[[], datetime] = _utcnow,
        collection_name: str = ADAPTIVE_INTERVAL_COLLECTION,
    ):
        self.min_interval = min_interval
        self.max_interval = max_interval
        self._enabled = enabled
        self._clock = clock
        self._states: Dict[str, AccountActivityState] = {}
        self._collection = store.collection(collection_name) if store is not None else None

    def _clamp(self, interval: float) -> float:
        return max(self.min_interval, min(self.max_interval, interval))

    def _interval_for(self, state: AccountActivityState) -> float:
        if state.last_sync_had_activity:
            return self._clamp(ACTIVE_INTERVAL)
        if state.consecutive_idle_syncs >= IDLE_THRESHOLD_SLOW:
            return self._clamp(IDLE_10_INTERVAL)
        if state.consecutive_idle_syncs >= IDLE_THRESHOLD_MID:
            return self._clamp(IDLE_3_INTERVAL)
        return self._clamp(DEFAULT_INTERVAL)

    def get_interval(self, account_id: str) -> float:
        """Seconds until the account's next sync."""
        if not self._enabled:
            return DEFAULT_INTERVAL
        state = self._states.get(account_id)
        if state is None:
            return self._clamp(DEFAULT_INTERVAL)
        return state.current_interval

    async def record_sync_result(self, account_id: str, had_new_messages: bool) -> float:
        """Update the account's tier after a sync. Returns the new interval."""
        state = self._states.setdefault(account_id, AccountActivityState())

        if had_new_messages:
            state.consecutive_idle_syncs = 0
            state.last_sync_had_activity = True
        else:
            state.consecutive_idle_syncs += 1
            state.last_sync_had_activity = False

        previous = state.current_interval
        state.current_interval = self._interval_for(state)
        if state.current_interval != previous:
            logger.info(
                f"Sync interval for {account_id}: {previous:.0f}s -> {state.current_interval:.0f}s "
                f"({state.consecutive_idle_syncs} idle syncs)"
            )
        await self._save(account_id, state)
        return state.current_interval

    async def record_user_action(self, account_id: str) -> float:
        """A send/archive/label action forces the active tier."""
        state = self._states.setdefault(account_id, AccountActivityState())
        state.consecutive_idle_syncs = 0
        state.last_sync_had_activity = True
        state.last_user_action_at = self._clock()
        state.current_interval = self._clamp(ACTIVE_INTERVAL)
        await self._save(account_id, state)
        return state.current_interval

    def is_enabled(self) -> bool:
        return self._enabled

    async def set_enabled(self, enabled: bool):
        self._enabled = enabled
        logger.info(f"Adaptive polling {'enabled' if enabled else 'disabled'}")
        if self._collection is not None:
            await self._collection.upsert({"id": SETTINGS_DOC_ID, "enabled": enabled})

    def get_state(self, account_id: str) -> Optional[AccountActivityState]:
        state = self._states.get(account_id)
        return replace(state) if state else None

    async def reset(self, account_id: Optional[str] = None):
        """Forget activity for one account, or for all accounts."""
        if account_id is None:
            self._states.clear()
            if self._collection is not None:
                await self._collection.delete_many({"id": {"$ne": SETTINGS_DOC_ID}})
            return
        self._states.pop(account_id, None)
        if self._collection is not None:
            await self._collection.delete(account_id)

    async def load(self):
        """Restore persisted state and the enabled flag."""
        if self._collection is None:
            return
        for doc in await self._collection.find({}):
            if doc["id"] == SETTINGS_DOC_ID:
                self._enabled = doc.get("enabled", self._enabled)
            else:
                self._states[doc["id"]] = AccountActivityState.from_dict(doc)
        logger.debug(f"Loaded adaptive interval state for {len(self._states)} accounts")

    async def _save(self, account_id: str, state: AccountActivityState):
        if self._collection is not None:
            await self._collection.upsert({"id": account_id, **state.to_dict()})
