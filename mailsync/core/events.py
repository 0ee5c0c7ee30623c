"""
Publish/subscribe channels for sync events.

Each event category (sync lifecycle, conflicts, throttle changes, circuit
transitions, bankruptcy) gets its own EventChannel. Subscribers register a
callable and receive an unsubscribe function back; owners tear their
subscriptions down on shutdown.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class EventChannel(Generic[T]):
    """
    Simple in-process event channel.

    Listeners may be plain callables or coroutine functions. Coroutine
    results are scheduled on the running loop; listener errors are logged
    and never propagate to the publisher.
    """

    def __init__(self, name: str):
        self.name = name
        self._listeners: List[Callable[[T], Any]] = []
        self._pending: Set[asyncio.Task] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Callable[[T], Any]) -> Callable[[], None]:
        """Register a listener. Returns a function that removes it again."""
        self._listeners.append(listener)

        def unsubscribe():
            self.unsubscribe(listener)

        return unsubscribe

    def unsubscribe(self, listener: Callable[[T], Any]):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: T):
        """Deliver an event to every current listener."""
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_listener_done)
            except Exception as e:
                logger.warning(f"Event listener error on channel '{self.name}': {e}")

    def _on_listener_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Async event listener error on channel '{self.name}': {exc}")

    def clear(self):
        """Drop all listeners."""
        self._listeners.clear()


# ==================== Event Types ====================

class SyncLifecycleStatus(str, Enum):
    """Stages a sync unit of work moves through."""
    QUEUED = "queued"
    PROCESSING = "processing"
    SYNCED = "synced"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry-scheduled"


@dataclass
class SyncLifecycleEvent:
    """Lifecycle notification for an account sync or a single item."""
    account_id: str
    status: SyncLifecycleStatus
    email_id: Optional[str] = None
    detail: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "status": self.status.value,
            "email_id": self.email_id,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class BankruptcyEvent:
    """Emitted whenever an account's cached state is discarded for a fresh sync."""
    account_id: str
    provider: str
    reason: str
    emails_cleared: int = 0
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "provider": self.provider,
            "reason": self.reason,
            "emails_cleared": self.emails_cleared,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class UserActionEvent:
    """A local, user-initiated mailbox action (send, archive, label)."""
    account_id: str
    action: str
    timestamp: datetime = field(default_factory=utcnow)
