"""
Sync Failure Tracker

Persists the failure lifecycle of individual emails that could not be synced:

    pending -> retrying -> resolved | exhausted | permanent | dismissed

There is at most one open record per (email, account). Repeat failures
update that record in place, so a periodic sweep over
`get_pending_retries()` can resume stalled retries without a timer per item.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from mailsync.core.database import DocumentCollection, DocumentStore
from mailsync.services.error_classification import (
    ClassifiedError,
    ErrorType,
    FailureStatus,
    classify_error,
    get_failure_status,
    should_retry,
)
from mailsync.services.retry_engine import (
    DEFAULT_RETRY_CONFIG,
    RetryConfig,
    calculate_retry_delay_with_header,
)

logger = logging.getLogger(__name__)

SYNC_FAILURES_COLLECTION = "sync_failures"

OPEN_STATUSES = [FailureStatus.PENDING.value, FailureStatus.RETRYING.value]
ACTIONABLE_STATUSES = [FailureStatus.EXHAUSTED.value, FailureStatus.PERMANENT.value]
CLOSED_STATUSES = [FailureStatus.RESOLVED.value, FailureStatus.DISMISSED.value]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncFailure:
    """Persisted failure record for one email of one account."""
    id: str
    email_id: str
    account_id: str
    provider: str
    error_type: ErrorType
    error_message: str
    error_code: Optional[int] = None
    retry_count: int = 0
    max_retries: int = 3
    status: FailureStatus = FailureStatus.PENDING
    last_attempt_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email_id": self.email_id,
            "account_id": self.account_id,
            "provider": self.provider,
            "error_type": self.error_type.value,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "status": self.status.value,
            "last_attempt_at": self.last_attempt_at,
            "next_retry_at": self.next_retry_at,
            "created_at": self.created_at,
            "resolved_at": self.resolved_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncFailure":
        return cls(
            id=data["id"],
            email_id=data["email_id"],
            account_id=data["account_id"],
            provider=data.get("provider", ""),
            error_type=ErrorType(data.get("error_type", "unknown")),
            error_message=data.get("error_message", ""),
            error_code=data.get("error_code"),
            retry_count=data.get("retry_count", 0),
            max_retries=data.get("max_retries", DEFAULT_RETRY_CONFIG.max_retries),
            status=FailureStatus(data.get("status", "pending")),
            last_attempt_at=data.get("last_attempt_at"),
            next_retry_at=data.get("next_retry_at"),
            created_at=data.get("created_at"),
            resolved_at=data.get("resolved_at"),
        )


@dataclass
class RecordFailureResult:
    """What happened when a failure was recorded."""
    failure: SyncFailure
    should_retry: bool
    next_retry_at: Optional[datetime] = None
    retry_delay: Optional[float] = None


@dataclass
class SyncFailureStats:
    """Failure counts by status, for progress reporting."""
    pending_count: int = 0
    retrying_count: int = 0
    exhausted_count: int = 0
    permanent_count: int = 0
    resolved_count: int = 0
    dismissed_count: int = 0
    total_count: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)

    @property
    def open_count(self) -> int:
        return self.pending_count + self.retrying_count

    @property
    def actionable_count(self) -> int:
        return self.exhausted_count + self.permanent_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pending_count": self.pending_count,
            "retrying_count": self.retrying_count,
            "exhausted_count": self.exhausted_count,
            "permanent_count": self.permanent_count,
            "resolved_count": self.resolved_count,
            "dismissed_count": self.dismissed_count,
            "total_count": self.total_count,
        }


class SyncFailureTracker:
    """
    Records, updates and queries per-email sync failures.

    Args:
        store: Document store holding the failure collection
        config: Retry policy deciding statuses and next attempt times
        clock: Returns the current aware UTC time; replaceable in tests
    """

    def __init__(
        self,
        store: DocumentStore,
        config: Optional[RetryConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
        collection_name: str = SYNC_FAILURES_COLLECTION,
    ):
        self.config = config or DEFAULT_RETRY_CONFIG
        self._clock = clock
        self._collection: DocumentCollection = store.collection(collection_name)

    async def record_failure(
        self,
        email_id: str,
        account_id: str,
        provider: str,
        error: BaseException,
        classification: Optional[ClassifiedError] = None,
    ) -> RecordFailureResult:
        """
        Record a failed sync attempt for an email.

        An open (pending/retrying) record for the same email and account is
        updated in place with an incremented retry count; otherwise a new
        record starting at retry count 0 is created.
        """
        classification = classification or classify_error(error)
        now = self._clock()

        existing_docs = await self._collection.find(
            {"email_id": email_id, "account_id": account_id, "status": {"$in": OPEN_STATUSES}},
            limit=1,
        )

        if existing_docs:
            failure = SyncFailure.from_dict(existing_docs[0])
            failure.retry_count += 1
            failure.error_type = classification.type
            failure.error_message = classification.message
            failure.error_code = classification.http_status
            failure.last_attempt_at = now
        else:
            failure = SyncFailure(
                id=str(uuid.uuid4()),
                email_id=email_id,
                account_id=account_id,
                provider=provider,
                error_type=classification.type,
                error_message=classification.message,
                error_code=classification.http_status,
                retry_count=0,
                max_retries=self.config.max_retries,
                last_attempt_at=now,
                created_at=now,
            )

        failure.status = get_failure_status(classification, failure.retry_count, failure.max_retries)
        retry = should_retry(classification, failure.retry_count, failure.max_retries)

        retry_delay = None
        if failure.status == FailureStatus.PENDING:
            retry_delay = calculate_retry_delay_with_header(
                failure.retry_count, classification.retry_after, self.config
            )
            failure.next_retry_at = now + timedelta(seconds=retry_delay)
        else:
            failure.next_retry_at = None

        await self._collection.upsert(failure.to_dict())

        if failure.status == FailureStatus.PENDING:
            logger.debug(
                f"Sync failure for {email_id} ({classification.type.value}), "
                f"retry {failure.retry_count}/{failure.max_retries} in {retry_delay:.1f}s"
            )
        else:
            logger.warning(
                f"Sync failure for {email_id} is {failure.status.value}: {classification.message}"
            )

        return RecordFailureResult(
            failure=failure,
            should_retry=retry,
            next_retry_at=failure.next_retry_at,
            retry_delay=retry_delay,
        )

    async def get_failure(self, failure_id: str) -> Optional[SyncFailure]:
        doc = await self._collection.get(failure_id)
        return SyncFailure.from_dict(doc) if doc else None

    async def _set_status(self, failure_id: str, status: FailureStatus, **changes) -> Optional[SyncFailure]:
        failure = await self.get_failure(failure_id)
        if not failure:
            return None
        failure.status = status
        for key, value in changes.items():
            setattr(failure, key, value)
        await self._collection.upsert(failure.to_dict())
        return failure

    async def mark_resolved(self, failure_id: str) -> Optional[SyncFailure]:
        return await self._set_status(
            failure_id, FailureStatus.RESOLVED, resolved_at=self._clock(), next_retry_at=None
        )

    async def mark_resolved_by_email_id(self, email_id: str, account_id: str) -> int:
        """Resolve every unresolved failure of an email that has now synced. Returns the count."""
        docs = await self._collection.find({
            "email_id": email_id,
            "account_id": account_id,
            "status": {"$in": OPEN_STATUSES + ACTIONABLE_STATUSES},
        })
        for doc in docs:
            await self.mark_resolved(doc["id"])
        return len(docs)

    async def mark_retrying(self, failure_id: str) -> Optional[SyncFailure]:
        return await self._set_status(failure_id, FailureStatus.RETRYING, last_attempt_at=self._clock())

    async def dismiss_failure(self, failure_id: str) -> Optional[SyncFailure]:
        return await self._set_status(
            failure_id, FailureStatus.DISMISSED, resolved_at=self._clock(), next_retry_at=None
        )

    async def get_pending_retries(self, account_id: Optional[str] = None) -> List[SyncFailure]:
        """Pending failures whose next attempt is due now."""
        query: Dict[str, Any] = {
            "status": FailureStatus.PENDING.value,
            "next_retry_at": {"$lte": self._clock()},
        }
        if account_id:
            query["account_id"] = account_id
        docs = await self._collection.find(query, sort=[("next_retry_at", 1)])
        return [SyncFailure.from_dict(d) for d in docs]

    async def get_failures_by_account(
        self,
        account_id: str,
        status: Optional[FailureStatus] = None,
    ) -> List[SyncFailure]:
        query: Dict[str, Any] = {"account_id": account_id}
        if status:
            query["status"] = status.value
        docs = await self._collection.find(query, sort=[("created_at", -1)])
        return [SyncFailure.from_dict(d) for d in docs]

    async def get_actionable_failures(self, account_id: Optional[str] = None) -> List[SyncFailure]:
        """Failures that need the user: exhausted or permanent."""
        query: Dict[str, Any] = {"status": {"$in": ACTIONABLE_STATUSES}}
        if account_id:
            query["account_id"] = account_id
        docs = await self._collection.find(query, sort=[("created_at", -1)])
        return [SyncFailure.from_dict(d) for d in docs]

    async def get_stats(self, account_id: Optional[str] = None) -> SyncFailureStats:
        base: Dict[str, Any] = {"account_id": account_id} if account_id else {}
        stats = SyncFailureStats()
        for status in FailureStatus:
            count = await self._collection.count({**base, "status": status.value})
            stats.by_status[status.value] = count
            setattr(stats, f"{status.value}_count", count)
            stats.total_count += count
        return stats

    async def retry_all_exhausted(self, account_id: str) -> int:
        """Make every exhausted failure of an account immediately eligible again."""
        docs = await self._collection.find(
            {"account_id": account_id, "status": FailureStatus.EXHAUSTED.value}
        )
        now = self._clock()
        for doc in docs:
            failure = SyncFailure.from_dict(doc)
            failure.status = FailureStatus.PENDING
            failure.retry_count = 0
            failure.next_retry_at = now
            await self._collection.upsert(failure.to_dict())
        if docs:
            logger.info(f"Reset {len(docs)} exhausted failures for account {account_id}")
        return len(docs)

    async def cleanup_old_failures(self, max_age: timedelta = timedelta(days=7)) -> int:
        """Delete resolved/dismissed records older than max_age."""
        cutoff = self._clock() - max_age
        deleted = await self._collection.delete_many({
            "status": {"$in": CLOSED_STATUSES},
            "resolved_at": {"$lt": cutoff},
        })
        if deleted:
            logger.info(f"Cleaned up {deleted} old sync failure records")
        return deleted
