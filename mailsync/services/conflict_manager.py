"""
Conflict Manager

Applies conflict detection during sync, auto-resolves what is safe to
resolve, keeps content conflicts pending for the user, remembers per-type
user preferences and writes an immutable audit record for every resolution.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from mailsync.core.database import DocumentStore
from mailsync.core.events import EventChannel
from mailsync.services.conflict_detection import (
    ConflictDetector,
    ConflictEmailData,
    ConflictType,
    PendingConflict,
    to_conflict_data,
)
from mailsync.services.resolution_strategies import (
    ResolutionResult,
    ResolutionStrategy,
    auto_resolve,
    resolve_attribute_conflict,
    resolve_keep_local,
    resolve_keep_server,
    resolve_merged,
    resolve_metadata_conflict,
)

logger = logging.getLogger(__name__)

EMAILS_COLLECTION = "emails"
PENDING_CONFLICTS_COLLECTION = "pending_conflicts"
CONFLICT_AUDIT_COLLECTION = "conflict_audit"
CONFLICT_PREFERENCES_COLLECTION = "conflict_preferences"
PREFERENCES_DOC_ID = "default"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConflictPreference(str, Enum):
    """User preference for a conflict type."""
    ALWAYS_LOCAL = "always-local"
    ALWAYS_SERVER = "always-server"
    ALWAYS_ASK = "always-ask"


class ResolvedBy(str, Enum):
    SYSTEM = "system"
    USER = "user"


class ConflictEventKind(str, Enum):
    RAISED = "raised"
    RESOLVED = "resolved"


@dataclass
class ConflictEvent:
    kind: ConflictEventKind
    conflict: PendingConflict
    resolution: Optional[ResolutionStrategy] = None


@dataclass
class ConflictAuditRecord:
    """Immutable history entry describing how a conflict was settled."""
    id: str
    email_id: str
    account_id: str
    conflict_type: ConflictType
    conflicting_fields: List[str]
    local_version: Dict[str, Any]
    server_version: Dict[str, Any]
    resolution: ResolutionStrategy
    resolved_by: ResolvedBy
    resolved_at: datetime
    resolution_notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email_id": self.email_id,
            "account_id": self.account_id,
            "conflict_type": self.conflict_type.value,
            "conflicting_fields": self.conflicting_fields,
            "local_version": self.local_version,
            "server_version": self.server_version,
            "resolution": self.resolution.value,
            "resolved_by": self.resolved_by.value,
            "resolved_at": self.resolved_at,
            "resolution_notes": self.resolution_notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConflictAuditRecord":
        return cls(
            id=data["id"],
            email_id=data["email_id"],
            account_id=data["account_id"],
            conflict_type=ConflictType(data["conflict_type"]),
            conflicting_fields=list(data.get("conflicting_fields", [])),
            local_version=data.get("local_version", {}),
            server_version=data.get("server_version", {}),
            resolution=ResolutionStrategy(data["resolution"]),
            resolved_by=ResolvedBy(data["resolved_by"]),
            resolved_at=data["resolved_at"],
            resolution_notes=list(data.get("resolution_notes", [])),
        )


@dataclass
class ReconcileOutcome:
    """
    What the sync engine should store for an incoming server version.

    `record` is None when a pending content conflict keeps the local copy
    untouched until the user decides.
    """
    record: Optional[Dict[str, Any]]
    conflict: Optional[PendingConflict] = None
    resolution: Optional[ResolutionResult] = None


def apply_resolution(record: Dict[str, Any], data: ConflictEmailData) -> Dict[str, Any]:
    """Write resolved conflict fields back onto a full email record."""
    updated = dict(record)
    updated["subject"] = data.subject
    updated["body"] = {"html": data.body_html, "text": data.body_text}
    updated["read"] = data.read
    updated["starred"] = data.starred
    updated["importance"] = data.importance
    updated["labels"] = list(data.labels)
    updated["attributes"] = dict(data.attributes)
    updated["local_modified_at"] = None
    return updated


class ConflictManager:
    """
    Owns pending conflicts, preferences and the audit trail.

    Args:
        store: Document store for emails, pending conflicts, audit and preferences
        detector: Conflict detector; a default one is created if omitted
        clock: Returns the current aware UTC time
    """

    def __init__(
        self,
        store: DocumentStore,
        detector: Optional[ConflictDetector] = None,
        clock: Callable[[], datetime] = _utcnow,
        emails_collection: str = EMAILS_COLLECTION,
        pending_collection: str = PENDING_CONFLICTS_COLLECTION,
        audit_collection: str = CONFLICT_AUDIT_COLLECTION,
        preferences_collection: str = CONFLICT_PREFERENCES_COLLECTION,
    ):
        self.detector = detector or ConflictDetector()
        self._clock = clock
        self._emails = store.collection(emails_collection)
        self._pending = store.collection(pending_collection)
        self._audit = store.collection(audit_collection)
        self._preferences_collection = store.collection(preferences_collection)
        self._preferences: Dict[ConflictType, ConflictPreference] = {}
        self.events: EventChannel[ConflictEvent] = EventChannel("conflicts")

    # ==================== Preferences ====================

    async def load_preferences(self):
        doc = await self._preferences_collection.get(PREFERENCES_DOC_ID)
        self._preferences = {}
        for key, value in (doc or {}).get("preferences", {}).items():
            self._preferences[ConflictType(key)] = ConflictPreference(value)

    def get_preference(self, conflict_type: ConflictType) -> ConflictPreference:
        if conflict_type == ConflictType.CONTENT:
            return ConflictPreference.ALWAYS_ASK
        return self._preferences.get(conflict_type, ConflictPreference.ALWAYS_ASK)

    def get_preferences(self) -> Dict[str, str]:
        return {
            t.value: self.get_preference(t).value
            for t in ConflictType
            if t != ConflictType.NONE
        }

    async def set_preference(self, conflict_type: ConflictType, preference: ConflictPreference):
        """Persist a per-type preference. Content conflicts always ask."""
        if conflict_type == ConflictType.CONTENT and preference != ConflictPreference.ALWAYS_ASK:
            raise ValueError("Content conflicts always require explicit resolution")
        self._preferences[conflict_type] = preference
        await self._preferences_collection.upsert({
            "id": PREFERENCES_DOC_ID,
            "preferences": {t.value: p.value for t, p in self._preferences.items()},
        })

    # ==================== Sync-time reconciliation ====================

    async def reconcile(
        self,
        account_id: str,
        local_record: Dict[str, Any],
        server_record: Dict[str, Any],
    ) -> ReconcileOutcome:
        """
        Decide what to store when a server version arrives for a locally modified email.
        """
        local = to_conflict_data(local_record)
        server = to_conflict_data(server_record)
        result = self.detector.detect(local, server)

        if not result.has_conflict:
            return ReconcileOutcome(record=dict(server_record, local_modified_at=None))

        conflict = self.detector.create_pending_conflict(
            account_id, local, server, result, detected_at=self._clock()
        )
        preference = self.get_preference(result.type)

        if preference == ConflictPreference.ALWAYS_LOCAL:
            resolution = resolve_keep_local(local, server)
            notes = ["preference: always-local"] + resolution.changes_applied
        elif preference == ConflictPreference.ALWAYS_SERVER:
            resolution = resolve_keep_server(local, server)
            notes = ["preference: always-server"] + resolution.changes_applied
        else:
            resolution = self._auto_resolve(result.type, local, server)
            if resolution is None:
                existing = await self._pending.find(
                    {"email_id": conflict.email_id, "account_id": account_id}, limit=1
                )
                if existing:
                    # One open conflict per email; refresh it with the newest server copy
                    previous = PendingConflict.from_dict(existing[0])
                    conflict = replace(conflict, id=previous.id, detected_at=previous.detected_at)
                    await self._pending.upsert(conflict.to_dict())
                    logger.debug(f"Refreshed pending conflict {conflict.id} on {conflict.email_id}")
                    return ReconcileOutcome(record=None, conflict=conflict)

                await self._pending.upsert(conflict.to_dict())
                logger.info(
                    f"Content conflict on {conflict.email_id} ({', '.join(conflict.conflicting_fields)}) "
                    f"needs user resolution"
                )
                self.events.publish(ConflictEvent(ConflictEventKind.RAISED, conflict))
                return ReconcileOutcome(record=None, conflict=conflict)
            notes = resolution.changes_applied

        await self._write_audit(conflict, resolution, ResolvedBy.SYSTEM, notes)
        logger.debug(
            f"Auto-resolved {result.type.value} conflict on {conflict.email_id} "
            f"via {resolution.strategy.value}"
        )
        return ReconcileOutcome(
            record=apply_resolution(server_record, resolution.resolved_data),
            conflict=conflict,
            resolution=resolution,
        )

    def _auto_resolve(
        self,
        conflict_type: ConflictType,
        local: ConflictEmailData,
        server: ConflictEmailData,
    ) -> Optional[ResolutionResult]:
        resolution = auto_resolve(conflict_type, local, server)
        if resolution is None:
            return None

        changes = list(resolution.changes_applied)
        resolved = resolution.resolved_data

        if conflict_type == ConflictType.LABELS:
            # Flags changed alongside labels still follow last-write-wins
            metadata = resolve_metadata_conflict(local, replace(resolved, local_modified_at=None))
            resolved = replace(resolved, read=metadata.resolved_data.read,
                               starred=metadata.resolved_data.starred,
                               importance=metadata.resolved_data.importance)
            changes.extend(metadata.changes_applied)

        if local.attributes != server.attributes:
            attributes = resolve_attribute_conflict(local, server)
            resolved = replace(resolved, attributes=attributes.resolved_data.attributes)
            changes.extend(attributes.changes_applied)

        return ResolutionResult(resolved, resolution.strategy, changes)

    # ==================== User resolution ====================

    async def get_pending_conflict(self, conflict_id: str) -> Optional[PendingConflict]:
        doc = await self._pending.get(conflict_id)
        return PendingConflict.from_dict(doc) if doc else None

    async def get_pending_conflicts(self, account_id: Optional[str] = None) -> List[PendingConflict]:
        query = {"account_id": account_id} if account_id else {}
        docs = await self._pending.find(query, sort=[("detected_at", 1)])
        return [PendingConflict.from_dict(d) for d in docs]

    async def get_pending_count(self, account_id: Optional[str] = None) -> int:
        return await self._pending.count({"account_id": account_id} if account_id else {})

    async def resolve_conflict(
        self,
        conflict_id: str,
        strategy: ResolutionStrategy,
        merged: Optional[ConflictEmailData] = None,
        notes: Optional[List[str]] = None,
    ) -> ResolutionResult:
        """
        Settle a pending conflict with the user's choice.

        Raises:
            KeyError: If no such pending conflict exists
            ValueError: If a merged resolution lacks merged data
        """
        conflict = await self.get_pending_conflict(conflict_id)
        if conflict is None:
            raise KeyError(conflict_id)

        if strategy == ResolutionStrategy.LOCAL:
            resolution = resolve_keep_local(conflict.local_version, conflict.server_version)
        elif strategy == ResolutionStrategy.SERVER:
            resolution = resolve_keep_server(conflict.local_version, conflict.server_version)
        elif strategy == ResolutionStrategy.MERGED:
            if merged is None:
                raise ValueError("Merged resolution requires merged data")
            resolution = resolve_merged(merged, notes)
        else:
            raise ValueError(f"Unsupported manual resolution: {strategy.value}")

        record = await self._emails.get(conflict.email_id)
        if record is not None:
            await self._emails.upsert(apply_resolution(record, resolution.resolved_data))

        await self._write_audit(conflict, resolution, ResolvedBy.USER, resolution.changes_applied)
        await self._pending.delete_many({"email_id": conflict.email_id, "account_id": conflict.account_id})
        logger.info(f"Conflict {conflict.id} on {conflict.email_id} resolved by user: {strategy.value}")
        self.events.publish(ConflictEvent(ConflictEventKind.RESOLVED, conflict, resolution.strategy))
        return resolution

    async def discard_for_account(self, account_id: str) -> int:
        return await self._pending.delete_many({"account_id": account_id})

    # ==================== Audit ====================

    async def _write_audit(
        self,
        conflict: PendingConflict,
        resolution: ResolutionResult,
        resolved_by: ResolvedBy,
        notes: List[str],
    ):
        record = ConflictAuditRecord(
            id=str(uuid.uuid4()),
            email_id=conflict.email_id,
            account_id=conflict.account_id,
            conflict_type=conflict.type,
            conflicting_fields=list(conflict.conflicting_fields),
            local_version=conflict.local_version.to_dict(),
            server_version=conflict.server_version.to_dict(),
            resolution=resolution.strategy,
            resolved_by=resolved_by,
            resolved_at=self._clock(),
            resolution_notes=list(notes),
        )
        await self._audit.upsert(record.to_dict())

    async def get_conflict_history(
        self,
        account_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[ConflictAuditRecord]:
        query = {"account_id": account_id} if account_id else {}
        docs = await self._audit.find(query, sort=[("resolved_at", -1)], limit=limit)
        return [ConflictAuditRecord.from_dict(d) for d in docs]
