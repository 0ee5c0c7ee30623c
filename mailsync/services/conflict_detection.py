"""
Conflict detection between local and server versions of an email.

A conflict can only exist when the local copy carries an uncommitted
modification (`local_modified_at`) that is strictly newer than the server
version's timestamp. Fields are then checked in priority order:
content, labels, metadata.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ConflictType(str, Enum):
    """What kind of divergence was found."""
    NONE = "none"
    CONTENT = "content"
    LABELS = "labels"
    METADATA = "metadata"


CONTENT_FIELDS = ("subject", "body_html", "body_text")
METADATA_FIELDS = ("read", "starred", "importance")


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class ConflictEmailData:
    """The fields of an email that take part in conflict detection."""
    id: str
    timestamp: Optional[datetime]  # server modification (or received) time
    subject: str = ""
    body_html: str = ""
    body_text: str = ""
    read: bool = False
    starred: bool = False
    importance: str = "normal"
    labels: List[str] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)
    local_modified_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "subject": self.subject,
            "body_html": self.body_html,
            "body_text": self.body_text,
            "read": self.read,
            "starred": self.starred,
            "importance": self.importance,
            "labels": list(self.labels),
            "attributes": dict(self.attributes),
            "local_modified_at": self.local_modified_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConflictEmailData":
        return cls(
            id=data["id"],
            timestamp=_as_datetime(data["timestamp"]),
            subject=data.get("subject", ""),
            body_html=data.get("body_html", ""),
            body_text=data.get("body_text", ""),
            read=data.get("read", False),
            starred=data.get("starred", False),
            importance=data.get("importance", "normal"),
            labels=list(data.get("labels", [])),
            attributes=dict(data.get("attributes") or {}),
            local_modified_at=_as_datetime(data.get("local_modified_at")),
        )


@dataclass
class ConflictResult:
    """Outcome of comparing one local/server pair."""
    type: ConflictType
    conflicting_fields: List[str] = field(default_factory=list)
    local_timestamp: Optional[datetime] = None
    server_timestamp: Optional[datetime] = None

    @property
    def has_conflict(self) -> bool:
        return self.type != ConflictType.NONE


@dataclass
class PendingConflict:
    """A detected conflict waiting for resolution."""
    id: str
    email_id: str
    account_id: str
    type: ConflictType
    local_version: ConflictEmailData
    server_version: ConflictEmailData
    conflicting_fields: List[str]
    detected_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email_id": self.email_id,
            "account_id": self.account_id,
            "type": self.type.value,
            "local_version": self.local_version.to_dict(),
            "server_version": self.server_version.to_dict(),
            "conflicting_fields": list(self.conflicting_fields),
            "detected_at": self.detected_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingConflict":
        return cls(
            id=data["id"],
            email_id=data["email_id"],
            account_id=data["account_id"],
            type=ConflictType(data["type"]),
            local_version=ConflictEmailData.from_dict(data["local_version"]),
            server_version=ConflictEmailData.from_dict(data["server_version"]),
            conflicting_fields=list(data.get("conflicting_fields", [])),
            detected_at=_as_datetime(data["detected_at"]),
        )


def to_conflict_data(record: Dict[str, Any]) -> ConflictEmailData:
    """Project a stored/normalized email record onto the conflict-relevant fields."""
    body = record.get("body") or {}
    return ConflictEmailData(
        id=record["id"],
        timestamp=_as_datetime(record.get("server_updated_at") or record.get("timestamp")),
        subject=record.get("subject", ""),
        body_html=body.get("html", "") if isinstance(body, dict) else "",
        body_text=body.get("text", "") if isinstance(body, dict) else "",
        read=record.get("read", False),
        starred=record.get("starred", False),
        importance=record.get("importance", "normal"),
        labels=list(record.get("labels", [])),
        attributes=dict(record.get("attributes") or {}),
        local_modified_at=_as_datetime(record.get("local_modified_at")),
    )


class ConflictDetector:
    """Pure comparison of local and server snapshots."""

    def detect(self, local: ConflictEmailData, server: ConflictEmailData) -> ConflictResult:
        """
        Classify the divergence between a local and a server version.

        Equal timestamps count as no conflict: the server version wins.
        """
        local_ts = local.local_modified_at
        server_ts = server.timestamp

        if local_ts is None or (server_ts is not None and server_ts >= local_ts):
            return ConflictResult(ConflictType.NONE, [], local_ts, server_ts)

        content = [f for f in CONTENT_FIELDS if getattr(local, f) != getattr(server, f)]
        if content:
            return ConflictResult(ConflictType.CONTENT, content, local_ts, server_ts)

        if set(local.labels) != set(server.labels):
            return ConflictResult(ConflictType.LABELS, ["labels"], local_ts, server_ts)

        metadata = [f for f in METADATA_FIELDS if getattr(local, f) != getattr(server, f)]
        if metadata:
            return ConflictResult(ConflictType.METADATA, metadata, local_ts, server_ts)

        return ConflictResult(ConflictType.NONE, [], local_ts, server_ts)

    def detect_batch(
        self,
        pairs: List[Tuple[ConflictEmailData, ConflictEmailData]],
    ) -> List[Tuple[ConflictEmailData, ConflictEmailData, ConflictResult]]:
        """Detect over many pairs, returning only the ones that conflict."""
        conflicts = []
        for local, server in pairs:
            result = self.detect(local, server)
            if result.has_conflict:
                conflicts.append((local, server, result))
        return conflicts

    def create_pending_conflict(
        self,
        account_id: str,
        local: ConflictEmailData,
        server: ConflictEmailData,
        result: ConflictResult,
        detected_at: Optional[datetime] = None,
    ) -> PendingConflict:
        return PendingConflict(
            id=str(uuid.uuid4()),
            email_id=local.id,
            account_id=account_id,
            type=result.type,
            local_version=local,
            server_version=server,
            conflicting_fields=list(result.conflicting_fields),
            detected_at=detected_at or datetime.now(timezone.utc),
        )
