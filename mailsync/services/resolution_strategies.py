"""
Conflict resolution strategies.

Every strategy returns a ResolutionResult whose data has the local dirty
marker cleared, plus the exact list of field changes that goes into the
audit trail.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from mailsync.services.conflict_detection import ConflictEmailData, ConflictType

logger = logging.getLogger(__name__)


class ResolutionStrategy(str, Enum):
    """How a conflict was settled."""
    AUTO_LWW = "auto-lww"
    AUTO_MERGE = "auto-merge"
    LOCAL = "local"
    SERVER = "server"
    MERGED = "merged"


@dataclass
class ResolutionResult:
    resolved_data: ConflictEmailData
    strategy: ResolutionStrategy
    changes_applied: List[str] = field(default_factory=list)


def _local_is_newer(local: ConflictEmailData, server: ConflictEmailData) -> bool:
    local_ts = local.local_modified_at or local.timestamp
    if local_ts is None or server.timestamp is None:
        return local_ts is not None
    return local_ts > server.timestamp


def resolve_metadata_conflict(local: ConflictEmailData, server: ConflictEmailData) -> ResolutionResult:
    """Last-write-wins over read, starred and importance."""
    resolved = replace(server, labels=list(server.labels), attributes=dict(server.attributes), local_modified_at=None)
    changes: List[str] = []

    if _local_is_newer(local, server):
        for name in ("read", "starred", "importance"):
            local_value = getattr(local, name)
            if local_value != getattr(server, name):
                setattr(resolved, name, local_value)
                changes.append(f"{name}: {local_value}")

    return ResolutionResult(resolved, ResolutionStrategy.AUTO_LWW, changes)


def resolve_label_conflict(local: ConflictEmailData, server: ConflictEmailData) -> ResolutionResult:
    """Union of both label sets; no label is ever dropped."""
    local_labels = set(local.labels)
    server_labels = set(server.labels)
    merged = sorted(local_labels | server_labels)

    changes: List[str] = []
    from_local = sorted(local_labels - server_labels)
    from_server = sorted(server_labels - local_labels)
    if from_local:
        changes.append(f"added from local: {', '.join(from_local)}")
    if from_server:
        changes.append(f"added from server: {', '.join(from_server)}")

    resolved = replace(server, labels=merged, attributes=dict(server.attributes), local_modified_at=None)
    return ResolutionResult(resolved, ResolutionStrategy.AUTO_MERGE, changes)


def resolve_attribute_conflict(local: ConflictEmailData, server: ConflictEmailData) -> ResolutionResult:
    """
    Per-key merge of custom attributes.

    Keys present on one side only are kept; overlapping keys with different
    values go to the more recently modified side.
    """
    local_newer = _local_is_newer(local, server)
    merged: Dict[str, Any] = {}
    changes: List[str] = []

    for key in sorted(set(local.attributes) | set(server.attributes)):
        in_local = key in local.attributes
        in_server = key in server.attributes
        if in_local and not in_server:
            merged[key] = local.attributes[key]
            changes.append(f"kept local: {key}")
        elif in_server and not in_local:
            merged[key] = server.attributes[key]
            changes.append(f"kept server: {key}")
        elif local.attributes[key] == server.attributes[key]:
            merged[key] = server.attributes[key]
        elif local_newer:
            merged[key] = local.attributes[key]
            changes.append(f"{key}: local wins ({local.attributes[key]})")
        else:
            merged[key] = server.attributes[key]
            changes.append(f"{key}: server wins ({server.attributes[key]})")

    resolved = replace(server, labels=list(server.labels), attributes=merged, local_modified_at=None)
    return ResolutionResult(resolved, ResolutionStrategy.AUTO_MERGE, changes)


def resolve_keep_local(local: ConflictEmailData, server: ConflictEmailData) -> ResolutionResult:
    resolved = replace(local, labels=list(local.labels), attributes=dict(local.attributes), local_modified_at=None)
    return ResolutionResult(resolved, ResolutionStrategy.LOCAL, ["kept all local changes"])


def resolve_keep_server(local: ConflictEmailData, server: ConflictEmailData) -> ResolutionResult:
    resolved = replace(server, labels=list(server.labels), attributes=dict(server.attributes), local_modified_at=None)
    return ResolutionResult(resolved, ResolutionStrategy.SERVER, ["accepted all server changes"])


def resolve_merged(
    merged: ConflictEmailData,
    description: Optional[List[str]] = None,
) -> ResolutionResult:
    """User-provided merge of both versions."""
    resolved = replace(merged, labels=list(merged.labels), attributes=dict(merged.attributes), local_modified_at=None)
    return ResolutionResult(resolved, ResolutionStrategy.MERGED, description or ["manually merged by user"])


def auto_resolve(
    conflict_type: ConflictType,
    local: ConflictEmailData,
    server: ConflictEmailData,
) -> Optional[ResolutionResult]:
    """
    Resolve a conflict without user input where that is safe.

    Returns None for content conflicts, which always need the user.
    """
    if conflict_type == ConflictType.METADATA:
        return resolve_metadata_conflict(local, server)
    if conflict_type == ConflictType.LABELS:
        return resolve_label_conflict(local, server)
    if conflict_type == ConflictType.NONE:
        return resolve_keep_server(local, server)
    return None
