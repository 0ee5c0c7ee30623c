"""
Pydantic schemas for the Sync API.

These schemas define the request/response models for sync control,
progress reporting, failure management and conflict resolution.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from mailsync.providers.base import ProviderType
from mailsync.services.conflict_detection import ConflictType
from mailsync.services.conflict_manager import ConflictPreference
from mailsync.services.resolution_strategies import ResolutionStrategy


# ==================== Accounts & Sync ====================

class AccountCreateRequest(BaseModel):
    """Request to add an account to the sync rotation."""
    account_id: str = Field(..., min_length=1, max_length=100)
    provider: ProviderType


class SyncProgressResponse(BaseModel):
    """Current sync progress of one account."""
    account_id: str
    provider: str
    status: str
    initial_sync_complete: bool = False
    emails_synced: int = 0
    total_emails_to_sync: int = 0
    progress_percentage: float = 0.0
    estimated_time_remaining: int = 0
    last_sync_at: Optional[datetime] = None
    next_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    failures: dict[str, int] = Field(default_factory=dict)


class SyncProgressListResponse(BaseModel):
    accounts: list[SyncProgressResponse]
    total: int


class SyncResultResponse(BaseModel):
    """Outcome of a manually triggered sync."""
    account_id: str
    skipped: bool = False
    mode: Optional[str] = None
    succeeded: int = 0
    failed: int = 0
    retrying: int = 0
    deleted: int = 0
    new_messages: int = 0
    conflicts: int = 0
    fell_back_to_full: bool = False
    paused: bool = False
    bankrupt: bool = False


class RetrySweepResponse(BaseModel):
    account_id: str
    processed: int
    succeeded: int


# ==================== Failures ====================

class SyncFailureResponse(BaseModel):
    """A tracked per-email sync failure."""
    id: str
    email_id: str
    account_id: str
    provider: str
    error_type: str
    error_message: str
    error_code: Optional[int] = None
    retry_count: int = 0
    max_retries: int = 3
    status: str
    last_attempt_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class SyncFailureListResponse(BaseModel):
    failures: list[SyncFailureResponse]
    total: int


class SyncFailureStatsResponse(BaseModel):
    pending_count: int = 0
    retrying_count: int = 0
    exhausted_count: int = 0
    permanent_count: int = 0
    resolved_count: int = 0
    dismissed_count: int = 0
    total_count: int = 0


class RetryAllResponse(BaseModel):
    account_id: str
    requeued: int


# ==================== Circuit breaker & polling ====================

class CircuitStatusResponse(BaseModel):
    provider: str
    state: str
    cooldown_remaining: float
    failure_count: int
    consecutive_failures: int
    last_failure_time: Optional[float] = None


class AdaptivePollingRequest(BaseModel):
    enabled: bool


class AdaptivePollingResponse(BaseModel):
    enabled: bool
    fixed_interval_seconds: float


# ==================== Conflicts ====================

class ConflictVersion(BaseModel):
    """Conflict-relevant fields of one version of an email."""
    id: str
    timestamp: Optional[datetime] = None
    subject: str = ""
    body_html: str = ""
    body_text: str = ""
    read: bool = False
    starred: bool = False
    importance: str = "normal"
    labels: list[str] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)
    local_modified_at: Optional[datetime] = None


class PendingConflictResponse(BaseModel):
    id: str
    email_id: str
    account_id: str
    type: ConflictType
    local_version: ConflictVersion
    server_version: ConflictVersion
    conflicting_fields: list[str]
    detected_at: datetime


class PendingConflictListResponse(BaseModel):
    conflicts: list[PendingConflictResponse]
    total: int


class ConflictResolveRequest(BaseModel):
    """User decision for a pending conflict."""
    strategy: ResolutionStrategy
    merged: Optional[ConflictVersion] = None
    notes: Optional[list[str]] = None


class ConflictResolveResponse(BaseModel):
    conflict_id: str
    strategy: ResolutionStrategy
    changes_applied: list[str]


class ConflictAuditResponse(BaseModel):
    id: str
    email_id: str
    account_id: str
    conflict_type: ConflictType
    conflicting_fields: list[str]
    resolution: ResolutionStrategy
    resolved_by: str
    resolved_at: datetime
    resolution_notes: list[str] = Field(default_factory=list)


class ConflictHistoryResponse(BaseModel):
    history: list[ConflictAuditResponse]
    total: int


class ConflictPreferenceRequest(BaseModel):
    conflict_type: ConflictType
    preference: ConflictPreference


class ConflictPreferencesResponse(BaseModel):
    preferences: dict[str, str]


# ==================== Generic ====================

class SuccessResponse(BaseModel):
    """Generic success response."""
    success: bool = True
    message: str
