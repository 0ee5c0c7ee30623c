"""
Conflict Resolution Router

Pending conflicts, user resolution, audit history and per-type
resolution preferences.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from mailsync.routers.schemas import (
    ConflictAuditResponse,
    ConflictHistoryResponse,
    ConflictPreferenceRequest,
    ConflictPreferencesResponse,
    ConflictResolveRequest,
    ConflictResolveResponse,
    PendingConflictListResponse,
    PendingConflictResponse,
)
from mailsync.services.conflict_detection import ConflictEmailData
from mailsync.services.conflict_manager import ConflictManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["conflicts"])


def get_conflict_manager(request: Request) -> ConflictManager:
    return request.app.state.orchestrator.context.conflicts


@router.get("", response_model=PendingConflictListResponse)
async def list_conflicts(
    request: Request,
    account_id: Optional[str] = Query(None),
):
    """Conflicts waiting for a user decision, oldest first."""
    conflicts = await get_conflict_manager(request).get_pending_conflicts(account_id)
    return PendingConflictListResponse(
        conflicts=[PendingConflictResponse(**c.to_dict()) for c in conflicts],
        total=len(conflicts),
    )


@router.get("/history", response_model=ConflictHistoryResponse)
async def get_history(
    request: Request,
    account_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
):
    records = await get_conflict_manager(request).get_conflict_history(account_id, limit)
    return ConflictHistoryResponse(
        history=[ConflictAuditResponse(**r.to_dict()) for r in records],
        total=len(records),
    )


@router.get("/preferences", response_model=ConflictPreferencesResponse)
async def get_preferences(request: Request):
    return ConflictPreferencesResponse(preferences=get_conflict_manager(request).get_preferences())


@router.put("/preferences", response_model=ConflictPreferencesResponse)
async def set_preference(request: Request, body: ConflictPreferenceRequest):
    manager = get_conflict_manager(request)
    try:
        await manager.set_preference(body.conflict_type, body.preference)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ConflictPreferencesResponse(preferences=manager.get_preferences())


@router.get("/{conflict_id}", response_model=PendingConflictResponse)
async def get_conflict(request: Request, conflict_id: str):
    conflict = await get_conflict_manager(request).get_pending_conflict(conflict_id)
    if conflict is None:
        raise HTTPException(status_code=404, detail="Conflict not found")
    return PendingConflictResponse(**conflict.to_dict())


@router.post("/{conflict_id}/resolve", response_model=ConflictResolveResponse)
async def resolve_conflict(request: Request, conflict_id: str, body: ConflictResolveRequest):
    """Apply the user's choice: keep local, keep server, or a manual merge."""
    merged = ConflictEmailData.from_dict(body.merged.model_dump()) if body.merged else None
    try:
        resolution = await get_conflict_manager(request).resolve_conflict(
            conflict_id, body.strategy, merged=merged, notes=body.notes
        )
    except KeyError:
        raise HTTPException(status_code=404, detail="Conflict not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return ConflictResolveResponse(
        conflict_id=conflict_id,
        strategy=resolution.strategy,
        changes_applied=resolution.changes_applied,
    )
