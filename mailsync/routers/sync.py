"""
Email Sync Router

Sync control and status: accounts, manual triggers, progress, item
failures, circuit breaker state and adaptive polling.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from mailsync.providers.base import (
    AccountNotFoundError,
    CircuitOpenError,
    ProviderType,
    SyncAlreadyInProgressError,
)
from mailsync.routers.schemas import (
    AccountCreateRequest,
    AdaptivePollingRequest,
    AdaptivePollingResponse,
    CircuitStatusResponse,
    RetryAllResponse,
    RetrySweepResponse,
    SuccessResponse,
    SyncFailureListResponse,
    SyncFailureResponse,
    SyncFailureStatsResponse,
    SyncProgressListResponse,
    SyncProgressResponse,
    SyncResultResponse,
)
from mailsync.services.error_classification import FailureStatus
from mailsync.workers.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Get the running sync orchestrator."""
    return request.app.state.orchestrator


# ==================== Accounts ====================

@router.get("/accounts", response_model=SyncProgressListResponse)
async def list_accounts(request: Request):
    """Progress of every account with sync state."""
    orchestrator = get_orchestrator(request)
    progress = await orchestrator.get_all_progress()
    return SyncProgressListResponse(
        accounts=[SyncProgressResponse(**p.to_dict()) for p in progress],
        total=len(progress),
    )


@router.post("/accounts", response_model=SuccessResponse)
async def add_account(request: Request, body: AccountCreateRequest):
    """Add an account to the sync rotation; its first sync starts immediately."""
    orchestrator = get_orchestrator(request)
    try:
        await orchestrator.add_account(body.account_id, body.provider)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return SuccessResponse(message=f"Account {body.account_id} added")


@router.delete("/accounts/{account_id}", response_model=SuccessResponse)
async def remove_account(request: Request, account_id: str):
    orchestrator = get_orchestrator(request)
    if account_id not in orchestrator.list_accounts():
        raise HTTPException(status_code=404, detail=f"Account not found: {account_id}")
    await orchestrator.remove_account(account_id)
    return SuccessResponse(message=f"Account {account_id} removed")


@router.post("/accounts/{account_id}/trigger", response_model=SyncResultResponse)
async def trigger_sync(request: Request, account_id: str):
    """Run a sync now, outside the schedule."""
    orchestrator = get_orchestrator(request)
    try:
        result = await orchestrator.trigger_sync(account_id)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except SyncAlreadyInProgressError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except CircuitOpenError as e:
        raise HTTPException(status_code=503, detail=e.message)

    if result is None:
        return SyncResultResponse(account_id=account_id, skipped=True)
    return SyncResultResponse(**result.to_dict())


@router.get("/accounts/{account_id}/progress", response_model=SyncProgressResponse)
async def get_progress(request: Request, account_id: str):
    orchestrator = get_orchestrator(request)
    try:
        progress = await orchestrator.get_progress(account_id)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return SyncProgressResponse(**progress.to_dict())


@router.post("/accounts/{account_id}/retries", response_model=RetrySweepResponse)
async def process_retries(request: Request, account_id: str):
    """Retry every due failure of the account now."""
    orchestrator = get_orchestrator(request)
    try:
        sweep = await orchestrator.process_pending_retries(account_id)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except SyncAlreadyInProgressError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return RetrySweepResponse(account_id=account_id, processed=sweep.processed, succeeded=sweep.succeeded)


# ==================== Failures ====================

@router.get("/accounts/{account_id}/failures", response_model=SyncFailureListResponse)
async def list_failures(
    request: Request,
    account_id: str,
    status: Optional[FailureStatus] = Query(None, description="Filter by failure status"),
):
    failures = get_orchestrator(request).context.failures
    records = await failures.get_failures_by_account(account_id, status)
    return SyncFailureListResponse(
        failures=[SyncFailureResponse(**f.to_dict()) for f in records],
        total=len(records),
    )


@router.get("/failures/stats", response_model=SyncFailureStatsResponse)
async def get_failure_stats(
    request: Request,
    account_id: Optional[str] = Query(None),
):
    stats = await get_orchestrator(request).get_failure_stats(account_id)
    return SyncFailureStatsResponse(**stats.to_dict())


@router.post("/accounts/{account_id}/failures/retry-all", response_model=RetryAllResponse)
async def retry_all_failures(request: Request, account_id: str):
    """Give exhausted failures a fresh set of retries."""
    failures = get_orchestrator(request).context.failures
    count = await failures.retry_all_exhausted(account_id)
    return RetryAllResponse(account_id=account_id, requeued=count)


@router.post("/failures/{failure_id}/dismiss", response_model=SuccessResponse)
async def dismiss_failure(request: Request, failure_id: str):
    failures = get_orchestrator(request).context.failures
    failure = await failures.dismiss_failure(failure_id)
    if failure is None:
        raise HTTPException(status_code=404, detail="Failure not found")
    return SuccessResponse(message="Failure dismissed")


# ==================== Circuit breaker ====================

@router.get("/circuits", response_model=list[CircuitStatusResponse])
async def list_circuits(request: Request):
    orchestrator = get_orchestrator(request)
    breaker = orchestrator.circuit_breaker
    return [
        CircuitStatusResponse(**breaker.get_status(provider.value).to_dict())
        for provider in orchestrator.engines
    ]


@router.post("/circuits/{provider}/reset", response_model=SuccessResponse)
async def reset_circuit(request: Request, provider: ProviderType):
    get_orchestrator(request).circuit_breaker.reset(provider.value)
    return SuccessResponse(message=f"Circuit for {provider.value} reset")


# ==================== Adaptive polling ====================

def _adaptive_response(orchestrator: SyncOrchestrator) -> AdaptivePollingResponse:
    adaptive = orchestrator.adaptive_interval
    return AdaptivePollingResponse(
        enabled=adaptive.is_enabled() if adaptive is not None else False,
        fixed_interval_seconds=orchestrator.fixed_interval,
    )


@router.get("/adaptive", response_model=AdaptivePollingResponse)
async def get_adaptive_polling(request: Request):
    return _adaptive_response(get_orchestrator(request))


@router.put("/adaptive", response_model=AdaptivePollingResponse)
async def set_adaptive_polling(request: Request, body: AdaptivePollingRequest):
    orchestrator = get_orchestrator(request)
    if orchestrator.adaptive_interval is None:
        raise HTTPException(status_code=400, detail="Adaptive polling is not configured")
    await orchestrator.adaptive_interval.set_enabled(body.enabled)
    return _adaptive_response(orchestrator)
