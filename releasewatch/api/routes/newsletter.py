"""Digest queue management routes."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from releasewatch.api.deps import get_database, require_admin_api_key
from releasewatch.db.models import Subscriber
from releasewatch.digest.generator import digest_generator
from releasewatch.digest.payload import DigestPayload
from releasewatch.notify.queue import notification_queue
from releasewatch.worker.scheduling import FREQUENCIES, lookback_days
from releasewatch.worker.tasks import task_runner

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/newsletter",
    tags=["newsletter"],
    dependencies=[Depends(require_admin_api_key)],
)

FREQUENCY_PATTERN = "^(" + "|".join(FREQUENCIES) + ")$"


class QueueRunResponse(BaseModel):
    """Response model for an enqueue run."""
    frequency: str
    total_users: int
    queued: int
    duplicates: int
    with_updates: int
    all_quiet: int
    skipped: int
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class DispatchRequest(BaseModel):
    """Request model for a manual dispatch."""
    target_hour: Optional[int] = Field(None, ge=0, le=23)
    bypass_timezone: bool = False


class DispatchResponse(BaseModel):
    """Response model for a dispatch run."""
    status: str
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    recovered: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class CancelResponse(BaseModel):
    cancelled: int


class TestSendResponse(BaseModel):
    """Response model for a test send."""
    success: bool
    queue_id: Optional[int] = None
    duplicate: bool = False
    error: Optional[str] = None


@router.get("/digest/{user_id}", response_model=DigestPayload)
async def preview_digest(
    user_id: int,
    frequency: Optional[str] = Query(None, pattern=FREQUENCY_PATTERN),
    lookback: Optional[int] = Query(None, alias="lookback_days", ge=1, le=366),
    db: AsyncSession = Depends(get_database),
):
    """Build a subscriber's digest without queueing it."""
    subscriber = await db.get(Subscriber, user_id)
    if not subscriber:
        raise HTTPException(404, "Subscriber not found")

    frequency = frequency or subscriber.notification_frequency
    return await digest_generator.build_digest_payload(
        db, user_id, lookback or lookback_days(frequency), frequency=frequency
    )


@router.get("/queue/summary")
async def queue_summary(db: AsyncSession = Depends(get_database)):
    """Queue counts per status and the next due time."""
    return await notification_queue.queue_summary(db)


@router.post("/queue/cancel", response_model=CancelResponse)
async def cancel_queue(
    queue_id: Optional[int] = Query(None, description="Cancel one item; all pending when omitted"),
    db: AsyncSession = Depends(get_database),
):
    """Cancel pending queue items."""
    cancelled = await notification_queue.cancel_pending(db, queue_id)
    if queue_id is not None and not cancelled:
        raise HTTPException(404, "Pending queue item not found")
    return {"cancelled": cancelled}


@router.post("/queue/no-tracking-reminder", response_model=QueueRunResponse)
async def queue_no_tracking_reminders():
    """Queue this month's reminder for subscribers who track nothing."""
    summary = await task_runner.queue_no_tracking_reminders()
    return summary.to_dict()


@router.post("/queue/{frequency}", response_model=QueueRunResponse)
async def queue_digests(frequency: str):
    """Queue digests for every subscriber on this frequency."""
    try:
        summary = await task_runner.queue_digests(frequency)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return summary.to_dict()


@router.post("/dispatch", response_model=DispatchResponse)
async def dispatch_queue(request: DispatchRequest):
    """Send due queue items now."""
    summary = await task_runner.dispatch_queue(
        target_hour=request.target_hour,
        bypass_timezone=request.bypass_timezone,
    )
    if summary is None:
        raise HTTPException(409, "A dispatch run is already in progress")
    return {"status": "completed", **summary.to_dict()}


@router.post("/dispatch/force-unlock")
async def force_unlock_dispatch():
    """Release a stuck dispatch run lock."""
    lock_info = await task_runner.lock_manager.get_lock_info()
    if not lock_info:
        return {"message": "No lock found", "lock_info": None}

    await task_runner.lock_manager.force_unlock()
    run_id = lock_info.get("run_id")
    logger.warning(f"Admin force-unlock executed (run_id: {run_id or 'unknown'})")
    return {"message": "Lock force-unlocked", "lock_info": lock_info}


@router.post("/test-send/{user_id}", response_model=TestSendResponse)
async def test_send(
    user_id: int,
    frequency: Optional[str] = Query(None, pattern=FREQUENCY_PATTERN),
):
    """Queue an immediate digest for one subscriber."""
    try:
        result = await task_runner.queue_test_send(user_id, frequency)
    except LookupError as e:
        raise HTTPException(404, str(e))

    if not result.success:
        raise HTTPException(400, result.error or "Could not queue test send")
    return {
        "success": result.success,
        "queue_id": result.queue_id,
        "duplicate": result.duplicate,
        "error": result.error,
    }
