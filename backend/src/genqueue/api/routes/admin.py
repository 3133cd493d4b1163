"""Admin console API endpoints.

All endpoints require the X-Admin-Token header.

Queue management:
- GET /api/admin/queue/items - List items (filter by status, model, user)
- DELETE /api/admin/queue/items/{id} - Cancel an item
- POST /api/admin/queue/items/{id}/retry - Re-queue a failed or cancelled item
- POST /api/admin/queue/clear-completed - Purge finished items
- POST /api/admin/queue/reset-stale - Fail items stuck in processing
- GET /api/admin/queue/stats - Counts per status and per-model load

Concurrency limits:
- GET|POST|PUT /api/admin/queue/limits
- DELETE /api/admin/queue/limits/{model_id}

Tickets:
- POST /api/admin/tickets/grant
"""

from datetime import datetime
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from genqueue.api.dependencies import get_settings, get_uow_factory, require_admin
from genqueue.api.errors import http_error
from genqueue.core.config import Settings
from genqueue.models.concurrency_limit import ModelType
from genqueue.models.queue_item import QueueStatus
from genqueue.services.concurrency_limiter import ConcurrencyLimiter
from genqueue.services.exceptions import QueueError
from genqueue.services.lifecycle import JobLifecycleManager
from genqueue.services.status import StatusReporter
from genqueue.services.ticket_ledger import TicketLedger

logger = structlog.get_logger()
router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


# Request/Response Models


class QueueItemDTO(BaseModel):
    """Data Transfer Object for queue items in admin listings."""

    id: int
    user_id: int
    model_id: str
    model_type: ModelType
    status: QueueStatus
    priority: int
    position: Optional[int] = Field(default=None, description="Live position (queued only)")
    ticket_cost: int
    reservation_held: bool
    attempts: int
    parameters: dict
    result_url: Optional[str] = None
    result_image_id: Optional[str] = None
    error_message: Optional[str] = None
    queued_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class QueueItemsResponse(BaseModel):
    items: list[QueueItemDTO]
    limit: int
    offset: int


class ActionResponse(BaseModel):
    success: bool = True
    queue_id: Optional[int] = None
    status: Optional[QueueStatus] = None
    position: Optional[int] = None


class ClearCompletedRequest(BaseModel):
    include_failed: bool = Field(default=False, description="Also purge failed items")
    model_id: Optional[str] = Field(default=None, description="Only purge this model's items")


class ClearCompletedResponse(BaseModel):
    deleted: int


class ResetStaleResponse(BaseModel):
    reaped_count: int


class ModelStatsDTO(BaseModel):
    model_id: str
    model_type: str
    max_concurrent: int
    current_active: int
    queued: int
    processing: int


class QueueStatsResponse(BaseModel):
    counts: dict[str, int]
    models: list[ModelStatsDTO]
    reaped_count: int = Field(..., description="Stale items reaped before computing stats")


class ConcurrencyLimitDTO(BaseModel):
    model_id: str
    model_type: ModelType
    max_concurrent: int
    current_active: int
    available_slots: int
    updated_at: datetime


class CreateLimitRequest(BaseModel):
    model_id: str = Field(..., min_length=1, max_length=100)
    model_type: ModelType
    max_concurrent: int = Field(..., description="Allowed range 1..999")


class SetLimitRequest(BaseModel):
    model_id: str = Field(..., min_length=1, max_length=100)
    max_concurrent: int = Field(..., description="Allowed range 1..999")


class GrantTicketsRequest(BaseModel):
    user_id: int = Field(..., ge=1)
    amount: int = Field(..., ge=1, le=1_000_000)


class GrantTicketsResponse(BaseModel):
    user_id: int
    balance: int
    reserved: int
    total_bought: int
    total_used: int


def _limit_dto(limit) -> ConcurrencyLimitDTO:
    return ConcurrencyLimitDTO(
        model_id=limit.model_id,
        model_type=limit.model_type,
        max_concurrent=limit.max_concurrent,
        current_active=limit.current_active,
        available_slots=limit.available_slots,
        updated_at=limit.updated_at,
    )


# Queue Endpoints


@router.get("/queue/items", response_model=QueueItemsResponse)
async def list_queue_items(
    status_filter: Optional[QueueStatus] = Query(default=None, alias="status"),
    model_id: Optional[str] = Query(default=None),
    user_id: Optional[int] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> QueueItemsResponse:
    """List queue items in serving order (priority desc, oldest first)."""
    listed = await StatusReporter(uow_factory, settings).list_items(
        status=status_filter, model_id=model_id, user_id=user_id, limit=limit, offset=offset
    )
    items = [
        QueueItemDTO(**item.model_dump(exclude={"queue_position"}), position=position)
        for item, position in listed
    ]
    return QueueItemsResponse(items=items, limit=limit, offset=offset)


@router.delete("/queue/items/{queue_id}", response_model=ActionResponse)
async def cancel_queue_item(
    queue_id: int,
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> ActionResponse:
    """Cancel any queued or processing item, refunding its tickets."""
    try:
        await JobLifecycleManager(uow_factory, settings).cancel(queue_id)
    except QueueError as e:
        raise http_error(e)

    logger.info("admin.item_cancelled", queue_id=queue_id)
    return ActionResponse(queue_id=queue_id, status=QueueStatus.CANCELLED)


@router.post("/queue/items/{queue_id}/retry", response_model=ActionResponse)
async def retry_queue_item(
    queue_id: int,
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> ActionResponse:
    """Put a failed or cancelled item back in the queue.

    Raises:
        HTTPException: 404 unknown item, 409 item not failed/cancelled,
            402 refunded reservation cannot be re-taken
    """
    try:
        result = await JobLifecycleManager(uow_factory, settings).retry(queue_id)
    except QueueError as e:
        raise http_error(e)

    logger.info("admin.item_retried", queue_id=queue_id, position=result.position)
    return ActionResponse(queue_id=queue_id, status=QueueStatus.QUEUED, position=result.position)


@router.post("/queue/clear-completed", response_model=ClearCompletedResponse)
async def clear_completed(
    request: ClearCompletedRequest | None = None,
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> ClearCompletedResponse:
    """Delete completed and cancelled items (and failed ones when asked)."""
    request = request or ClearCompletedRequest()
    deleted = await JobLifecycleManager(uow_factory, settings).clear_completed(
        include_failed=request.include_failed, model_id=request.model_id
    )
    return ClearCompletedResponse(deleted=deleted)


@router.post("/queue/reset-stale", response_model=ResetStaleResponse)
async def reset_stale(
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> ResetStaleResponse:
    """Fail items stuck in processing past the stale threshold and free their slots."""
    result = await JobLifecycleManager(uow_factory, settings).reap_stale()
    return ResetStaleResponse(reaped_count=result.reaped_count)


@router.get("/queue/stats", response_model=QueueStatsResponse)
async def queue_stats(
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> QueueStatsResponse:
    """Queue statistics. Stale items are reaped first so the counts are current."""
    reaped = await JobLifecycleManager(uow_factory, settings).reap_stale()
    stats = await StatusReporter(uow_factory, settings).stats()
    return QueueStatsResponse(
        counts=stats.counts,
        models=[ModelStatsDTO(**model.__dict__) for model in stats.models],
        reaped_count=reaped.reaped_count,
    )


# Concurrency Limit Endpoints


@router.get("/queue/limits", response_model=list[ConcurrencyLimitDTO])
async def list_limits(
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> list[ConcurrencyLimitDTO]:
    """List all limits, creating default rows for catalog models first."""
    async with await uow_factory() as uow:
        limits = await ConcurrencyLimiter(uow, settings).list_limits()
        return [_limit_dto(limit) for limit in limits]


@router.post(
    "/queue/limits", response_model=ConcurrencyLimitDTO, status_code=status.HTTP_201_CREATED
)
async def create_limit(
    request: CreateLimitRequest,
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> ConcurrencyLimitDTO:
    """Create a limit for a model that has none (409 if it already exists)."""
    try:
        async with await uow_factory() as uow:
            limit = await ConcurrencyLimiter(uow, settings).create_limit(
                request.model_id, request.model_type, request.max_concurrent
            )
            dto = _limit_dto(limit)
    except QueueError as e:
        raise http_error(e)
    return dto


@router.put("/queue/limits", response_model=ConcurrencyLimitDTO)
async def set_limit(
    request: SetLimitRequest,
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> ConcurrencyLimitDTO:
    """Set a model's maximum, creating its default row first if needed."""
    try:
        async with await uow_factory() as uow:
            limit = await ConcurrencyLimiter(uow, settings).set_limit(
                request.model_id, request.max_concurrent
            )
            dto = _limit_dto(limit)
    except QueueError as e:
        raise http_error(e)
    return dto


@router.delete("/queue/limits/{model_id}", response_model=ActionResponse)
async def delete_limit(
    model_id: str,
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> ActionResponse:
    """Delete a model's limit row (it is recreated from defaults on next use)."""
    async with await uow_factory() as uow:
        deleted = await ConcurrencyLimiter(uow, settings).delete_limit(model_id)
    return ActionResponse(success=deleted)


# Ticket Endpoints


@router.post("/tickets/grant", response_model=GrantTicketsResponse)
async def grant_tickets(
    request: GrantTicketsRequest,
    uow_factory=Depends(get_uow_factory),
) -> GrantTicketsResponse:
    """Credit tickets to a user, creating the account on first grant."""
    async with await uow_factory() as uow:
        balance = await TicketLedger(uow).grant(request.user_id, request.amount)

    logger.info("admin.tickets_granted", user_id=request.user_id, amount=request.amount)
    return GrantTicketsResponse(**balance.__dict__)
