"""Generation queue API endpoints.

This module implements the user-facing REST endpoints:
- POST /api/queue - Submit a generation request (runs now or is queued)
- GET /api/queue/{queue_id} - Poll status, live queue position and result
- DELETE /api/queue/{queue_id}?user_id= - Cancel one of the user's own requests

The user_id is supplied by the upstream auth service and trusted as-is.
"""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from genqueue.api.dependencies import get_provider, get_settings, get_uow_factory
from genqueue.api.errors import http_error
from genqueue.core.config import Settings
from genqueue.models.concurrency_limit import ModelType
from genqueue.models.queue_item import QueueStatus
from genqueue.services.admission import AdmissionController, SubmitRequest
from genqueue.services.exceptions import QueueError
from genqueue.services.lifecycle import JobLifecycleManager
from genqueue.services.status import StatusReporter
from genqueue.workers.dispatch_worker import run_and_continue

logger = structlog.get_logger()
router = APIRouter(prefix="/api/queue", tags=["queue"])


# Request/Response Models


class SubmitGenerationRequest(BaseModel):
    """Request model for submitting a generation job."""

    user_id: int = Field(..., description="Authenticated user's identifier", ge=1)
    model_id: str = Field(..., description="Catalog model id (e.g. nano-banana, kling-v3)")
    model_type: Optional[ModelType] = Field(
        default=None,
        description="Expected model type; rejected if it does not match the catalog",
    )
    parameters: dict[str, Any] = Field(
        ...,
        description="Generation parameters: prompt plus quality, resolution, duration, audio_enabled",
    )
    priority: int = Field(default=0, description="Higher runs first", ge=0, le=100)


class SubmitGenerationResponse(BaseModel):
    queue_id: int = Field(..., description="Queue item identifier to poll")
    status: QueueStatus = Field(..., description="processing (started) or queued")
    position: Optional[int] = Field(default=None, description="Queue position when queued")
    ticket_cost: int = Field(..., description="Tickets reserved for this request")


class QueueStatusResponse(BaseModel):
    """Response model for status polling."""

    queue_id: int
    status: QueueStatus
    model_id: str
    ticket_cost: int
    position: Optional[int] = Field(default=None, description="Live position (queued only)")
    estimated_wait_seconds: Optional[int] = Field(
        default=None, description="Coarse estimate: position x average job time"
    )
    result_url: Optional[str] = None
    result_image_id: Optional[str] = None
    error_message: Optional[str] = None


class CancelResponse(BaseModel):
    queue_id: int
    status: QueueStatus


# API Endpoints


@router.post("", response_model=SubmitGenerationResponse, status_code=status.HTTP_201_CREATED)
async def submit_generation(
    request: SubmitGenerationRequest,
    background_tasks: BackgroundTasks,
    uow_factory=Depends(get_uow_factory),
    provider=Depends(get_provider),
    settings: Settings = Depends(get_settings),
) -> SubmitGenerationResponse:
    """Submit a generation request.

    Tickets are reserved up front. When the model has a free slot the job starts
    immediately and runs in the background; otherwise it waits in the queue and
    the dispatcher starts it once a slot frees up.

    Raises:
        HTTPException: 404 unknown model, 400 invalid parameters,
            402 insufficient tickets
    """
    try:
        result = await AdmissionController(uow_factory, settings).submit(
            SubmitRequest(
                user_id=request.user_id,
                model_id=request.model_id,
                model_type=request.model_type,
                parameters=request.parameters,
                priority=request.priority,
            )
        )
    except QueueError as e:
        logger.info("queue.submit_rejected", user_id=request.user_id, error=str(e))
        raise http_error(e)

    if result.status == QueueStatus.PROCESSING:
        background_tasks.add_task(
            run_and_continue, result.queue_id, request.model_id, uow_factory, provider, settings
        )

    return SubmitGenerationResponse(
        queue_id=result.queue_id,
        status=result.status,
        position=result.position,
        ticket_cost=result.ticket_cost,
    )


@router.get("/{queue_id}", response_model=QueueStatusResponse)
async def get_queue_status(
    queue_id: int,
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> QueueStatusResponse:
    """Get the current status of a queue item.

    Queued items report a live position recomputed on every call and an
    estimated wait. Completed items carry the result, failed and cancelled
    items an error message.
    """
    try:
        payload = await StatusReporter(uow_factory, settings).get_status(queue_id)
    except QueueError as e:
        raise http_error(e)

    return QueueStatusResponse(**payload.__dict__)


@router.delete("/{queue_id}", response_model=CancelResponse)
async def cancel_generation(
    queue_id: int,
    user_id: int = Query(..., description="Owner of the queue item", ge=1),
    uow_factory=Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
) -> CancelResponse:
    """Cancel a queued or processing request and refund its tickets.

    Raises:
        HTTPException: 404 if the item does not exist or belongs to another user,
            409 if it already finished
    """
    try:
        await JobLifecycleManager(uow_factory, settings).cancel(queue_id, user_id=user_id)
    except QueueError as e:
        raise http_error(e)
    except Exception as e:
        logger.error("queue.cancel_failed", queue_id=queue_id, error=str(e), exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to cancel request"
        )

    return CancelResponse(queue_id=queue_id, status=QueueStatus.CANCELLED)
