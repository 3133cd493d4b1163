"""Admission controller: decide whether a submitted job runs now or waits.

Submission prices the request, reserves its tickets and tries to take a model
slot, all in one unit of work. With a slot the item is created as processing
and handed to the dispatcher; without one it is created as queued.
"""

from dataclasses import dataclass
from typing import Any, Optional

import structlog

from genqueue.core.config import Settings
from genqueue.core.timezone import utc_now
from genqueue.models.concurrency_limit import ModelType
from genqueue.models.queue_item import QueueItem, QueueStatus
from genqueue.services import pricing
from genqueue.services.concurrency_limiter import ConcurrencyLimiter
from genqueue.services.exceptions import InvalidParameters
from genqueue.services.generation.prompt_validator import validate_prompt
from genqueue.services.ticket_ledger import TicketLedger

logger = structlog.get_logger()


@dataclass
class SubmitRequest:
    user_id: int
    model_id: str
    parameters: dict[str, Any]
    model_type: Optional[ModelType] = None
    priority: int = 0


@dataclass
class SubmitResult:
    queue_id: int
    status: QueueStatus
    ticket_cost: int
    position: Optional[int] = None


class AdmissionController:
    """Validates, prices and admits generation requests."""

    def __init__(self, uow_factory, settings: Settings):
        self.uow_factory = uow_factory
        self.settings = settings

    async def submit(self, request: SubmitRequest) -> SubmitResult:
        """Admit a generation request.

        Returns:
            SubmitResult with status processing (slot taken) or queued
            (model at capacity, with its queue position)

        Raises:
            NotFound: Unknown model
            InvalidParameters: Model type mismatch, bad prompt or unpriceable parameters
            InsufficientTickets: Balance does not cover the ticket cost
        """
        model = pricing.get_model(request.model_id)
        if request.model_type is not None and request.model_type != model.model_type:
            raise InvalidParameters(
                f"Model {model.model_id} is a {model.model_type.value} model, "
                f"not {request.model_type.value}"
            )
        validate_prompt(request.parameters.get("prompt"))
        cost = pricing.ticket_cost(model.model_id, request.parameters)

        async with await self.uow_factory() as uow:
            await TicketLedger(uow).reserve(request.user_id, cost)
            acquired = await ConcurrencyLimiter(uow, self.settings).try_acquire(model.model_id)

            now = utc_now()
            item = QueueItem(
                user_id=request.user_id,
                model_id=model.model_id,
                model_type=model.model_type,
                status=QueueStatus.PROCESSING if acquired else QueueStatus.QUEUED,
                priority=request.priority,
                ticket_cost=cost,
                reservation_held=True,
                parameters=request.parameters,
                attempts=1 if acquired else 0,
                queued_at=now,
                started_at=now if acquired else None,
            )
            await uow.queue_items.add(item)

            position = None
            if not acquired:
                position = await uow.queue_items.compute_position(item)
                item.queue_position = position
                await uow.session.flush()

            logger.info(
                "queue.submitted",
                queue_id=item.id,
                user_id=request.user_id,
                model_id=model.model_id,
                status=item.status.value,
                ticket_cost=cost,
                position=position,
            )
            return SubmitResult(
                queue_id=item.id,  # type: ignore[arg-type]
                status=item.status,
                ticket_cost=cost,
                position=position,
            )
