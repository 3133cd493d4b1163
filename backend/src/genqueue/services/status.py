"""Client-visible job status and admin queue statistics."""

from dataclasses import dataclass, field
from typing import Optional

from genqueue.core.config import Settings
from genqueue.models.queue_item import QueueItem, QueueStatus
from genqueue.services.concurrency_limiter import ConcurrencyLimiter
from genqueue.services.exceptions import NotFound

DEFAULT_FAILED_MESSAGE = "Generation failed"
DEFAULT_CANCELLED_MESSAGE = "Generation was cancelled"


@dataclass
class StatusPayload:
    queue_id: int
    status: QueueStatus
    model_id: str
    ticket_cost: int
    position: Optional[int] = None
    estimated_wait_seconds: Optional[int] = None
    result_url: Optional[str] = None
    result_image_id: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class ModelStats:
    model_id: str
    model_type: str
    max_concurrent: int
    current_active: int
    queued: int = 0
    processing: int = 0


@dataclass
class QueueStats:
    counts: dict[str, int]
    models: list[ModelStats] = field(default_factory=list)


class StatusReporter:
    """Read-side view of the queue."""

    def __init__(self, uow_factory, settings: Settings):
        self.uow_factory = uow_factory
        self.settings = settings

    async def get_status(self, item_id: int) -> StatusPayload:
        """Return the status payload for an item, with a live position when queued.

        Raises:
            NotFound: Unknown item
        """
        async with await self.uow_factory() as uow:
            item = await uow.queue_items.get_by_id(item_id)
            if item is None:
                raise NotFound(f"Queue item {item_id} not found")

            payload = StatusPayload(
                queue_id=item_id,
                status=item.status,
                model_id=item.model_id,
                ticket_cost=item.ticket_cost,
            )
            if item.status == QueueStatus.QUEUED:
                payload.position = await uow.queue_items.compute_position(item)
                payload.estimated_wait_seconds = payload.position * self.settings.average_job_seconds
            elif item.status == QueueStatus.COMPLETED:
                payload.result_url = item.result_url
                payload.result_image_id = item.result_image_id
            elif item.status == QueueStatus.FAILED:
                payload.error_message = item.error_message or DEFAULT_FAILED_MESSAGE
            elif item.status == QueueStatus.CANCELLED:
                payload.error_message = item.error_message or DEFAULT_CANCELLED_MESSAGE
            return payload

    async def list_items(
        self,
        status: Optional[QueueStatus] = None,
        model_id: Optional[str] = None,
        user_id: Optional[int] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[tuple[QueueItem, Optional[int]]]:
        """List items in serving order, pairing queued ones with their live position."""
        async with await self.uow_factory() as uow:
            items = await uow.queue_items.list_items(
                status=status, model_id=model_id, user_id=user_id, limit=limit, offset=offset
            )
            listed = []
            for item in items:
                position = None
                if item.status == QueueStatus.QUEUED:
                    position = await uow.queue_items.compute_position(item)
                listed.append((item, position))
            return listed

    async def stats(self) -> QueueStats:
        """Counts per status plus per-model capacity and load."""
        async with await self.uow_factory() as uow:
            totals = await uow.queue_items.count_by_status()
            limits = await ConcurrencyLimiter(uow, self.settings).list_limits()

            models = []
            for limit in limits:
                per_model = await uow.queue_items.count_by_status(limit.model_id)
                models.append(
                    ModelStats(
                        model_id=limit.model_id,
                        model_type=limit.model_type.value,
                        max_concurrent=limit.max_concurrent,
                        current_active=limit.current_active,
                        queued=per_model[QueueStatus.QUEUED],
                        processing=per_model[QueueStatus.PROCESSING],
                    )
                )

        return QueueStats(
            counts={status.value: count for status, count in totals.items()},
            models=models,
        )
