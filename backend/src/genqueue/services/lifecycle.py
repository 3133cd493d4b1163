"""Job lifecycle manager: start, complete, fail, cancel, retry and stale reaping.

Each operation runs in its own unit of work. The status change is a single
conditional UPDATE; ticket and slot counters are touched only by the call that
won that UPDATE, so racing callers can never double-refund or double-release.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import structlog

from genqueue.core.config import Settings
from genqueue.core.timezone import utc_now
from genqueue.models.queue_item import (
    TERMINAL_STATUSES,
    QueueItem,
    QueueStatus,
    allowed_sources,
    check_transition,
)
from genqueue.services.concurrency_limiter import ConcurrencyLimiter
from genqueue.services.exceptions import InvalidTransition, NotFound
from genqueue.services.ticket_ledger import TicketLedger
from genqueue.uow import UnitOfWork

logger = structlog.get_logger()

STALE_ERROR_MESSAGE = "Generation timed out: no result from the provider within {minutes} minutes"
MAX_ERROR_LENGTH = 1000


@dataclass
class ReapResult:
    reaped_count: int


@dataclass
class RetryResult:
    queue_id: int
    position: int


class JobLifecycleManager:
    """State transitions for queue items and their counter side effects."""

    def __init__(self, uow_factory, settings: Settings):
        self.uow_factory = uow_factory
        self.settings = settings

    async def _require(self, uow: UnitOfWork, item_id: int) -> QueueItem:
        item = await uow.queue_items.get_by_id(item_id)
        if item is None:
            raise NotFound(f"Queue item {item_id} not found")
        return item

    async def _settle(self, uow: UnitOfWork, item_id: int, *, consume: bool, release_slot: bool):
        """Apply the counter effects of leaving processing/queued for a terminal state.

        Re-reads the item after the winning UPDATE so reservation_held reflects
        the row this transaction now owns.
        """
        item = await self._require(uow, item_id)
        if item.reservation_held:
            ledger = TicketLedger(uow)
            if consume:
                await ledger.commit(item.user_id, item.ticket_cost)
            else:
                await ledger.release(item.user_id, item.ticket_cost)
            await uow.queue_items.set_reservation_held(item_id, False)
        if release_slot:
            await ConcurrencyLimiter(uow, self.settings).release(item.model_id)
        return item

    async def _start_in(self, uow: UnitOfWork, item: QueueItem) -> bool:
        limiter = ConcurrencyLimiter(uow, self.settings)
        if not await limiter.try_acquire(item.model_id):
            return False
        won = await uow.queue_items.transition(
            item.id,  # type: ignore[arg-type]
            QueueStatus.PROCESSING,
            allowed_sources(QueueStatus.PROCESSING),
            started_at=utc_now(),
            queue_position=None,
            attempts=QueueItem.attempts + 1,
        )
        if not won:
            # Raising rolls back the slot taken above
            raise InvalidTransition(f"Queue item {item.id} is no longer queued")
        logger.info(
            "queue.started",
            queue_id=item.id,
            model_id=item.model_id,
            attempt=item.attempts + 1,
        )
        return True

    async def start(self, item_id: int) -> Optional[int]:
        """Move a queued item to processing if its model has a free slot.

        Returns:
            item_id if started, None if the model is at capacity

        Raises:
            NotFound: Unknown item
            InvalidTransition: Item is not queued
        """
        async with await self.uow_factory() as uow:
            item = await self._require(uow, item_id)
            check_transition(item.status, QueueStatus.PROCESSING)
            if not await self._start_in(uow, item):
                return None
            return item_id

    async def start_next(self, model_id: str) -> Optional[int]:
        """Start the next queued item for a model in serving order.

        The candidate row is locked with SKIP LOCKED so concurrent dispatchers
        pick different items.

        Returns:
            Started item id, or None if nothing is queued or the model is full
        """
        async with await self.uow_factory() as uow:
            item = await uow.queue_items.get_next_queued(model_id)
            if item is None:
                return None
            if not await self._start_in(uow, item):
                return None
            return item.id

    async def complete(
        self, item_id: int, result_url: str, result_image_id: Optional[str] = None
    ) -> None:
        """processing -> completed; spend the reservation and free the slot.

        Raises:
            NotFound: Unknown item
            InvalidTransition: Item is not processing (cancelled or reaped meanwhile)
        """
        async with await self.uow_factory() as uow:
            item = await self._require(uow, item_id)
            won = await uow.queue_items.transition(
                item_id,
                QueueStatus.COMPLETED,
                allowed_sources(QueueStatus.COMPLETED),
                completed_at=utc_now(),
                result_url=result_url,
                result_image_id=result_image_id,
            )
            if not won:
                check_transition(item.status, QueueStatus.COMPLETED)
                raise InvalidTransition(f"Queue item {item_id} is no longer processing")
            await self._settle(uow, item_id, consume=True, release_slot=True)

        logger.info("queue.completed", queue_id=item_id, model_id=item.model_id)

    async def fail(self, item_id: int, error_message: str) -> None:
        """processing -> failed; refund the reservation and free the slot.

        Raises:
            NotFound: Unknown item
            InvalidTransition: Item is not processing
        """
        async with await self.uow_factory() as uow:
            item = await self._require(uow, item_id)
            won = await uow.queue_items.transition(
                item_id,
                QueueStatus.FAILED,
                allowed_sources(QueueStatus.FAILED),
                completed_at=utc_now(),
                error_message=error_message[:MAX_ERROR_LENGTH],
            )
            if not won:
                check_transition(item.status, QueueStatus.FAILED)
                raise InvalidTransition(f"Queue item {item_id} is no longer processing")
            await self._settle(uow, item_id, consume=False, release_slot=True)

        logger.warning(
            "queue.failed", queue_id=item_id, model_id=item.model_id, error=error_message
        )

    async def cancel(self, item_id: int, user_id: Optional[int] = None) -> None:
        """Cancel a queued or processing item, refunding its tickets.

        Args:
            item_id: Queue item identifier
            user_id: When given, only the owner may cancel (others get NotFound)

        Raises:
            NotFound: Unknown item (or not owned by user_id)
            InvalidTransition: Item is already terminal
        """
        async with await self.uow_factory() as uow:
            item = await self._require(uow, item_id)
            if user_id is not None and item.user_id != user_id:
                raise NotFound(f"Queue item {item_id} not found")

            now = utc_now()
            # Try processing first so a won transition tells us a slot is held
            was_processing = await uow.queue_items.transition(
                item_id, QueueStatus.CANCELLED, [QueueStatus.PROCESSING], completed_at=now
            )
            won = was_processing or await uow.queue_items.transition(
                item_id, QueueStatus.CANCELLED, [QueueStatus.QUEUED], completed_at=now
            )
            if not won:
                current = await self._require(uow, item_id)
                raise InvalidTransition(
                    f"Cannot cancel queue item {item_id}: already {current.status.value}"
                )
            await self._settle(uow, item_id, consume=False, release_slot=was_processing)

        logger.info("queue.cancelled", queue_id=item_id, was_processing=was_processing)

    async def retry(self, item_id: int) -> RetryResult:
        """failed|cancelled -> queued at the back of its priority band.

        Reuses a still-held reservation; otherwise reserves the ticket cost again.

        Raises:
            NotFound: Unknown item
            InvalidTransition: Item is not failed or cancelled
            InsufficientTickets: A fresh reservation is needed and the balance is short
        """
        async with await self.uow_factory() as uow:
            item = await self._require(uow, item_id)
            won = await uow.queue_items.transition(
                item_id,
                QueueStatus.QUEUED,
                allowed_sources(QueueStatus.QUEUED),
                queued_at=utc_now(),
                started_at=None,
                completed_at=None,
                error_message=None,
                result_url=None,
                result_image_id=None,
            )
            if not won:
                check_transition(item.status, QueueStatus.QUEUED)
                raise InvalidTransition(f"Queue item {item_id} cannot be retried")

            item = await self._require(uow, item_id)
            if not item.reservation_held:
                await TicketLedger(uow).reserve(item.user_id, item.ticket_cost)
                await uow.queue_items.set_reservation_held(item_id, True)

            position = await uow.queue_items.compute_position(item)
            await uow.queue_items.set_position(item_id, position)

        logger.info("queue.retried", queue_id=item_id, position=position)
        return RetryResult(queue_id=item_id, position=position)

    async def reap_stale(self) -> ReapResult:
        """Fail processing items whose started_at is past the stale threshold.

        Every item is reaped by its own conditional UPDATE in its own unit of
        work, so overlapping sweeps reap each item exactly once.
        """
        threshold = utc_now() - timedelta(minutes=self.settings.stale_after_minutes)
        message = STALE_ERROR_MESSAGE.format(minutes=self.settings.stale_after_minutes)

        async with await self.uow_factory() as uow:
            stale = await uow.queue_items.get_stale_processing(threshold)
            stale_ids = [item.id for item in stale]

        reaped = 0
        for item_id in stale_ids:
            async with await self.uow_factory() as uow:
                won = await uow.queue_items.transition(
                    item_id,  # type: ignore[arg-type]
                    QueueStatus.FAILED,
                    allowed_sources(QueueStatus.FAILED),
                    conditions=[QueueItem.started_at < threshold],  # type: ignore[operator]
                    completed_at=utc_now(),
                    error_message=message,
                )
                if won:
                    await self._settle(uow, item_id, consume=False, release_slot=True)  # type: ignore[arg-type]
                    reaped += 1

        if reaped:
            logger.warning("queue.stale_reaped", reaped_count=reaped, threshold=threshold.isoformat())
        return ReapResult(reaped_count=reaped)

    async def clear_completed(
        self, include_failed: bool = False, model_id: Optional[str] = None
    ) -> int:
        """Delete terminal items: completed and cancelled, optionally failed too.

        Returns:
            Number of deleted items
        """
        statuses = [
            status
            for status in TERMINAL_STATUSES
            if include_failed or status != QueueStatus.FAILED
        ]

        async with await self.uow_factory() as uow:
            deleted = await uow.queue_items.purge(statuses, model_id)

        logger.info(
            "queue.purged", deleted=deleted, include_failed=include_failed, model_id=model_id
        )
        return deleted
