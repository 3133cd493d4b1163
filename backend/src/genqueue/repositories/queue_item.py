"""QueueItem repository for genqueue.

Provides data access for QueueItem entities: conditional status transitions,
live queue positions, and dispatcher coordination via FOR UPDATE SKIP LOCKED.
"""

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genqueue.models.queue_item import QueueItem, QueueStatus


def serving_order() -> tuple:
    """ORDER BY clause for queued work: priority desc, then oldest first."""
    return (
        QueueItem.priority.desc(),  # type: ignore[attr-defined]
        QueueItem.queued_at.asc(),  # type: ignore[attr-defined]
        QueueItem.id.asc(),  # type: ignore[union-attr]
    )


class QueueItemRepository:
    """Repository for QueueItem entities.

    Status changes go through transition(), a single conditional UPDATE whose
    WHERE clause carries the allowed source statuses. A row count of 1 means the
    caller won the transition and owns the resulting counter updates.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, item: QueueItem) -> QueueItem:
        """Persist new queue item to database.

        Args:
            item: QueueItem entity to persist

        Returns:
            Persisted item with generated ID
        """
        self.session.add(item)
        await self.session.flush()
        return item

    async def get_by_id(self, item_id: int) -> QueueItem | None:
        """Retrieve queue item by ID, re-reading any state changed by bulk updates.

        Args:
            item_id: Queue item identifier

        Returns:
            QueueItem if found, None otherwise
        """
        result = await self.session.execute(
            select(QueueItem)
            .where(QueueItem.id == item_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_items(
        self,
        status: QueueStatus | None = None,
        model_id: str | None = None,
        user_id: int | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[QueueItem]:
        """Retrieve queue items matching a filter in serving order.

        Args:
            status: Only items in this status (default: all)
            model_id: Only items for this model (default: all)
            user_id: Only items owned by this user (default: all)
            limit: Maximum number of items to return (default: 100)
            offset: Number of items to skip (default: 0)

        Returns:
            Items ordered by priority desc, queued_at asc, id asc
        """
        stmt = select(QueueItem)
        if status is not None:
            stmt = stmt.where(QueueItem.status == status)  # type: ignore[arg-type]
        if model_id is not None:
            stmt = stmt.where(QueueItem.model_id == model_id)  # type: ignore[arg-type]
        if user_id is not None:
            stmt = stmt.where(QueueItem.user_id == user_id)  # type: ignore[arg-type]

        result = await self.session.execute(
            stmt.order_by(*serving_order())
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def compute_position(self, item: QueueItem) -> int:
        """Compute an item's 1-based position among queued items of its model.

        Position follows arrival time: an item is ahead when it was queued
        earlier. Items queued at the same instant are ordered by priority, then
        by id (insertion order). This differs from serving order, where
        priority comes first.

        Args:
            item: A queued item

        Returns:
            1 + number of queued items ahead of it
        """
        ahead = or_(
            QueueItem.queued_at < item.queued_at,  # type: ignore[arg-type]
            and_(
                QueueItem.queued_at == item.queued_at,  # type: ignore[arg-type]
                QueueItem.priority > item.priority,  # type: ignore[arg-type]
            ),
            and_(
                QueueItem.queued_at == item.queued_at,  # type: ignore[arg-type]
                QueueItem.priority == item.priority,  # type: ignore[arg-type]
                QueueItem.id < item.id,  # type: ignore[arg-type,operator]
            ),
        )
        result = await self.session.execute(
            select(func.count(QueueItem.id)).where(  # type: ignore[arg-type]
                QueueItem.model_id == item.model_id,  # type: ignore[arg-type]
                QueueItem.status == QueueStatus.QUEUED,  # type: ignore[arg-type]
                ahead,
            )
        )
        return (result.scalar() or 0) + 1

    async def transition(
        self,
        item_id: int,
        target: QueueStatus,
        sources: Iterable[QueueStatus],
        conditions: Iterable[Any] = (),
        **values: Any,
    ) -> bool:
        """Move an item to target only if it is currently in one of sources.

        Query:
            UPDATE queue_items SET status = :target, ...values
            WHERE id = :item_id AND status IN (:sources) [AND ...conditions]

        Args:
            item_id: Queue item identifier
            target: New status
            sources: Statuses the item may currently be in
            conditions: Extra WHERE clauses (e.g. staleness cut-off)
            **values: Additional columns to set alongside status

        Returns:
            True if this call performed the transition, False otherwise
        """
        result = await self.session.execute(
            update(QueueItem)
            .where(
                QueueItem.id == item_id,  # type: ignore[arg-type]
                QueueItem.status.in_(list(sources)),  # type: ignore[attr-defined]
                *conditions,
            )
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def set_position(self, item_id: int, position: int) -> None:
        """Store the denormalized queue position snapshot."""
        await self.session.execute(
            update(QueueItem)
            .where(QueueItem.id == item_id)  # type: ignore[arg-type]
            .values(queue_position=position)
            .execution_options(synchronize_session=False)
        )

    async def set_reservation_held(self, item_id: int, held: bool) -> None:
        await self.session.execute(
            update(QueueItem)
            .where(QueueItem.id == item_id)  # type: ignore[arg-type]
            .values(reservation_held=held)
            .execution_options(synchronize_session=False)
        )

    async def get_stale_processing(self, started_before: datetime, limit: int = 500) -> list[QueueItem]:
        """Retrieve items stuck in processing since before a cut-off.

        Args:
            started_before: Items with started_at earlier than this are stale
            limit: Maximum number of items to return (default: 500)

        Returns:
            Stale items, oldest first
        """
        result = await self.session.execute(
            select(QueueItem)
            .where(
                QueueItem.status == QueueStatus.PROCESSING,  # type: ignore[arg-type]
                QueueItem.started_at < started_before,  # type: ignore[arg-type,operator]
            )
            .order_by(QueueItem.started_at.asc())  # type: ignore[union-attr]
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_next_queued(self, model_id: str) -> QueueItem | None:
        """Retrieve the next queued item for a model with row-level locking.

        Uses FOR UPDATE SKIP LOCKED so concurrent dispatchers never pick the
        same item. Orders by the serving order (priority desc, oldest first).
        SQLite ignores the locking clause; its writers are serialized anyway.

        Args:
            model_id: Model identifier

        Returns:
            The item locked for this dispatcher, or None if nothing is queued
        """
        result = await self.session.execute(
            select(QueueItem)
            .where(
                QueueItem.model_id == model_id,  # type: ignore[arg-type]
                QueueItem.status == QueueStatus.QUEUED,  # type: ignore[arg-type]
            )
            .order_by(*serving_order())
            .limit(1)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_models_with_queued(self) -> list[str]:
        """Retrieve the distinct model ids that have queued items."""
        result = await self.session.execute(
            select(QueueItem.model_id)  # type: ignore[call-overload]
            .where(QueueItem.status == QueueStatus.QUEUED)  # type: ignore[arg-type]
            .distinct()
            .order_by(QueueItem.model_id)
        )
        return list(result.scalars().all())

    async def count_by_status(self, model_id: str | None = None) -> dict[QueueStatus, int]:
        """Count items per status, with every status present in the result."""
        stmt = select(QueueItem.status, func.count(QueueItem.id)).group_by(  # type: ignore[call-overload]
            QueueItem.status
        )
        if model_id is not None:
            stmt = stmt.where(QueueItem.model_id == model_id)
        result = await self.session.execute(stmt)

        counts = {status: 0 for status in QueueStatus}
        for status, count in result.all():
            counts[QueueStatus(status)] = count
        return counts

    async def purge(self, statuses: Iterable[QueueStatus], model_id: str | None = None) -> int:
        """Delete items in the given (terminal) statuses.

        Args:
            statuses: Statuses to delete; callers pass terminal statuses only
            model_id: Restrict the purge to one model (default: all models)

        Returns:
            Number of deleted items
        """
        stmt = delete(QueueItem).where(QueueItem.status.in_(list(statuses)))  # type: ignore[attr-defined]
        if model_id is not None:
            stmt = stmt.where(QueueItem.model_id == model_id)  # type: ignore[arg-type]
        result = await self.session.execute(stmt.execution_options(synchronize_session=False))
        await self.session.flush()
        return result.rowcount  # type: ignore[attr-defined]

    async def count_processing(self, model_id: str) -> int:
        """Count items currently holding a slot for a model."""
        result = await self.session.execute(
            select(func.count(QueueItem.id)).where(  # type: ignore[arg-type]
                QueueItem.model_id == model_id,  # type: ignore[arg-type]
                QueueItem.status == QueueStatus.PROCESSING,  # type: ignore[arg-type]
            )
        )
        return result.scalar() or 0
