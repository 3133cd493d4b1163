"""ConcurrencyLimit repository for genqueue.

Provides the atomic increment-if-below-threshold used for admission and the
CRUD operations used by the admin console.
"""

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genqueue.core.database import dialect_insert
from genqueue.core.timezone import utc_now
from genqueue.models.concurrency_limit import ConcurrencyLimit, ModelType
from genqueue.services.exceptions import BookkeepingInvariantViolation


class ConcurrencyLimitRepository:
    """Repository for ConcurrencyLimit entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get(self, model_id: str) -> ConcurrencyLimit | None:
        """Retrieve the limit row for a model.

        Args:
            model_id: Model identifier

        Returns:
            ConcurrencyLimit if configured, None otherwise
        """
        result = await self.session.execute(
            select(ConcurrencyLimit)
            .where(ConcurrencyLimit.model_id == model_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_all(self) -> list[ConcurrencyLimit]:
        """Retrieve all limits ordered by model type, then model id."""
        result = await self.session.execute(
            select(ConcurrencyLimit)
            .order_by(
                ConcurrencyLimit.model_type.asc(),  # type: ignore[attr-defined]
                ConcurrencyLimit.model_id.asc(),  # type: ignore[attr-defined]
            )
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def add(self, limit: ConcurrencyLimit) -> ConcurrencyLimit:
        """Persist a new limit row."""
        self.session.add(limit)
        await self.session.flush()
        return limit

    async def insert_if_missing(
        self,
        model_id: str,
        model_type: ModelType,
        max_concurrent: int,
        current_active: int = 0,
    ) -> bool:
        """Create a limit row unless one already exists.

        Uses INSERT ... ON CONFLICT DO NOTHING so concurrent first-use requests
        cannot both create the row.

        Returns:
            True if this call created the row, False if it already existed
        """
        stmt = (
            dialect_insert(self.session, ConcurrencyLimit)
            .values(
                model_id=model_id,
                model_type=model_type,
                max_concurrent=max_concurrent,
                current_active=current_active,
                updated_at=utc_now(),
            )
            .on_conflict_do_nothing(index_elements=["model_id"])
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def try_acquire(self, model_id: str) -> bool:
        """Take one concurrency slot if the model is below its maximum.

        Query:
            UPDATE concurrency_limits
            SET current_active = current_active + 1
            WHERE model_id = :model_id AND current_active < max_concurrent

        Returns:
            True if a slot was taken, False if the model is at capacity
            (or has no limit row)
        """
        result = await self.session.execute(
            update(ConcurrencyLimit)
            .where(
                ConcurrencyLimit.model_id == model_id,  # type: ignore[arg-type]
                ConcurrencyLimit.current_active < ConcurrencyLimit.max_concurrent,  # type: ignore[arg-type]
            )
            .values(
                current_active=ConcurrencyLimit.current_active + 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def release(self, model_id: str) -> None:
        """Give back one concurrency slot, never going below zero.

        Raises:
            BookkeepingInvariantViolation: If current_active is already zero
                or the model has no limit row
        """
        result = await self.session.execute(
            update(ConcurrencyLimit)
            .where(
                ConcurrencyLimit.model_id == model_id,  # type: ignore[arg-type]
                ConcurrencyLimit.current_active > 0,  # type: ignore[arg-type]
            )
            .values(
                current_active=ConcurrencyLimit.current_active - 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise BookkeepingInvariantViolation(
                f"Cannot release slot for model {model_id}: no active slot recorded"
            )

    async def update_max(self, model_id: str, max_concurrent: int) -> bool:
        """Change a model's maximum.

        Returns:
            True if the row existed and was updated, False otherwise
        """
        result = await self.session.execute(
            update(ConcurrencyLimit)
            .where(ConcurrencyLimit.model_id == model_id)  # type: ignore[arg-type]
            .values(max_concurrent=max_concurrent, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def delete(self, model_id: str) -> bool:
        """Remove a model's limit row (idempotent).

        Returns:
            True if a row was deleted, False if none existed
        """
        result = await self.session.execute(
            delete(ConcurrencyLimit).where(ConcurrencyLimit.model_id == model_id)  # type: ignore[arg-type]
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]
