"""Per-model concurrency slots and their admin management.

Limit rows are created lazily from the defaults below the first time a model
is used, so the catalog never needs seeding.
"""

import structlog

from genqueue.core.config import Settings
from genqueue.models.concurrency_limit import (
    MAX_CONCURRENT,
    MIN_CONCURRENT,
    ConcurrencyLimit,
    ModelType,
)
from genqueue.services import pricing
from genqueue.services.exceptions import (
    BookkeepingInvariantViolation,
    InvalidParameters,
    LimitAlreadyExists,
    NotFound,
)
from genqueue.uow import UnitOfWork

logger = structlog.get_logger()


def validate_max_concurrent(max_concurrent: int) -> int:
    if not MIN_CONCURRENT <= max_concurrent <= MAX_CONCURRENT:
        raise InvalidParameters(
            f"max_concurrent must be between {MIN_CONCURRENT} and {MAX_CONCURRENT}"
        )
    return max_concurrent


class ConcurrencyLimiter:
    """Slot accounting on top of ConcurrencyLimitRepository."""

    def __init__(self, uow: UnitOfWork, settings: Settings):
        self.uow = uow
        self.settings = settings

    def default_for(self, model_id: str) -> tuple[ModelType, int]:
        """Return (model type, default maximum) for a model without a limit row.

        Unknown models get a small cap rather than an unlimited one.
        """
        model = pricing.CATALOG.get(model_id)
        if model is None:
            return ModelType.IMAGE, self.settings.unknown_model_max_concurrent
        if model.model_type == ModelType.VIDEO:
            return ModelType.VIDEO, self.settings.video_default_max_concurrent
        return ModelType.IMAGE, self.settings.image_default_max_concurrent

    async def ensure_limit(self, model_id: str) -> None:
        """Create the default limit row for a model if it does not exist yet.

        The new row's current_active starts at the number of items already
        processing for the model.
        """
        if await self.uow.concurrency_limits.get(model_id) is not None:
            return
        model_type, max_concurrent = self.default_for(model_id)
        active = await self.uow.queue_items.count_processing(model_id)
        created = await self.uow.concurrency_limits.insert_if_missing(
            model_id, model_type, max_concurrent, current_active=active
        )
        if created:
            logger.info(
                "limiter.default_created",
                model_id=model_id,
                model_type=model_type.value,
                max_concurrent=max_concurrent,
                current_active=active,
            )

    async def try_acquire(self, model_id: str) -> bool:
        """Take a slot for model_id.

        Returns:
            True if acquired, False if the model is at capacity
        """
        await self.ensure_limit(model_id)
        acquired = await self.uow.concurrency_limits.try_acquire(model_id)
        logger.debug("limiter.try_acquire", model_id=model_id, acquired=acquired)
        return acquired

    async def release(self, model_id: str) -> None:
        """Return a slot. A release with nothing active is logged and ignored."""
        try:
            await self.uow.concurrency_limits.release(model_id)
        except BookkeepingInvariantViolation as e:
            logger.error(
                "limiter.invariant_violation",
                operation="release",
                model_id=model_id,
                error=str(e),
            )

    async def initialize_defaults(self) -> None:
        """Create default rows for every catalog model that has none."""
        for model_id in pricing.CATALOG:
            await self.ensure_limit(model_id)

    async def list_limits(self) -> list[ConcurrencyLimit]:
        await self.initialize_defaults()
        return await self.uow.concurrency_limits.list_all()

    async def create_limit(
        self, model_id: str, model_type: ModelType, max_concurrent: int
    ) -> ConcurrencyLimit:
        """Create a limit row.

        Raises:
            InvalidParameters: If max_concurrent is outside 1..999
            LimitAlreadyExists: If the model already has a limit
        """
        validate_max_concurrent(max_concurrent)
        active = await self.uow.queue_items.count_processing(model_id)
        created = await self.uow.concurrency_limits.insert_if_missing(
            model_id, model_type, max_concurrent, current_active=active
        )
        if not created:
            raise LimitAlreadyExists(f"Concurrency limit for {model_id} already exists")
        logger.info("limiter.created", model_id=model_id, max_concurrent=max_concurrent)
        return await self.uow.concurrency_limits.get(model_id)  # type: ignore[return-value]

    async def set_limit(self, model_id: str, max_concurrent: int) -> ConcurrencyLimit:
        """Create or update a model's maximum (admin setConcurrencyLimit).

        Raises:
            InvalidParameters: If max_concurrent is outside 1..999
        """
        validate_max_concurrent(max_concurrent)
        await self.ensure_limit(model_id)
        await self.uow.concurrency_limits.update_max(model_id, max_concurrent)
        logger.info("limiter.updated", model_id=model_id, max_concurrent=max_concurrent)
        return await self.uow.concurrency_limits.get(model_id)  # type: ignore[return-value]

    async def update_limit(self, model_id: str, max_concurrent: int) -> ConcurrencyLimit:
        """Change the maximum of an existing limit.

        Raises:
            InvalidParameters: If max_concurrent is outside 1..999
            NotFound: If the model has no limit row
        """
        validate_max_concurrent(max_concurrent)
        if not await self.uow.concurrency_limits.update_max(model_id, max_concurrent):
            raise NotFound(f"No concurrency limit for {model_id}")
        logger.info("limiter.updated", model_id=model_id, max_concurrent=max_concurrent)
        return await self.uow.concurrency_limits.get(model_id)  # type: ignore[return-value]

    async def delete_limit(self, model_id: str) -> bool:
        deleted = await self.uow.concurrency_limits.delete(model_id)
        logger.info("limiter.deleted", model_id=model_id, deleted=deleted)
        return deleted
