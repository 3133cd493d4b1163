"""ConcurrencyLimit entity - per-model active job budget."""

from datetime import datetime
from enum import Enum

from sqlmodel import Field, SQLModel

from genqueue.core.timezone import UTCTimestamp, utc_now

MIN_CONCURRENT = 1
MAX_CONCURRENT = 999


class ModelType(str, Enum):
    """Kind of media a model produces."""

    IMAGE = "image"
    VIDEO = "video"


class ConcurrencyLimit(SQLModel, table=True):
    """ConcurrencyLimit caps how many jobs of one model may be processing at once."""

    __tablename__ = "concurrency_limits"  # type: ignore[assignment]

    model_id: str = Field(primary_key=True, max_length=100)
    model_type: ModelType = Field(default=ModelType.IMAGE)
    max_concurrent: int = Field(ge=MIN_CONCURRENT, le=MAX_CONCURRENT)
    current_active: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=UTCTimestamp)

    @property
    def available_slots(self) -> int:
        return max(0, self.max_concurrent - self.current_active)
