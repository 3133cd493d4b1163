"""QueueItem entity - one generation request with lifecycle status tracking."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel

from genqueue.core.timezone import UTCTimestamp, utc_now
from genqueue.models.concurrency_limit import ModelType
from genqueue.services.exceptions import InvalidTransition


class QueueStatus(str, Enum):
    """Queue item lifecycle status."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.CANCELLED}
)

# failed/cancelled -> queued is only reachable through an explicit retry
ALLOWED_TRANSITIONS: dict[QueueStatus, frozenset[QueueStatus]] = {
    QueueStatus.QUEUED: frozenset({QueueStatus.PROCESSING, QueueStatus.CANCELLED}),
    QueueStatus.PROCESSING: frozenset(
        {QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.CANCELLED}
    ),
    QueueStatus.COMPLETED: frozenset(),
    QueueStatus.FAILED: frozenset({QueueStatus.QUEUED}),
    QueueStatus.CANCELLED: frozenset({QueueStatus.QUEUED}),
}


def allowed_sources(target: QueueStatus) -> list[QueueStatus]:
    """Return every status from which target may be entered."""
    return [source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets]


def check_transition(current: QueueStatus, target: QueueStatus) -> None:
    """Validate a single status change.

    Raises:
        InvalidTransition: If the state machine does not allow current -> target
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Cannot move queue item from {current.value} to {target.value}."
        )


class QueueItem(SQLModel, table=True):
    """QueueItem is a generation request waiting for, holding, or done with a model slot."""

    __tablename__ = "queue_items"  # type: ignore[assignment]
    __table_args__ = (Index("ix_queue_items_model_status", "model_id", "status"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    model_id: str = Field(max_length=100)
    model_type: ModelType = Field(default=ModelType.IMAGE)
    status: QueueStatus = Field(default=QueueStatus.QUEUED, index=True)
    priority: int = Field(default=0)
    queue_position: Optional[int] = Field(default=None)
    ticket_cost: int = Field(ge=0)
    reservation_held: bool = Field(default=True)
    parameters: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    result_url: Optional[str] = Field(default=None)
    result_image_id: Optional[str] = Field(default=None, max_length=255)
    error_message: Optional[str] = Field(default=None, max_length=1000)
    attempts: int = Field(default=0, ge=0)
    queued_at: datetime = Field(default_factory=utc_now, sa_type=UTCTimestamp)
    started_at: Optional[datetime] = Field(default=None, sa_type=UTCTimestamp)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCTimestamp)
