"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from genqueue.models.concurrency_limit import ConcurrencyLimit, ModelType
from genqueue.models.queue_item import QueueItem, QueueStatus
from genqueue.models.ticket_account import TicketAccount

__all__ = [
    "ConcurrencyLimit",
    "ModelType",
    "QueueItem",
    "QueueStatus",
    "TicketAccount",
]
