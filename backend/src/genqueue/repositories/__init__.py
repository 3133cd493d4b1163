"""Repository layer for genqueue.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from genqueue.repositories.concurrency_limit import ConcurrencyLimitRepository
from genqueue.repositories.queue_item import QueueItemRepository
from genqueue.repositories.ticket_account import TicketAccountRepository

__all__ = [
    "ConcurrencyLimitRepository",
    "QueueItemRepository",
    "TicketAccountRepository",
]
