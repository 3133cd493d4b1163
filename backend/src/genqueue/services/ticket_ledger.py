"""Ticket ledger: reserve, commit, release and grant against a user's account.

All operations run inside the caller's unit of work so admission and lifecycle
transitions can change the ledger and the queue in one transaction.
"""

from dataclasses import dataclass

import structlog

from genqueue.services.exceptions import BookkeepingInvariantViolation, InsufficientTickets
from genqueue.uow import UnitOfWork

logger = structlog.get_logger()


@dataclass
class TicketBalance:
    user_id: int
    balance: int = 0
    reserved: int = 0
    total_bought: int = 0
    total_used: int = 0


class TicketLedger:
    """Per-user ticket bookkeeping on top of TicketAccountRepository."""

    def __init__(self, uow: UnitOfWork):
        self.uow = uow

    async def reserve(self, user_id: int, amount: int) -> None:
        """Move amount from balance to reserved.

        A user without an account has a zero balance.

        Raises:
            InsufficientTickets: If the available balance is below amount
        """
        if not await self.uow.ticket_accounts.reserve(user_id, amount):
            logger.info("ledger.reserve_rejected", user_id=user_id, amount=amount)
            raise InsufficientTickets(user_id, amount)
        logger.debug("ledger.reserved", user_id=user_id, amount=amount)

    async def commit(self, user_id: int, amount: int) -> None:
        """Spend a reservation. Underflow is logged and clamped, never raised."""
        try:
            await self.uow.ticket_accounts.commit(user_id, amount)
        except BookkeepingInvariantViolation as e:
            logger.error(
                "ledger.invariant_violation",
                operation="commit",
                user_id=user_id,
                amount=amount,
                error=str(e),
            )
            await self.uow.ticket_accounts.clamp_commit(user_id, amount)

    async def release(self, user_id: int, amount: int) -> None:
        """Refund a reservation. Underflow is logged and clamped, never raised."""
        try:
            await self.uow.ticket_accounts.release(user_id, amount)
        except BookkeepingInvariantViolation as e:
            logger.error(
                "ledger.invariant_violation",
                operation="release",
                user_id=user_id,
                amount=amount,
                error=str(e),
            )
            await self.uow.ticket_accounts.clamp_release(user_id, amount)

    async def grant(self, user_id: int, amount: int) -> TicketBalance:
        """Credit tickets, creating the account on first grant."""
        account = await self.uow.ticket_accounts.grant(user_id, amount)
        logger.info("ledger.granted", user_id=user_id, amount=amount, balance=account.balance)
        return _to_balance(account)

    async def get_balance(self, user_id: int) -> TicketBalance:
        """Return the user's balances, all zero when no account exists."""
        account = await self.uow.ticket_accounts.get_by_user(user_id)
        if account is None:
            return TicketBalance(user_id=user_id)
        return _to_balance(account)


def _to_balance(account) -> TicketBalance:
    return TicketBalance(
        user_id=account.user_id,
        balance=account.balance,
        reserved=account.reserved,
        total_bought=account.total_bought,
        total_used=account.total_used,
    )
