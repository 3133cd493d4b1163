"""TicketAccount repository for genqueue.

Every balance mutation is a single conditional UPDATE with its precondition in the
WHERE clause, so concurrent requests cannot both pass a check-then-act race.
"""

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genqueue.core.database import dialect_insert
from genqueue.core.timezone import utc_now
from genqueue.models.ticket_account import TicketAccount
from genqueue.services.exceptions import BookkeepingInvariantViolation


class TicketAccountRepository:
    """Repository for TicketAccount entities.

    Methods:
    - get_by_user: Fetch a user's account (fresh from the database)
    - reserve: balance -> reserved, only if balance covers the amount
    - commit: reserved -> total_used after a successful job
    - release: reserved -> balance after a failed or cancelled job
    - clamp_commit / clamp_release: move only what is actually reserved
    - grant: UPSERT crediting balance and total_bought
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_user(self, user_id: int) -> TicketAccount | None:
        """Retrieve a user's ticket account.

        Uses populate_existing so values changed by bulk UPDATEs in this
        session are re-read instead of served from the identity map.

        Args:
            user_id: Owning user's identifier

        Returns:
            TicketAccount if found, None otherwise
        """
        result = await self.session.execute(
            select(TicketAccount)
            .where(TicketAccount.user_id == user_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def reserve(self, user_id: int, amount: int) -> bool:
        """Move tickets from balance to reserved if the balance covers them.

        Query:
            UPDATE ticket_accounts
            SET balance = balance - :amount, reserved = reserved + :amount
            WHERE user_id = :user_id AND balance >= :amount

        Returns:
            True if the reservation was made, False if the balance is
            insufficient or the account does not exist
        """
        result = await self.session.execute(
            update(TicketAccount)
            .where(
                TicketAccount.user_id == user_id,  # type: ignore[arg-type]
                TicketAccount.balance >= amount,  # type: ignore[arg-type]
            )
            .values(
                balance=TicketAccount.balance - amount,
                reserved=TicketAccount.reserved + amount,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def commit(self, user_id: int, amount: int) -> None:
        """Consume a reservation: reserved -= amount, total_used += amount.

        Raises:
            BookkeepingInvariantViolation: If less than amount is reserved
        """
        result = await self.session.execute(
            update(TicketAccount)
            .where(
                TicketAccount.user_id == user_id,  # type: ignore[arg-type]
                TicketAccount.reserved >= amount,  # type: ignore[arg-type]
            )
            .values(
                reserved=TicketAccount.reserved - amount,
                total_used=TicketAccount.total_used + amount,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise BookkeepingInvariantViolation(
                f"Cannot commit {amount} tickets for user {user_id}: reservation too small"
            )

    async def release(self, user_id: int, amount: int) -> None:
        """Refund a reservation: reserved -= amount, balance += amount.

        Raises:
            BookkeepingInvariantViolation: If less than amount is reserved
        """
        result = await self.session.execute(
            update(TicketAccount)
            .where(
                TicketAccount.user_id == user_id,  # type: ignore[arg-type]
                TicketAccount.reserved >= amount,  # type: ignore[arg-type]
            )
            .values(
                reserved=TicketAccount.reserved - amount,
                balance=TicketAccount.balance + amount,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise BookkeepingInvariantViolation(
                f"Cannot release {amount} tickets for user {user_id}: reservation too small"
            )

    async def clamp_commit(self, user_id: int, amount: int) -> None:
        """Consume at most amount tickets from reserved, flooring reserved at zero."""
        moved = self._clamped(amount)
        await self.session.execute(
            update(TicketAccount)
            .where(TicketAccount.user_id == user_id)  # type: ignore[arg-type]
            .values(
                reserved=TicketAccount.reserved - moved,
                total_used=TicketAccount.total_used + moved,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )

    async def clamp_release(self, user_id: int, amount: int) -> None:
        """Refund at most amount tickets from reserved, flooring reserved at zero."""
        moved = self._clamped(amount)
        await self.session.execute(
            update(TicketAccount)
            .where(TicketAccount.user_id == user_id)  # type: ignore[arg-type]
            .values(
                reserved=TicketAccount.reserved - moved,
                balance=TicketAccount.balance + moved,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )

    async def grant(self, user_id: int, amount: int) -> TicketAccount:
        """Credit tickets to a user, creating the account if needed (UPSERT).

        Query explanation:
        - INSERT: New account starts with balance = total_bought = amount
        - ON CONFLICT (user_id): Account already exists
        - DO UPDATE: balance += amount, total_bought += amount

        Returns:
            The account after the credit
        """
        table = TicketAccount.__table__  # type: ignore[attr-defined]
        now = utc_now()
        stmt = dialect_insert(self.session, TicketAccount).values(
            user_id=user_id,
            balance=amount,
            reserved=0,
            total_bought=amount,
            total_used=0,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id"],
            set_={
                "balance": table.c.balance + amount,
                "total_bought": table.c.total_bought + amount,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

        return await self.get_by_user(user_id)  # type: ignore[return-value]

    @staticmethod
    def _clamped(amount: int):
        # least(reserved, amount), portable across PostgreSQL and SQLite
        return case(
            (TicketAccount.reserved < amount, TicketAccount.reserved),  # type: ignore[arg-type]
            else_=amount,
        )
