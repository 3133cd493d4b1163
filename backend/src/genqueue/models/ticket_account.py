"""TicketAccount entity - per-user ticket balances."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from genqueue.core.timezone import UTCTimestamp, utc_now


class TicketAccount(SQLModel, table=True):
    """TicketAccount holds a user's available, reserved and lifetime ticket counts.

    A reservation moves tickets from balance to reserved; neither ever goes below zero.
    """

    __tablename__ = "ticket_accounts"  # type: ignore[assignment]

    user_id: int = Field(primary_key=True, sa_column_kwargs={"autoincrement": False})
    balance: int = Field(default=0, ge=0)
    reserved: int = Field(default=0, ge=0)
    total_bought: int = Field(default=0, ge=0)
    total_used: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=UTCTimestamp)
