"""Ticket balance API endpoints.

- GET /api/tickets/{user_id} - Current balance, reservations and lifetime totals
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from genqueue.api.dependencies import get_uow_factory
from genqueue.services.ticket_ledger import TicketLedger

router = APIRouter(prefix="/api/tickets", tags=["tickets"])


class TicketBalanceResponse(BaseModel):
    """Response model for a user's ticket account."""

    user_id: int
    balance: int = Field(..., description="Tickets available for new requests")
    reserved: int = Field(..., description="Tickets held by queued or running requests")
    total_bought: int
    total_used: int


@router.get("/{user_id}", response_model=TicketBalanceResponse)
async def get_ticket_balance(user_id: int, uow_factory=Depends(get_uow_factory)):
    """Get a user's ticket balances; users without an account have zeros."""
    async with await uow_factory() as uow:
        balance = await TicketLedger(uow).get_balance(user_id)
    return TicketBalanceResponse(**balance.__dict__)
