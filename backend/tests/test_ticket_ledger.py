"""Ticket ledger tests, including concurrent reservations against one account."""

import asyncio

import pytest

from genqueue.services.exceptions import InsufficientTickets
from genqueue.services.ticket_ledger import TicketLedger


async def reserve_in_own_uow(uow_factory, user_id: int, amount: int) -> bool:
    try:
        async with await uow_factory() as uow:
            await TicketLedger(uow).reserve(user_id, amount)
        return True
    except InsufficientTickets:
        return False


@pytest.mark.asyncio
async def test_reserve_then_release_restores_balances(uow_factory, grant, account):
    await grant(1, 10)
    before = await account(1)

    async with await uow_factory() as uow:
        await TicketLedger(uow).reserve(1, 4)
    async with await uow_factory() as uow:
        await TicketLedger(uow).release(1, 4)

    after = await account(1)
    assert (after.balance, after.reserved) == (before.balance, before.reserved)


@pytest.mark.asyncio
async def test_reserve_insufficient_raises_with_message(uow_factory, grant):
    await grant(1, 3)

    with pytest.raises(InsufficientTickets, match="Need 5 tickets"):
        async with await uow_factory() as uow:
            await TicketLedger(uow).reserve(1, 5)


@pytest.mark.asyncio
async def test_missing_account_is_zero_balance(uow_factory):
    with pytest.raises(InsufficientTickets):
        async with await uow_factory() as uow:
            await TicketLedger(uow).reserve(42, 1)

    async with await uow_factory() as uow:
        balance = await TicketLedger(uow).get_balance(42)
    assert (balance.balance, balance.reserved, balance.total_bought) == (0, 0, 0)


@pytest.mark.asyncio
async def test_commit_moves_reserved_to_used(uow_factory, grant, account):
    await grant(1, 10)
    async with await uow_factory() as uow:
        ledger = TicketLedger(uow)
        await ledger.reserve(1, 7)
        await ledger.commit(1, 7)

    after = await account(1)
    assert (after.balance, after.reserved, after.total_used) == (3, 0, 7)


@pytest.mark.asyncio
async def test_commit_underflow_is_clamped_not_raised(uow_factory, grant, account):
    await grant(1, 10)
    async with await uow_factory() as uow:
        ledger = TicketLedger(uow)
        await ledger.reserve(1, 2)
        await ledger.commit(1, 5)

    after = await account(1)
    assert after.reserved == 0
    assert after.total_used == 2
    assert after.balance == 8


@pytest.mark.asyncio
async def test_release_underflow_is_clamped_not_raised(uow_factory, grant, account):
    await grant(1, 10)
    async with await uow_factory() as uow:
        await TicketLedger(uow).release(1, 3)

    after = await account(1)
    assert (after.balance, after.reserved) == (10, 0)


@pytest.mark.asyncio
async def test_grant_accumulates(uow_factory):
    async with await uow_factory() as uow:
        await TicketLedger(uow).grant(1, 10)
    async with await uow_factory() as uow:
        balance = await TicketLedger(uow).grant(1, 15)

    assert balance.balance == 25
    assert balance.total_bought == 25


@pytest.mark.asyncio
async def test_concurrent_reserves_never_over_admit(uow_factory, grant, account):
    """Twenty callers race for 3 tickets each out of 10: exactly three win."""
    await grant(1, 10)

    results = await asyncio.gather(*(reserve_in_own_uow(uow_factory, 1, 3) for _ in range(20)))

    assert sum(results) == 3
    after = await account(1)
    assert after.reserved == 9
    assert after.balance == 1
