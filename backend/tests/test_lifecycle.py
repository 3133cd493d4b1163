"""Job lifecycle tests: complete, fail, cancel, retry and stale reaping."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from genqueue.core.timezone import utc_now
from genqueue.models.queue_item import QueueItem, QueueStatus
from genqueue.services.admission import AdmissionController, SubmitRequest
from genqueue.services.exceptions import InsufficientTickets, InvalidTransition, NotFound
from genqueue.services.lifecycle import JobLifecycleManager

PARAMS = {"prompt": "ocean waves", "resolution": "480p", "duration": 5}  # 7 tickets


@pytest.fixture
def lifecycle(uow_factory, settings):
    return JobLifecycleManager(uow_factory, settings)


@pytest.fixture
def submit(uow_factory, settings):
    admission = AdmissionController(uow_factory, settings)

    async def _submit(user_id: int = 1, priority: int = 0):
        return await admission.submit(
            SubmitRequest(user_id=user_id, model_id="wan-2.5", parameters=PARAMS, priority=priority)
        )

    return _submit


async def backdate(uow_factory, item_id: int, minutes: int):
    async with await uow_factory() as uow:
        await uow.session.execute(
            update(QueueItem)
            .where(QueueItem.id == item_id)
            .values(started_at=utc_now() - timedelta(minutes=minutes))
        )


@pytest.mark.asyncio
async def test_complete_commits_tickets_and_frees_slot(
    lifecycle, submit, grant, set_limit, account, limit_row, queue_item
):
    await grant(1, 10)
    await set_limit("wan-2.5", 1)
    job = await submit()

    await lifecycle.complete(job.queue_id, "https://cdn.example/v.mp4", "pred-1")

    acct = await account(1)
    assert (acct.balance, acct.reserved, acct.total_used) == (3, 0, 7)
    assert (await limit_row("wan-2.5")).current_active == 0
    item = await queue_item(job.queue_id)
    assert item.status == QueueStatus.COMPLETED
    assert item.result_url == "https://cdn.example/v.mp4"
    assert item.result_image_id == "pred-1"
    assert item.completed_at is not None
    assert item.reservation_held is False


@pytest.mark.asyncio
async def test_completion_then_queued_job_takes_the_slot(
    lifecycle, submit, grant, set_limit, limit_row, queue_item
):
    await grant(1, 10)
    await grant(2, 10)
    await set_limit("wan-2.5", 1)
    running = await submit(1)
    waiting = await submit(2)

    assert await lifecycle.start(waiting.queue_id) is None

    await lifecycle.complete(running.queue_id, "https://cdn.example/1.mp4")
    started = await lifecycle.start_next("wan-2.5")

    assert started == waiting.queue_id
    item = await queue_item(waiting.queue_id)
    assert item.status == QueueStatus.PROCESSING
    assert item.attempts == 1
    assert item.started_at is not None
    assert (await limit_row("wan-2.5")).current_active == 1


@pytest.mark.asyncio
async def test_fail_refunds_and_frees_slot(lifecycle, submit, grant, account, limit_row, queue_item):
    await grant(1, 10)
    job = await submit()

    await lifecycle.fail(job.queue_id, "provider exploded")

    acct = await account(1)
    assert (acct.balance, acct.reserved, acct.total_used) == (10, 0, 0)
    assert (await limit_row("wan-2.5")).current_active == 0
    item = await queue_item(job.queue_id)
    assert item.status == QueueStatus.FAILED
    assert item.error_message == "provider exploded"


@pytest.mark.asyncio
async def test_complete_after_cancel_is_rejected(lifecycle, submit, grant, account):
    await grant(1, 10)
    job = await submit()
    await lifecycle.cancel(job.queue_id)

    with pytest.raises(InvalidTransition):
        await lifecycle.complete(job.queue_id, "https://cdn.example/late.mp4")

    assert (await account(1)).total_used == 0


@pytest.mark.asyncio
async def test_cancel_twice_second_is_invalid_transition(
    lifecycle, submit, grant, set_limit, account, limit_row
):
    await grant(1, 10)
    await set_limit("wan-2.5", 1)
    job = await submit()

    await lifecycle.cancel(job.queue_id)
    with pytest.raises(InvalidTransition, match="already cancelled"):
        await lifecycle.cancel(job.queue_id)

    acct = await account(1)
    assert (acct.balance, acct.reserved) == (10, 0)
    assert (await limit_row("wan-2.5")).current_active == 0


@pytest.mark.asyncio
async def test_cancel_queued_keeps_slot_of_running_job(
    lifecycle, submit, grant, set_limit, account, limit_row
):
    await grant(1, 20)
    await set_limit("wan-2.5", 1)
    await submit()
    queued = await submit()

    await lifecycle.cancel(queued.queue_id)

    assert (await limit_row("wan-2.5")).current_active == 1
    acct = await account(1)
    assert (acct.balance, acct.reserved) == (13, 7)


@pytest.mark.asyncio
async def test_cancel_checks_owner(lifecycle, submit, grant):
    await grant(1, 10)
    job = await submit(1)

    with pytest.raises(NotFound):
        await lifecycle.cancel(job.queue_id, user_id=2)
    with pytest.raises(NotFound):
        await lifecycle.cancel(999_999)

    await lifecycle.cancel(job.queue_id, user_id=1)


@pytest.mark.asyncio
async def test_cannot_cancel_completed(lifecycle, submit, grant):
    await grant(1, 10)
    job = await submit()
    await lifecycle.complete(job.queue_id, "https://cdn.example/x.mp4")

    with pytest.raises(InvalidTransition):
        await lifecycle.cancel(job.queue_id)


@pytest.mark.asyncio
async def test_retry_failed_reserves_again(
    lifecycle, submit, grant, set_limit, account, queue_item
):
    await grant(1, 10)
    await set_limit("wan-2.5", 1)
    job = await submit()
    await lifecycle.fail(job.queue_id, "transient")

    result = await lifecycle.retry(job.queue_id)

    assert result.position == 1
    item = await queue_item(job.queue_id)
    assert item.status == QueueStatus.QUEUED
    assert item.error_message is None
    assert item.started_at is None
    assert item.completed_at is None
    assert item.reservation_held is True
    acct = await account(1)
    assert (acct.balance, acct.reserved) == (3, 7)


@pytest.mark.asyncio
async def test_retry_without_balance_is_rejected_and_rolled_back(
    lifecycle, submit, grant, uow_factory, queue_item
):
    await grant(1, 10)
    job = await submit()
    await lifecycle.fail(job.queue_id, "boom")

    # Spend the refund elsewhere so the retry cannot re-reserve
    async with await uow_factory() as uow:
        assert await uow.ticket_accounts.reserve(1, 5)

    with pytest.raises(InsufficientTickets):
        await lifecycle.retry(job.queue_id)

    assert (await queue_item(job.queue_id)).status == QueueStatus.FAILED


@pytest.mark.asyncio
async def test_retry_only_from_failed_or_cancelled(lifecycle, submit, grant):
    await grant(1, 10)
    job = await submit()

    with pytest.raises(InvalidTransition):
        await lifecycle.retry(job.queue_id)


@pytest.mark.asyncio
async def test_reap_stale_twice_reaps_once(
    lifecycle, submit, grant, set_limit, uow_factory, account, limit_row, queue_item
):
    await grant(1, 20)
    await set_limit("wan-2.5", 2)
    stale = await submit()
    fresh = await submit()
    await backdate(uow_factory, stale.queue_id, minutes=31)

    first = await lifecycle.reap_stale()
    second = await lifecycle.reap_stale()

    assert first.reaped_count == 1
    assert second.reaped_count == 0
    item = await queue_item(stale.queue_id)
    assert item.status == QueueStatus.FAILED
    assert "timed out" in item.error_message
    assert (await queue_item(fresh.queue_id)).status == QueueStatus.PROCESSING
    assert (await limit_row("wan-2.5")).current_active == 1
    acct = await account(1)
    assert (acct.balance, acct.reserved) == (13, 7)


@pytest.mark.asyncio
async def test_concurrent_reaps_release_slot_exactly_once(
    lifecycle, submit, grant, set_limit, uow_factory, account, limit_row
):
    await grant(1, 20)
    await set_limit("wan-2.5", 3)
    await submit()
    stale = await submit()
    await backdate(uow_factory, stale.queue_id, minutes=45)

    results = await asyncio.gather(*(lifecycle.reap_stale() for _ in range(5)))

    assert sum(r.reaped_count for r in results) == 1
    assert (await limit_row("wan-2.5")).current_active == 1
    assert (await account(1)).reserved == 7


@pytest.mark.asyncio
async def test_clear_completed(lifecycle, submit, grant, uow_factory):
    await grant(1, 50)
    done = await submit()
    failed = await submit()
    cancelled = await submit()
    await lifecycle.complete(done.queue_id, "https://cdn.example/a.mp4")
    await lifecycle.fail(failed.queue_id, "nope")
    await lifecycle.cancel(cancelled.queue_id)

    assert await lifecycle.clear_completed() == 2
    assert await lifecycle.clear_completed(include_failed=True) == 1

    async with await uow_factory() as uow:
        assert await uow.queue_items.list_items() == []
