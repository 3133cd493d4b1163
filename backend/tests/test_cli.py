"""Tests for the stale-reaping CLI."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from genqueue.cli.reap_stale import async_main, parse_args
from genqueue.core.timezone import utc_now
from genqueue.models.queue_item import QueueItem, QueueStatus
from genqueue.services.admission import AdmissionController, SubmitRequest


def test_parse_args():
    args = parse_args(["--stale-after-minutes", "45", "-v"])
    assert args.stale_after_minutes == 45
    assert args.verbose is True

    defaults = parse_args([])
    assert defaults.stale_after_minutes is None
    assert defaults.verbose is False


@pytest.mark.asyncio
async def test_cli_reaps_with_threshold_override(settings, uow_factory, grant, queue_item):
    await grant(1, 5)
    job = await AdmissionController(uow_factory, settings).submit(
        SubmitRequest(user_id=1, model_id="flux-2", parameters={"prompt": "mountains"})
    )
    async with await uow_factory() as uow:
        await uow.session.execute(
            update(QueueItem)
            .where(QueueItem.id == job.queue_id)
            .values(started_at=utc_now() - timedelta(minutes=10))
        )

    # Ten minutes is not stale under the default threshold
    assert await async_main([], settings=settings.model_copy()) == 0
    assert (await queue_item(job.queue_id)).status == QueueStatus.PROCESSING

    assert await async_main(["--stale-after-minutes", "5"], settings=settings.model_copy()) == 0
    assert (await queue_item(job.queue_id)).status == QueueStatus.FAILED
