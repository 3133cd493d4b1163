"""Dispatcher worker: moves queued items into processing and runs them.

Polls for models with queued items, starts the next items in serving order
while the model has free slots, and awaits the provider call for each started
item. When a run finishes its slot is free again, so the worker immediately
tries to start the next queued item for that model.

Each state change goes through JobLifecycleManager, which uses its own unit of
work per transition. The provider call itself runs outside any transaction.
"""

import asyncio
import time
from typing import Callable, Optional

import structlog

from genqueue.core.config import Settings
from genqueue.models.queue_item import QueueStatus
from genqueue.services import pricing
from genqueue.services.exceptions import InvalidTransition, NotFound, UpstreamProviderError
from genqueue.services.generation.provider import GenerationProvider, GenerationResult
from genqueue.services.lifecycle import JobLifecycleManager

logger = structlog.get_logger(__name__)


def provider_input(model_id: str, parameters: dict) -> tuple[str, dict]:
    """Resolve the provider model and its input for a queued request."""
    model = pricing.CATALOG.get(model_id)
    if model is None:
        return model_id, dict(parameters)
    return model.provider_model, pricing.normalize_parameters(model, parameters)


async def generate_while_processing(
    item_id: int,
    uow_factory: Callable,
    provider: GenerationProvider,
    provider_model: str,
    parameters: dict,
    poll_interval: float,
) -> Optional[GenerationResult]:
    """Await the provider call, abandoning it if the item leaves processing.

    The item's status is re-read every poll_interval seconds. When it has been
    cancelled or reaped, the provider call is cancelled (which cancels the
    upstream prediction) and None is returned. The provider call is also
    cancelled when this coroutine is cancelled, e.g. by a timeout.
    """
    generation = asyncio.ensure_future(provider.generate(provider_model, parameters))
    try:
        while True:
            done, _ = await asyncio.wait({generation}, timeout=poll_interval)
            if done:
                return generation.result()
            async with await uow_factory() as uow:
                item = await uow.queue_items.get_by_id(item_id)
            if item is None or item.status != QueueStatus.PROCESSING:
                return None
    finally:
        if not generation.done():
            generation.cancel()
            await asyncio.gather(generation, return_exceptions=True)


async def run_generation(
    item_id: int,
    uow_factory: Callable,
    provider: GenerationProvider,
    settings: Settings,
) -> None:
    """Call the provider for a processing item and record the outcome.

    Workflow:
    1. Load the item; skip unless it is processing
    2. Call the provider with PROVIDER_TIMEOUT_SECONDS
    3. complete() on success, fail() on provider error or timeout
    4. Cancel the provider call if the item is cancelled or reaped meanwhile;
       a result that arrives after that is discarded
    """
    lifecycle = JobLifecycleManager(uow_factory, settings)

    async with await uow_factory() as uow:
        item = await uow.queue_items.get_by_id(item_id)
    if item is None or item.status != QueueStatus.PROCESSING:
        logger.info("queue.run_skipped", queue_id=item_id)
        return

    provider_model, parameters = provider_input(item.model_id, item.parameters)
    start_time = time.time()
    logger.info(
        "queue.generation.started",
        queue_id=item_id,
        model_id=item.model_id,
        provider_model=provider_model,
        attempt_number=item.attempts,
    )

    error_message: Optional[str] = None
    result = None
    try:
        result = await asyncio.wait_for(
            generate_while_processing(
                item_id,
                uow_factory,
                provider,
                provider_model,
                parameters,
                settings.poll_interval_seconds,
            ),
            timeout=settings.provider_timeout_seconds,
        )
        if result is None:
            logger.info("queue.generation.abandoned", queue_id=item_id)
            return
    except asyncio.TimeoutError:
        error_message = f"Generation timed out after {settings.provider_timeout_seconds} seconds"
    except UpstreamProviderError as e:
        error_message = str(e) or type(e).__name__
    except Exception as e:
        logger.error(
            "queue.generation.unexpected_error",
            queue_id=item_id,
            error_type=type(e).__name__,
            error_message=str(e),
            exc_info=True,
        )
        error_message = f"Unexpected error: {e}"

    duration = time.time() - start_time
    try:
        if result is not None:
            await lifecycle.complete(item_id, result.result_url, result.result_image_id)
            logger.info(
                "queue.generation.succeeded",
                queue_id=item_id,
                result_url=result.result_url,
                duration_seconds=duration,
            )
        else:
            await lifecycle.fail(item_id, error_message or "Generation failed")
            logger.warning(
                "queue.generation.failed",
                queue_id=item_id,
                error_message=error_message,
                duration_seconds=duration,
            )
    except (InvalidTransition, NotFound) as e:
        logger.warning("queue.result_discarded", queue_id=item_id, reason=str(e))


async def dispatch_model(
    model_id: str,
    uow_factory: Callable,
    settings: Settings,
    limit: Optional[int] = None,
) -> list[int]:
    """Start queued items for one model until it is full or the limit is reached.

    Returns:
        IDs of the items moved to processing, in serving order
    """
    lifecycle = JobLifecycleManager(uow_factory, settings)
    limit = limit if limit is not None else settings.worker_batch_size

    started: list[int] = []
    while len(started) < limit:
        try:
            item_id = await lifecycle.start_next(model_id)
        except InvalidTransition:
            # Lost the item to another dispatcher; look again
            continue
        if item_id is None:
            break
        started.append(item_id)

    if started:
        logger.info("worker.dispatched", model_id=model_id, started=started)
    return started


async def run_and_continue(
    item_id: int,
    model_id: str,
    uow_factory: Callable,
    provider: GenerationProvider,
    settings: Settings,
) -> None:
    """Run one item, then start and run whatever its freed slot admits next."""
    await run_generation(item_id, uow_factory, provider, settings)

    next_ids = await dispatch_model(model_id, uow_factory, settings)
    if next_ids:
        await asyncio.gather(
            *(
                run_and_continue(next_id, model_id, uow_factory, provider, settings)
                for next_id in next_ids
            )
        )


def _log_run_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "queue.generation.failed",
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=exc,
        )


async def process_batch(
    uow_factory: Callable,
    provider: GenerationProvider,
    settings: Settings,
    in_flight: Optional[set] = None,
) -> int:
    """Reap stale items, then dispatch and run queued items for every model.

    Args:
        in_flight: When given, runs are scheduled as tasks tracked in this set
            and the call returns without waiting for them. Otherwise the call
            waits for every run (and its follow-ups) to finish.

    Returns:
        Number of items started in this batch
    """
    lifecycle = JobLifecycleManager(uow_factory, settings)
    await lifecycle.reap_stale()

    async with await uow_factory() as uow:
        model_ids = await uow.queue_items.get_models_with_queued()

    tasks = []
    for model_id in model_ids:
        for item_id in await dispatch_model(model_id, uow_factory, settings):
            tasks.append(run_and_continue(item_id, model_id, uow_factory, provider, settings))

    if not tasks:
        return 0

    if in_flight is not None:
        for coro in tasks:
            task = asyncio.create_task(coro)
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)
            task.add_done_callback(_log_run_failure)
        return len(tasks)

    results = await asyncio.gather(*tasks, return_exceptions=True)
    for result in results:
        if isinstance(result, Exception):
            logger.error(
                "queue.generation.failed",
                error=str(result),
                error_type=type(result).__name__,
            )
    return len(tasks)


async def run_dispatch_worker(
    uow_factory: Callable,
    provider: GenerationProvider,
    settings: Settings,
) -> None:
    """Main dispatcher loop.

    Runs one stale sweep on startup, then calls process_batch() every
    POLL_INTERVAL_SECONDS until cancelled.
    """
    reaped = await JobLifecycleManager(uow_factory, settings).reap_stale()
    if reaped.reaped_count:
        logger.info("worker.recovery", stale_items_reaped=reaped.reaped_count)

    logger.info(
        "worker.started",
        poll_interval=settings.poll_interval_seconds,
        batch_size=settings.worker_batch_size,
    )

    in_flight: set[asyncio.Task] = set()
    try:
        while True:
            try:
                await process_batch(uow_factory, provider, settings, in_flight)
                await asyncio.sleep(settings.poll_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        for task in list(in_flight):
            task.cancel()
        logger.info("worker.stopped", in_flight=len(in_flight))
        raise
