"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Callable, Coroutine, Optional

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from genqueue.api.routes import admin, queue, tickets
from genqueue.core import timezone  # noqa: F401
from genqueue.core.config import Settings, configure_logging
from genqueue.core.database import setup_db_session
from genqueue.services.generation.replicate_client import ReplicateProvider
from genqueue.uow import create_uow_factory
from genqueue.workers.dispatch_worker import run_dispatch_worker

logger = structlog.get_logger()

WORKER_RESTART_DELAY_SECONDS = 1


class SupervisedWorker:
    """Keeps a long-running worker coroutine alive.

    When the task ends for any reason other than shutdown (crash or an
    unexpected clean return), a fresh task is started after a fixed delay.
    """

    def __init__(
        self,
        name: str,
        start: Callable[[], Coroutine[Any, Any, None]],
        restart_delay: float = WORKER_RESTART_DELAY_SECONDS,
    ):
        self.name = name
        self.start = start
        self.restart_delay = restart_delay
        self.restarts = 0
        self.task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def state(self) -> str:
        if self._stopping.is_set():
            return "stopped"
        if self.task is None or self.task.done():
            return "restarting"
        return "running"

    def launch(self) -> None:
        self.task = asyncio.create_task(self.start())
        self.task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        if self._stopping.is_set() or task.cancelled():
            logger.info("worker.exited", worker=self.name, restarts=self.restarts)
            return

        exc = task.exception()
        if exc is not None:
            logger.error(
                "worker.crashed",
                worker=self.name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=self.restart_delay,
                exc_info=exc,
            )
        else:
            logger.warning(
                "worker.stopped_unexpectedly", worker=self.name, retry_in_seconds=self.restart_delay
            )
        asyncio.create_task(self._restart())

    async def _restart(self) -> None:
        await asyncio.sleep(self.restart_delay)
        if self._stopping.is_set():
            return
        self.restarts += 1
        logger.info("worker.restarting", worker=self.name, restarts=self.restarts)
        self.launch()

    async def stop(self) -> None:
        """Stop restarting and cancel the current task."""
        self._stopping.set()
        if self.task is not None:
            self.task.cancel()
            await asyncio.gather(self.task, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Startup builds the session and UoW factories and the generation provider,
    then launches the supervised dispatcher (unless DISPATCHER_ENABLED=false,
    e.g. when several API replicas share one dispatcher host).
    """
    settings: Settings = app.state.settings
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    provider = ReplicateProvider(api_token=settings.replicate_api_token)

    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.provider = provider

    dispatcher = None
    if settings.dispatcher_enabled:
        dispatcher = SupervisedWorker(
            "dispatcher", lambda: run_dispatch_worker(uow_factory, provider, settings)
        )
        dispatcher.launch()
    app.state.dispatcher = dispatcher

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        dispatcher_enabled=settings.dispatcher_enabled,
    )

    yield

    logger.info("application.shutdown")
    if dispatcher is not None:
        await dispatcher.stop()
    await session_factory.kw["bind"].dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Settings to use (default: loaded from environment)
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="genqueue API",
        description="Ticket-metered generation admission, queue and concurrency control",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.dispatcher = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(queue.router)
    app.include_router(tickets.router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health_check(response: Response):
        """Database probe plus dispatcher state.

        Returns 503 only when the database is unreachable; a restarting
        dispatcher is reported but does not fail the probe.
        """
        dispatcher = app.state.dispatcher
        dispatcher_state = dispatcher.state if dispatcher is not None else "disabled"

        try:
            async with await app.state.uow_factory() as uow:
                await uow.session.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("health_check.failed", error=str(e), error_type=type(e).__name__)
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "dispatcher": dispatcher_state,
                "error": {"type": type(e).__name__, "message": str(e)},
            }

        return {"status": "healthy", "dispatcher": dispatcher_state}

    return app


# Create app instance for uvicorn
app = create_app()
