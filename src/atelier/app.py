"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response, status
from sqlalchemy import text

from atelier.api.routes import webhooks
from atelier.context import EngineContext, build_context
from atelier.core.config import Settings, configure_logging
from atelier.core.database import create_schema, get_engine
from atelier.workers.bootstrap import run_generation_worker

logger = structlog.get_logger()


def create_resilient_worker(
    coro_func, context: EngineContext, worker_name: str, shutdown_event: asyncio.Event
):
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Worker coroutine function taking the engine context
            (e.g., run_generation_worker)
        context: Engine context shared with the HTTP layer
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Dict holding the live task under "task" (replaced on every restart)
    """
    RESTART_DELAY = 1  # Fixed 1 second delay between restarts
    current: dict[str, asyncio.Task] = {}

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            # Worker loops run forever; returning at all is unexpected
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            # Shutdown may have been requested during sleep
            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_func(context))
            new_task.add_done_callback(on_worker_done)
            current["task"] = new_task

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_func(context))
    task.add_done_callback(on_worker_done)
    current["task"] = task
    return current


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    - Startup: configure logging, build the engine context, start the worker pool
    - Shutdown: stop the worker, release the HTTP client and the database engine
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    context = build_context(settings)
    app.state.context = context

    if settings.database_url.startswith("sqlite"):
        # Local runs without Alembic
        await create_schema(get_engine(context.session_factory))

    shutdown_event = asyncio.Event()
    worker = None
    if settings.worker_enabled:
        worker = create_resilient_worker(
            run_generation_worker,
            context,
            f"generation:{settings.worker_job_type}",
            shutdown_event,
        )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        worker_enabled=settings.worker_enabled,
        job_type=settings.worker_job_type,
        provider=settings.worker_provider,
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    if worker is not None:
        worker["task"].cancel()
        await asyncio.gather(worker["task"], return_exceptions=True)

    await context.aclose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title="Atelier Generation Engine",
        description="Asynchronous generation job lifecycle engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test and queue metrics.

        Returns:
            200: {"status": "healthy", "queue": {...}} if the database answers
            503: {"status": "unhealthy", "error": {...}} otherwise
        """
        context: EngineContext = app.state.context
        try:
            async with context.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()
            metrics = await context.queue.metrics(context.settings.worker_job_type)

            logger.debug("health_check.success")
            return {
                "status": "healthy",
                "queue": {"job_type": context.settings.worker_job_type, **metrics.as_dict()},
            }

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
