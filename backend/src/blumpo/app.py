"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from blumpo.api.routes import generation, generation_jobs
from blumpo.core.config import Settings, configure_logging
from blumpo.core.database import setup_db_session
from blumpo.services.exceptions import GenerationError
from blumpo.services.generation.dispatcher import WorkflowDispatcher
from blumpo.services.generation.ingestor import CallbackIngestor
from blumpo.services.generation.orchestrator import GenerationOrchestrator
from blumpo.services.generation.policy import GenerationPolicy
from blumpo.services.rendezvous import create_rendezvous
from blumpo.uow import create_uow_factory
from blumpo.workers.stale_job_worker import run_stale_job_worker

logger = structlog.get_logger()


def create_resilient_worker(
    coro_func, session_factory, settings, worker_name: str, shutdown_event: asyncio.Event
):
    """Run a background loop as a task that is restarted whenever it dies.

    Args:
        coro_func: Loop coroutine taking (session_factory, settings)
        session_factory: Passed to every (re)started loop
        settings: Passed to every (re)started loop
        worker_name: Name used in worker.* log events
        shutdown_event: Once set, a finished task is not restarted

    Returns:
        The first task; replacements are not returned to the caller
    """
    RESTART_DELAY = 1  # seconds

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
            # Worker loops never return on their own
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_func(session_factory, settings))
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_func(session_factory, settings))
    task.add_done_callback(on_worker_done)
    return task


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, create the database session factory, the
      rendezvous backend, the engine HTTP client and the generation services,
      start the stale job worker
    - Shutdown: Stop the worker, close the HTTP client, the rendezvous backend
      and the database engine
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    rendezvous = create_rendezvous(settings)
    http_client = httpx.AsyncClient(timeout=settings.dispatch_timeout_seconds)
    policy = GenerationPolicy(
        free_plan_code=settings.free_plan_code,
        partial_charge_tokens=settings.partial_charge_tokens,
    )

    # Store in app.state for access in routes
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.rendezvous = rendezvous
    app.state.orchestrator = GenerationOrchestrator(
        uow_factory=uow_factory,
        rendezvous=rendezvous,
        dispatcher=WorkflowDispatcher(http_client, settings.n8n_webhook_key),
        settings=settings,
        policy=policy,
    )
    app.state.ingestor = CallbackIngestor(uow_factory, rendezvous, policy)

    shutdown_event = asyncio.Event()
    stale_job_worker_task = create_resilient_worker(
        run_stale_job_worker, session_factory, settings, "stale_jobs", shutdown_event
    )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        rendezvous=type(rendezvous).__name__,
        callback_url=settings.callback_url,
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    stale_job_worker_task.cancel()
    await asyncio.gather(stale_job_worker_task, return_exceptions=True)

    await http_client.aclose()
    await rendezvous.close()
    await session_factory.kw["bind"].dispose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Blumpo Generation API",
        description="Ad generation orchestration and engine callbacks",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(generation.router)  # prefix="/api/generate" in definition
    app.include_router(generation_jobs.router)  # prefix="/api/generation-jobs" in definition

    @app.exception_handler(GenerationError)
    async def generation_error_handler(request: Request, exc: GenerationError) -> JSONResponse:
        """Render service errors as {error, error_code, job_id?, ...} with their HTTP status."""
        logger.info(
            "request.generation_error",
            path=request.url.path,
            status_code=exc.http_status,
            error_code=exc.error_code,
            job_id=exc.job_id,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_body())

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database and rendezvous connectivity test.

        Returns:
            200: {"status": "healthy"} if both backends respond
            503: {"status": "unhealthy", "error": {...}} otherwise
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            await app.state.rendezvous.ping()

            logger.debug("health_check.success")
            return {"status": "healthy"}

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
