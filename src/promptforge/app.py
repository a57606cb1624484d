"""Application wiring and lifecycle."""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from promptforge.core import timezone  # noqa: F401
from promptforge.core.config import Settings, configure_logging
from promptforge.core.database import create_tables, setup_db_session
from promptforge.services.generation.aggregator import BatchStatusAggregator
from promptforge.services.generation.batch_service import BatchService
from promptforge.services.generation.orchestrator import JobOrchestrator, PollPolicy
from promptforge.services.prediction.base import PredictionClient
from promptforge.services.prediction.replicate_client import ReplicatePredictionClient
from promptforge.services.reference_cache import ReferenceImageCache
from promptforge.services.storage.image_ingestor import FilesystemImageIngestor, ImageIngestor
from promptforge.services.storage.reference_store import ReferenceFileStore
from promptforge.services.uploads.replicate_files import BlobUploadClient, ReplicateFilesClient
from promptforge.uow import UowFactory, create_uow_factory
from promptforge.workers.reference_refresh_worker import run_reference_refresh_worker

logger = structlog.get_logger()


@dataclass
class Services:
    """Everything a running engine instance is made of."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    uow_factory: UowFactory
    references: ReferenceImageCache
    aggregator: BatchStatusAggregator
    orchestrator: JobOrchestrator
    batches: BatchService


def build_services(
    settings: Settings,
    predictions: Optional[PredictionClient] = None,
    uploader: Optional[BlobUploadClient] = None,
    ingestor: Optional[ImageIngestor] = None,
) -> Services:
    """Wire the engine from settings.

    External collaborators default to the Replicate clients and the filesystem
    ingestor; pass replacements to run against something else.
    """
    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    if predictions is None:
        predictions = ReplicatePredictionClient(
            api_token=settings.replicate_api_token,
            model=settings.replicate_model,
            reference_field=settings.replicate_reference_field,
        )
    if uploader is None:
        uploader = ReplicateFilesClient(
            api_token=settings.replicate_api_token,
            files_url=settings.replicate_files_url,
            validity=settings.upload_validity,
        )
    if ingestor is None:
        ingestor = FilesystemImageIngestor(
            uow_factory,
            settings.output_dir,
            timeout=settings.download_timeout_seconds,
        )

    references = ReferenceImageCache(
        uow_factory,
        uploader,
        ReferenceFileStore(settings.reference_dir),
        grace_margin=settings.upload_grace_margin,
    )
    aggregator = BatchStatusAggregator(uow_factory)
    orchestrator = JobOrchestrator(
        uow_factory,
        predictions,
        ingestor,
        aggregator,
        PollPolicy(
            interval_seconds=settings.poll_interval_seconds,
            max_wait_seconds=settings.max_wait_seconds,
        ),
    )
    batches = BatchService(
        uow_factory,
        references,
        orchestrator,
        aggregator,
        max_prompt_length=settings.max_prompt_length,
        max_outputs=settings.max_outputs_per_batch,
    )

    return Services(
        settings=settings,
        session_factory=session_factory,
        uow_factory=uow_factory,
        references=references,
        aggregator=aggregator,
        orchestrator=orchestrator,
        batches=batches,
    )


def create_resilient_worker(
    coro_func, worker_args: tuple, worker_name: str, shutdown_event: asyncio.Event
) -> asyncio.Task:
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Worker coroutine function (e.g., run_reference_refresh_worker)
        worker_args: Positional arguments passed to coro_func on every (re)start
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """
    RESTART_DELAY = 1  # Fixed 1 second delay between restarts

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
            new_task = asyncio.create_task(coro_func(*worker_args))
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_func(*worker_args))
    task.add_done_callback(on_worker_done)
    return task


@asynccontextmanager
async def lifespan(
    settings: Optional[Settings] = None,
    run_refresh_worker: bool = True,
    **collaborators,
) -> AsyncIterator[Services]:
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: configure logging, create tables, fail jobs left over by a
      previous process, start the reference refresh worker
    - Shutdown: stop the worker, cancel outstanding poll loops, dispose the engine

    Args:
        settings: Application settings (loaded from the environment when omitted)
        run_refresh_worker: Start the proactive reference refresh worker
        **collaborators: Replacement external collaborators for build_services

    Yields:
        Wired Services
    """
    if settings is None:
        settings = Settings()  # type: ignore[call-arg]

    configure_logging(settings)

    services = build_services(settings, **collaborators)
    engine = services.session_factory.kw["bind"]
    await create_tables(engine)

    try:
        recovered = await services.orchestrator.recover_interrupted()
    except Exception as e:
        # Startup continues; the affected batches stay as they were
        logger.error(
            "startup.recovery_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
    else:
        if recovered:
            logger.info("startup.recovery_completed", failed_jobs=recovered)

    shutdown_event = asyncio.Event()
    refresh_task: Optional[asyncio.Task] = None
    if run_refresh_worker:
        refresh_task = create_resilient_worker(
            run_reference_refresh_worker,
            (services.references, settings),
            "reference_refresh",
            shutdown_event,
        )

    logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

    try:
        yield services
    finally:
        logger.info("application.shutdown")
        shutdown_event.set()

        if refresh_task is not None:
            refresh_task.cancel()
            await asyncio.gather(refresh_task, return_exceptions=True)

        await services.orchestrator.shutdown()
        await engine.dispose()
