"""Job orchestration: fan a batch out into per-image predictions and poll them.

Each requested image becomes one single-output prediction with its own
GenerationJob row and its own poll loop task. Poll loops run concurrently and
only suspend between polls (and on external I/O). A job's poll loop is the only
writer of its row, except for cancellation and an abandoned fan-out, which
first claim the job by removing it from the active registry. Shutdown empties
the registry without writing, leaving the rows to startup recovery.

Failures stay inside the job that hit them: a failed submission, a failed
prediction, a failed ingestion or an exceeded wait budget each become that
job's terminal status, and the batch aggregator decides what it means for
the batch.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from promptforge.core.timezone import utcnow
from promptforge.models.batch import BatchStatus
from promptforge.models.generation_job import GenerationJob, JobStatus
from promptforge.services.exceptions import (
    ExternalServiceError,
    InvalidStateError,
    JobTimeoutError,
    NotFoundError,
    StorageError,
)
from promptforge.services.generation.active_jobs import ActiveJobRegistry, JobContext
from promptforge.services.generation.aggregator import CANCELED_MESSAGE, BatchStatusAggregator
from promptforge.services.prediction.base import (
    PredictionClient,
    PredictionResult,
    PredictionStatus,
)
from promptforge.services.storage.image_ingestor import ImageIngestor
from promptforge.uow import UowFactory

logger = structlog.get_logger(__name__)

INTERRUPTED_MESSAGE = "Interrupted by restart"

_REMOTE_FAILURES = {
    PredictionStatus.FAILED: JobStatus.FAILED,
    PredictionStatus.CANCELED: JobStatus.CANCELED,
    PredictionStatus.ABORTED: JobStatus.ABORTED,
}


@dataclass(frozen=True)
class PollPolicy:
    """Polling cadence and per-job wait budget, in seconds."""

    interval_seconds: float = 3.0
    max_wait_seconds: float = 300.0


class JobOrchestrator:
    """Submits generation jobs and drives each one to a terminal status."""

    def __init__(
        self,
        uow_factory: UowFactory,
        predictions: PredictionClient,
        ingestor: ImageIngestor,
        aggregator: BatchStatusAggregator,
        policy: PollPolicy = PollPolicy(),
    ):
        """Initialize orchestrator.

        Args:
            uow_factory: Unit of Work factory
            predictions: External prediction client
            ingestor: Post-processing collaborator storing finished images
            aggregator: Batch status aggregator notified on every terminal job
            policy: Poll interval and wait budget
        """
        self.uow_factory = uow_factory
        self.predictions = predictions
        self.ingestor = ingestor
        self.aggregator = aggregator
        self.policy = policy
        self.active_jobs = ActiveJobRegistry()
        self._tasks: dict[asyncio.Task, int] = {}

    # ------------------------------------------------------------------
    # Batch submission
    # ------------------------------------------------------------------

    async def start_batch(
        self,
        batch_id: int,
        prompt: str,
        requested_count: int,
        reference_urls: Sequence[str] = (),
    ) -> None:
        """Submit one job per requested image and start their poll loops.

        Returns once every submission has been attempted; the jobs complete in
        the background.

        Args:
            batch_id: Pending batch to start
            prompt: Prompt shared by every job
            requested_count: Number of images (one job each)
            reference_urls: Staged reference image URLs shared by every job

        Raises:
            NotFoundError: If the batch does not exist
            InvalidStateError: If the batch is not pending (the batch is failed)
        """
        log = logger.bind(batch_id=batch_id)

        async with await self.uow_factory() as uow:
            batch = await uow.batches.get_by_id(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        if batch.status != BatchStatus.PENDING:
            error = InvalidStateError(f"Batch {batch_id} is not in pending state")
            await self.aggregator.fail_batch(batch_id, str(error))
            raise error

        await self.aggregator.mark_processing(batch_id)
        log.info(
            "batch.generation.started",
            requested_count=requested_count,
            reference_count=len(reference_urls),
        )

        results = await asyncio.gather(
            *(
                self._submit_job(batch_id, index, prompt, reference_urls)
                for index in range(requested_count)
            ),
            return_exceptions=True,
        )

        crashed = [result for result in results if isinstance(result, BaseException)]
        if crashed:
            # Unrecorded jobs would keep the batch open forever
            error = crashed[0]
            log.error(
                "batch.submission.crashed",
                error_type=type(error).__name__,
                error_message=str(error),
                crashed_jobs=len(crashed),
            )
            await self._abandon_batch(batch_id, f"Failed to start generation: {error}")
            raise error

        if not all(results):
            await self.aggregator.on_job_terminal(batch_id)

    async def _submit_job(
        self, batch_id: int, index: int, prompt: str, reference_urls: Sequence[str]
    ) -> bool:
        """Submit one job. Returns True if a poll loop was started."""
        log = logger.bind(batch_id=batch_id, image_index=index)

        try:
            external_job_id = await self.predictions.submit(
                prompt, output_count=1, reference_urls=list(reference_urls) or None
            )
        except ExternalServiceError as e:
            async with await self.uow_factory() as uow:
                await uow.jobs.add(
                    GenerationJob(
                        batch_id=batch_id,
                        image_index=index,
                        status=JobStatus.FAILED,
                        error=f"Failed to start image generation: {e}"[:1000],
                        completed_at=utcnow(),
                    )
                )
            log.error(
                "job.submit.failed",
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return False

        try:
            async with await self.uow_factory() as uow:
                job = await uow.jobs.add(
                    GenerationJob(
                        batch_id=batch_id,
                        image_index=index,
                        external_job_id=external_job_id,
                        status=JobStatus.STARTING,
                    )
                )
        except Exception:
            await self._cancel_remote(external_job_id, log)
            raise

        ctx = JobContext.start(
            job.id, batch_id, index, external_job_id, self.policy.max_wait_seconds
        )
        await self.active_jobs.add(ctx)
        self._spawn(ctx)
        log.info("job.submitted", job_id=str(job.id), external_job_id=external_job_id)
        return True

    def _spawn(self, ctx: JobContext) -> None:
        task = asyncio.create_task(self._run_job(ctx), name=f"poll-job-{ctx.job_id}")
        self._tasks[task] = ctx.batch_id
        task.add_done_callback(lambda done: self._tasks.pop(done, None))

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def _run_job(self, ctx: JobContext) -> None:
        log = logger.bind(
            batch_id=ctx.batch_id,
            job_id=str(ctx.job_id),
            image_index=ctx.image_index,
            external_job_id=ctx.external_job_id,
        )
        try:
            await self._poll_until_terminal(ctx, log)
        except asyncio.CancelledError:
            log.info("job.poll.interrupted")
            raise
        except Exception as e:
            log.error(
                "job.poll.crashed",
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            try:
                await self._finish_failure(ctx, JobStatus.FAILED, f"Polling error: {e}", log)
            except Exception as finalize_error:
                log.error(
                    "job.finalize.failed",
                    error_type=type(finalize_error).__name__,
                    error_message=str(finalize_error),
                )

    async def _poll_until_terminal(self, ctx: JobContext, log) -> None:
        observed = JobStatus.STARTING
        log.debug("job.poll.started", max_wait_seconds=self.policy.max_wait_seconds)

        while True:
            if not await self.active_jobs.contains(ctx.job_id):
                log.info("job.poll.stopped", reason="no_longer_active")
                return

            if ctx.expired():
                error = JobTimeoutError(
                    f"Generation timed out after {self.policy.max_wait_seconds:g} seconds"
                )
                await self._finish_failure(ctx, JobStatus.TIMED_OUT, str(error), log)
                return

            try:
                result = await self.predictions.get_status(ctx.external_job_id)
            except ExternalServiceError as e:
                if not e.retryable:
                    await self._finish_failure(ctx, JobStatus.FAILED, f"Polling error: {e}", log)
                    return
                log.warning("job.poll.retry", error_type=type(e).__name__, error_message=str(e))
            else:
                if result.status == PredictionStatus.SUCCEEDED:
                    await self._handle_success(ctx, result, log)
                    return

                if result.status in _REMOTE_FAILURES:
                    await self._finish_failure(
                        ctx,
                        _REMOTE_FAILURES[result.status],
                        result.error or f"Generation {result.status.value}",
                        log,
                    )
                    return

                if (
                    result.status == PredictionStatus.PROCESSING
                    and observed != JobStatus.PROCESSING
                ):
                    await self._record_processing(ctx)
                    observed = JobStatus.PROCESSING

            await asyncio.sleep(min(self.policy.interval_seconds, ctx.remaining()))

    async def _record_processing(self, ctx: JobContext) -> None:
        # A claimed job is no longer ours to write
        if not await self.active_jobs.contains(ctx.job_id):
            return
        async with await self.uow_factory() as uow:
            await uow.jobs.mark_processing_if_starting(ctx.job_id)

    async def _handle_success(self, ctx: JobContext, result: PredictionResult, log) -> None:
        output_url = result.output_url
        if not output_url:
            await self._finish_failure(
                ctx, JobStatus.FAILED, "Prediction succeeded without output", log
            )
            return

        try:
            asset_id = await self.ingestor.ingest(output_url, ctx.batch_id, job_id=ctx.job_id)
        except StorageError as e:
            await self._finish_failure(ctx, JobStatus.FAILED, str(e), log, output_url=output_url)
            return

        if await self.active_jobs.pop(ctx.job_id) is None:
            log.warning("job.succeeded_after_cancel", asset_id=asset_id)
            return

        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(ctx.job_id)
            if job is None:
                raise NotFoundError(f"Job {ctx.job_id} not found")
            job.mark_succeeded(output_url, asset_id)
            await uow.jobs.save(job)

        log.info(
            "job.succeeded",
            asset_id=asset_id,
            output_url=output_url,
            duration_seconds=round(ctx.elapsed(), 3),
        )
        await self.aggregator.on_job_terminal(ctx.batch_id)

    async def _finish_failure(
        self,
        ctx: JobContext,
        status: JobStatus,
        error: str,
        log,
        output_url: Optional[str] = None,
    ) -> bool:
        """Record a failure-equivalent terminal status if this loop still owns the job."""
        if await self.active_jobs.pop(ctx.job_id) is None:
            return False

        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(ctx.job_id)
            if job is None:
                raise NotFoundError(f"Job {ctx.job_id} not found")
            job.mark_terminal_failure(status, error, output_url=output_url)
            await uow.jobs.save(job)

        log.error(
            f"job.{status.value}",
            error_message=error,
            duration_seconds=round(ctx.elapsed(), 3),
        )
        await self.aggregator.on_job_terminal(ctx.batch_id)
        return True

    # ------------------------------------------------------------------
    # Cancellation and queries
    # ------------------------------------------------------------------

    async def cancel_batch(self, batch_id: int) -> None:
        """Cancel every active job of a batch and fail the batch.

        Remote cancel errors are logged and do not stop the remaining jobs
        from being cancelled. The batch ends failed even if some of its images
        already succeeded.

        Raises:
            NotFoundError: If the batch has no active jobs
        """
        log = logger.bind(batch_id=batch_id)
        claimed = await self.active_jobs.pop_batch(batch_id)
        if not claimed:
            raise NotFoundError(f"No active generation found for batch {batch_id}")

        for ctx in claimed:
            await self._cancel_remote(ctx.external_job_id, log)
            async with await self.uow_factory() as uow:
                job = await uow.jobs.get_by_id(ctx.job_id)
                if job is not None and not job.status.is_terminal:
                    job.mark_terminal_failure(JobStatus.CANCELED, CANCELED_MESSAGE)
                    await uow.jobs.save(job)

        await self.aggregator.fail_batch(batch_id, CANCELED_MESSAGE)
        log.info("batch.canceled", canceled_jobs=len(claimed))

    async def _cancel_remote(self, external_job_id: str, log) -> None:
        try:
            await self.predictions.cancel(external_job_id)
        except ExternalServiceError as e:
            log.warning(
                "job.cancel.failed",
                external_job_id=external_job_id,
                error_type=type(e).__name__,
                error_message=str(e),
            )

    async def _abandon_batch(self, batch_id: int, error_message: str) -> None:
        log = logger.bind(batch_id=batch_id)
        for ctx in await self.active_jobs.pop_batch(batch_id):
            await self._cancel_remote(ctx.external_job_id, log)
            async with await self.uow_factory() as uow:
                job = await uow.jobs.get_by_id(ctx.job_id)
                if job is not None and not job.status.is_terminal:
                    job.mark_terminal_failure(JobStatus.FAILED, error_message)
                    await uow.jobs.save(job)
        await self.aggregator.fail_batch(batch_id, error_message)

    async def is_active(self, batch_id: int) -> bool:
        """Return True while any job of the batch is still being polled."""
        return bool(await self.active_jobs.for_batch(batch_id))

    async def active_jobs_for(self, batch_id: int) -> list[JobContext]:
        return await self.active_jobs.for_batch(batch_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait_for_batch(self, batch_id: int) -> None:
        """Wait until every poll loop of a batch has exited."""
        while tasks := [task for task, owner in self._tasks.items() if owner == batch_id]:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def drain(self) -> None:
        """Wait until every running poll loop has exited."""
        while tasks := list(self._tasks):
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self, timeout: float = 5.0, attempts: int = 3) -> None:
        """Stop every running poll loop.

        The registry is emptied first so a loop that misses its cancellation
        still exits at its next membership check without writing. Jobs left
        non-terminal are failed by recover_interrupted on the next start.

        Args:
            timeout: Seconds to wait for the loops after each cancellation round
            attempts: Cancellation rounds before giving up on stuck loops
        """
        released = await self.active_jobs.pop_all()
        pending = set(self._tasks)
        interrupted = len(pending)

        for _ in range(attempts):
            if not pending:
                break
            for task in pending:
                task.cancel()
            _, pending = await asyncio.wait(pending, timeout=timeout)

        if pending:
            logger.warning("orchestrator.stop_incomplete", stuck_jobs=len(pending))
        if interrupted or released:
            logger.info(
                "orchestrator.stopped",
                interrupted_jobs=interrupted,
                released_jobs=len(released),
            )

    async def recover_interrupted(self) -> int:
        """Fail jobs and batches a previous process left unfinished.

        In-flight jobs are not resumed after a restart. Must run before any new
        batch is started by this process.

        Returns:
            Number of jobs marked failed
        """
        async with await self.uow_factory() as uow:
            jobs = await uow.jobs.get_unfinished()
            for job in jobs:
                job.mark_terminal_failure(JobStatus.FAILED, INTERRUPTED_MESSAGE)
                await uow.jobs.save(job)
            open_batches = await uow.batches.list_by_status(BatchStatus.PROCESSING)

        batch_ids: set[int] = {job.batch_id for job in jobs}
        batch_ids.update(batch.id for batch in open_batches if batch.id is not None)

        for batch_id in sorted(batch_ids):
            status = await self.aggregator.on_job_terminal(batch_id)
            if status is not None and not status.is_terminal:
                # Jobs that were never recorded will not arrive anymore
                await self.aggregator.fail_batch(batch_id, INTERRUPTED_MESSAGE)

        if jobs or batch_ids:
            logger.info(
                "orchestrator.recovery",
                orphaned_jobs_failed=len(jobs),
                batches_reevaluated=len(batch_ids),
            )
        return len(jobs)


__all__ = ["JobOrchestrator", "PollPolicy", "INTERRUPTED_MESSAGE"]
