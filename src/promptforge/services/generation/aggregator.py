"""Batch status aggregation.

The batch status is derived from the statuses of its jobs. A batch finishes
once every requested image has a terminal job: it is completed when at least
one image succeeded (partial failures are tolerated) and failed otherwise.

All batch status writes go through BatchStatusAggregator.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional

import structlog

from promptforge.models.batch import Batch, BatchStatus
from promptforge.models.generation_job import JobStatus
from promptforge.services.exceptions import NotFoundError
from promptforge.uow import UowFactory

logger = structlog.get_logger(__name__)

ALL_FAILED_MESSAGE = "All image generations failed"
CANCELED_MESSAGE = "Generation canceled by user"


@dataclass(frozen=True)
class BatchOutcome:
    """Batch status derived from job statuses."""

    status: BatchStatus
    succeeded: int
    failed: int
    active: int
    error_message: Optional[str] = None


def derive_batch_status(statuses: Iterable[JobStatus], requested_count: int) -> BatchOutcome:
    """Derive the batch status from its job statuses.

    Jobs that were requested but not recorded yet count as active.

    Args:
        statuses: Status of every recorded job of the batch
        requested_count: Number of images requested for the batch

    Returns:
        BatchOutcome; status is processing while any job is still active
    """
    counts = Counter(statuses)
    succeeded = counts[JobStatus.SUCCEEDED]
    failed = sum(count for status, count in counts.items() if status.is_failure)
    in_flight = counts[JobStatus.STARTING] + counts[JobStatus.PROCESSING]
    unrecorded = max(requested_count - sum(counts.values()), 0)
    active = in_flight + unrecorded

    if active > 0:
        return BatchOutcome(BatchStatus.PROCESSING, succeeded, failed, active)
    if succeeded > 0:
        return BatchOutcome(BatchStatus.COMPLETED, succeeded, failed, 0)
    return BatchOutcome(BatchStatus.FAILED, succeeded, failed, 0, ALL_FAILED_MESSAGE)


class BatchStatusAggregator:
    """Owns every batch status transition.

    Evaluations are serialized by an internal lock so two jobs finishing at the
    same time cannot both finalize a batch.
    """

    def __init__(self, uow_factory: UowFactory):
        self.uow_factory = uow_factory
        self._lock = asyncio.Lock()

    async def mark_processing(self, batch_id: int) -> None:
        """Move a pending batch to processing.

        Raises:
            NotFoundError: If the batch does not exist
            InvalidStateError: If the batch is not pending
        """
        async with self._lock:
            async with await self.uow_factory() as uow:
                batch = await uow.batches.get_for_update(batch_id)
                if batch is None:
                    raise NotFoundError(f"Batch {batch_id} not found")
                self._transition(batch, BatchStatus.PROCESSING)
                await uow.batches.save(batch)

    async def on_job_terminal(self, batch_id: int) -> Optional[BatchStatus]:
        """Re-evaluate a batch after one of its jobs reached a terminal status.

        Idempotent: once the batch is terminal, further calls change nothing.

        Args:
            batch_id: Batch owning the finished job

        Returns:
            The batch status after evaluation, None if the batch does not exist
        """
        async with self._lock:
            async with await self.uow_factory() as uow:
                batch = await uow.batches.get_for_update(batch_id)
                if batch is None:
                    logger.warning("batch.aggregate.missing", batch_id=batch_id)
                    return None
                if batch.status.is_terminal:
                    return batch.status

                counts = await uow.jobs.count_by_status(batch_id)
                outcome = derive_batch_status(counts.elements(), batch.requested_count)
                if outcome.status == BatchStatus.PROCESSING:
                    logger.debug(
                        "batch.aggregate.waiting",
                        batch_id=batch_id,
                        succeeded=outcome.succeeded,
                        failed=outcome.failed,
                        active=outcome.active,
                    )
                    return batch.status

                self._transition(batch, outcome.status, outcome.error_message)
                await uow.batches.save(batch)

        log = logger.info if outcome.status == BatchStatus.COMPLETED else logger.error
        log(
            f"batch.{outcome.status.value}",
            batch_id=batch_id,
            succeeded=outcome.succeeded,
            failed=outcome.failed,
            error_message=outcome.error_message,
        )
        return outcome.status

    async def fail_batch(self, batch_id: int, error_message: str) -> bool:
        """Force a non-terminal batch to failed, regardless of its job outcomes.

        Args:
            batch_id: Batch to fail
            error_message: Human-readable reason

        Returns:
            True if the batch was transitioned, False if missing or already terminal
        """
        async with self._lock:
            async with await self.uow_factory() as uow:
                batch = await uow.batches.get_for_update(batch_id)
                if batch is None or batch.status.is_terminal:
                    return False
                self._transition(batch, BatchStatus.FAILED, error_message)
                await uow.batches.save(batch)

        logger.error("batch.failed", batch_id=batch_id, error_message=error_message)
        return True

    @staticmethod
    def _transition(
        batch: Batch, target: BatchStatus, error_message: Optional[str] = None
    ) -> None:
        if target == BatchStatus.PROCESSING:
            batch.mark_processing()
        elif target == BatchStatus.COMPLETED:
            if batch.status == BatchStatus.PENDING:
                batch.mark_processing()
            batch.mark_completed()
        elif target == BatchStatus.FAILED:
            batch.mark_failed(error_message or ALL_FAILED_MESSAGE)
        else:
            raise ValueError(f"Unsupported batch transition target: {target.value}")
