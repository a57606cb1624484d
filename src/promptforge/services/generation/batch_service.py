"""Batch facade: the entry point callers use to request and follow generations.

Validation problems and failures while starting a batch are returned as part of
the BatchSubmission instead of being raised, so a caller always gets either a
running batch or a failed batch with a readable message.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Optional, Sequence

import structlog

from promptforge.models.batch import Batch, BatchStatus
from promptforge.models.generation_job import JobStatus
from promptforge.services.exceptions import (
    EngineError,
    ErrorKind,
    NotFoundError,
    ValidationError,
)
from promptforge.services.generation.aggregator import BatchStatusAggregator
from promptforge.services.generation.orchestrator import JobOrchestrator
from promptforge.services.reference_cache import (
    ReferenceFile,
    ReferenceImageCache,
    ResolvedReference,
)
from promptforge.uow import UowFactory

logger = structlog.get_logger(__name__)


def validate_batch_request(
    prompt: str,
    requested_count: int,
    max_prompt_length: int = 1000,
    max_outputs: int = 8,
) -> Optional[ValidationError]:
    """Validate batch parameters.

    Args:
        prompt: Text prompt shared by every image
        requested_count: Number of images requested
        max_prompt_length: Maximum prompt length in characters
        max_outputs: Maximum number of images per batch

    Returns:
        ValidationError describing the first problem, None if the request is valid
    """
    if not isinstance(prompt, str):
        return ValidationError(f"Prompt must be a string, got {type(prompt).__name__}")

    if not prompt.strip():
        return ValidationError("Prompt cannot be empty")

    if len(prompt) > max_prompt_length:
        return ValidationError(
            f"Prompt exceeds maximum length of {max_prompt_length} characters (got {len(prompt)})"
        )

    if isinstance(requested_count, bool) or not isinstance(requested_count, int):
        return ValidationError("Output count must be an integer")

    if not 1 <= requested_count <= max_outputs:
        return ValidationError(
            f"Output count must be between 1 and {max_outputs} (got {requested_count})"
        )

    return None


@dataclass
class BatchSubmission:
    """Result of create_batch.

    batch_id is None only when the request was rejected before a batch existed.
    """

    batch_id: Optional[int]
    status: Optional[BatchStatus]
    warnings: list[str] = field(default_factory=list)
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @classmethod
    def rejected(
        cls,
        error: EngineError,
        batch_id: Optional[int] = None,
        warnings: Optional[list[str]] = None,
    ) -> "BatchSubmission":
        return cls(
            batch_id=batch_id,
            status=BatchStatus.FAILED if batch_id is not None else None,
            warnings=warnings or [],
            error_kind=error.kind,
            error_message=error.message,
        )


@dataclass
class BatchStatusReport:
    """Snapshot of a batch and its jobs."""

    batch_id: int
    status: BatchStatus
    requested_count: int
    error_message: Optional[str]
    job_counts: dict[str, int]
    active_jobs: int
    image_ids: list[str]

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal


class BatchService:
    """Creates batches, resolves their reference images and starts generation."""

    def __init__(
        self,
        uow_factory: UowFactory,
        references: ReferenceImageCache,
        orchestrator: JobOrchestrator,
        aggregator: BatchStatusAggregator,
        max_prompt_length: int = 1000,
        max_outputs: int = 8,
    ):
        self.uow_factory = uow_factory
        self.references = references
        self.orchestrator = orchestrator
        self.aggregator = aggregator
        self.max_prompt_length = max_prompt_length
        self.max_outputs = max_outputs

    async def create_batch(
        self,
        prompt: str,
        requested_count: int,
        reference_files: Sequence[ReferenceFile] = (),
        reuse_reference_ids: Sequence[int] = (),
    ) -> BatchSubmission:
        """Create a batch and start generating its images.

        New reference files are registered (and staged when needed). Reused
        reference images are re-validated; the ones that cannot be made usable
        are skipped and reported in warnings.

        Args:
            prompt: Text prompt shared by every image
            requested_count: Number of images to generate
            reference_files: New reference images uploaded with this request
            reuse_reference_ids: Reference images of an earlier batch to use again

        Returns:
            BatchSubmission; error_kind is set when the batch was rejected or failed to start
        """
        error = validate_batch_request(
            prompt, requested_count, self.max_prompt_length, self.max_outputs
        )
        if error is not None:
            logger.warning(
                "batch.rejected", error_kind=error.kind.value, error_message=error.message
            )
            return BatchSubmission.rejected(error)

        async with await self.uow_factory() as uow:
            batch = await uow.batches.add(Batch(prompt=prompt, requested_count=requested_count))
        batch_id: int = batch.id  # type: ignore[assignment]
        log = logger.bind(batch_id=batch_id)
        log.info(
            "batch.created",
            requested_count=requested_count,
            new_references=len(reference_files),
            reused_references=len(reuse_reference_ids),
        )

        warnings: list[str] = []
        try:
            resolved = await self._resolve_references(
                batch_id, reference_files, reuse_reference_ids, warnings
            )
            await self.orchestrator.start_batch(
                batch_id, prompt, requested_count, [ref.external_url for ref in resolved]
            )
        except EngineError as e:
            await self.aggregator.fail_batch(batch_id, f"Failed to start generation: {e}")
            log.error("batch.start_failed", error_kind=e.kind.value, error_message=e.message)
            return BatchSubmission.rejected(e, batch_id=batch_id, warnings=warnings)
        except Exception as e:
            await self.aggregator.fail_batch(batch_id, f"Failed to start generation: {e}")
            log.error(
                "batch.start_failed",
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            return BatchSubmission(
                batch_id=batch_id,
                status=BatchStatus.FAILED,
                warnings=warnings,
                error_kind=ErrorKind.INTERNAL,
                error_message=str(e),
            )

        async with await self.uow_factory() as uow:
            current = await uow.batches.get_by_id(batch_id)
        status = current.status if current is not None else BatchStatus.PROCESSING
        return BatchSubmission(batch_id=batch_id, status=status, warnings=warnings)

    async def _resolve_references(
        self,
        batch_id: int,
        reference_files: Sequence[ReferenceFile],
        reuse_reference_ids: Sequence[int],
        warnings: list[str],
    ) -> list[ResolvedReference]:
        resolved = await self.references.resolve_many(reference_files)
        filenames = {
            ref.reference_image_id: file.filename for ref, file in zip(resolved, reference_files)
        }

        if reuse_reference_ids:
            report = await self.references.ensure_valid(list(reuse_reference_ids))
            warnings.extend(report.warnings)
            resolved.extend(report.resolved)

        # Same bytes uploaded twice resolve to one reference image
        unique: dict[int, ResolvedReference] = {}
        for ref in resolved:
            unique.setdefault(ref.reference_image_id, ref)

        async with await self.uow_factory() as uow:
            for reference_image_id in unique:
                image = await uow.reference_images.get_by_id(reference_image_id)
                if image is None:
                    raise NotFoundError(f"Reference image {reference_image_id} not found")
                await uow.reference_images.link_to_batch(
                    batch_id, image, filenames.get(reference_image_id)
                )

        return list(unique.values())

    async def get_status(self, batch_id: int) -> BatchStatusReport:
        """Return the current status of a batch and its jobs.

        Raises:
            NotFoundError: If the batch does not exist
        """
        async with await self.uow_factory() as uow:
            batch = await uow.batches.get_by_id(batch_id)
            if batch is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            counts: Counter[JobStatus] = await uow.jobs.count_by_status(batch_id)
            images = await uow.generated_images.get_by_batch(batch_id)

        active = await self.orchestrator.active_jobs_for(batch_id)
        return BatchStatusReport(
            batch_id=batch_id,
            status=batch.status,
            requested_count=batch.requested_count,
            error_message=batch.error_message,
            job_counts={status.value: count for status, count in counts.items()},
            active_jobs=len(active),
            image_ids=[str(image.id) for image in images],
        )

    async def cancel(self, batch_id: int) -> None:
        """Cancel the active jobs of a batch.

        Raises:
            NotFoundError: If the batch has no active generation
        """
        await self.orchestrator.cancel_batch(batch_id)

    async def wait(self, batch_id: int) -> BatchStatusReport:
        """Wait for every job of a batch to finish and return the final status."""
        await self.orchestrator.wait_for_batch(batch_id)
        return await self.get_status(batch_id)

    async def reference_ids_for_batch(self, batch_id: int) -> list[int]:
        """Return the reference images an earlier batch used, for reuse.

        Raises:
            NotFoundError: If the batch does not exist
        """
        async with await self.uow_factory() as uow:
            batch = await uow.batches.get_by_id(batch_id)
            if batch is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            return await uow.reference_images.get_ids_for_batch(batch_id)
