"""GenerationJob repository.

Provides data access methods for GenerationJob entities.
"""

from collections import Counter
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from promptforge.models.generation_job import GenerationJob, JobStatus


class GenerationJobRepository:
    """Repository for GenerationJob entities.

    A batch owns exactly one job per image index (enforced by a unique constraint).
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Persist new generation job to database.

        Args:
            job: GenerationJob entity to persist

        Returns:
            Persisted job
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> GenerationJob | None:
        """Retrieve generation job by UUID.

        Args:
            job_id: Job's unique identifier

        Returns:
            GenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationJob).where(GenerationJob.id == job_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_batch(self, batch_id: int) -> list[GenerationJob]:
        """Retrieve all jobs of a batch ordered by image index.

        Args:
            batch_id: Owning batch identifier

        Returns:
            List of jobs (index 0 first)
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.batch_id == batch_id)  # type: ignore[arg-type]
            .order_by(GenerationJob.image_index.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def count_by_status(self, batch_id: int) -> Counter[JobStatus]:
        """Count the jobs of a batch per status.

        Args:
            batch_id: Owning batch identifier

        Returns:
            Counter mapping JobStatus to number of jobs
        """
        result = await self.session.execute(
            select(GenerationJob.status, func.count())
            .where(GenerationJob.batch_id == batch_id)  # type: ignore[arg-type]
            .group_by(GenerationJob.status)
        )
        return Counter({JobStatus(status): count for status, count in result.all()})

    async def get_unfinished(self) -> list[GenerationJob]:
        """Retrieve every job still in a non-terminal status.

        Used on startup to clean up jobs orphaned by a previous process.
        """
        result = await self.session.execute(
            select(GenerationJob).where(
                GenerationJob.status.in_([JobStatus.STARTING, JobStatus.PROCESSING])  # type: ignore[attr-defined]
            )
        )
        return list(result.scalars().all())

    async def save(self, job: GenerationJob) -> None:
        """Flush pending changes of a job entity."""
        self.session.add(job)
        await self.session.flush()

    async def mark_processing_if_starting(self, job_id: UUID) -> bool:
        """Move a job from starting to processing in a single conditional UPDATE.

        Query:
            UPDATE generation_jobs
            SET status = 'processing'
            WHERE id = :job_id AND status = 'starting'

        Returns:
            True if the row was updated, False if the job is gone or moved on
        """
        result = await self.session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.status == JobStatus.STARTING,  # type: ignore[arg-type]
            )
            .values(status=JobStatus.PROCESSING)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0  # type: ignore[attr-defined]
