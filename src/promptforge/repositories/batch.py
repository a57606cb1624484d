"""Batch repository.

Provides data access methods for Batch entities.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from promptforge.models.batch import Batch, BatchStatus


class BatchRepository:
    """Repository for Batch entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, batch: Batch) -> Batch:
        """Persist new batch to database.

        Args:
            batch: Batch entity to persist

        Returns:
            Persisted batch with generated ID
        """
        self.session.add(batch)
        await self.session.flush()
        return batch

    async def get_by_id(self, batch_id: int) -> Batch | None:
        """Retrieve batch by ID.

        Args:
            batch_id: Batch's unique identifier

        Returns:
            Batch if found, None otherwise
        """
        result = await self.session.execute(select(Batch).where(Batch.id == batch_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_for_update(self, batch_id: int) -> Batch | None:
        """Retrieve batch by ID with a row lock (no-op on SQLite).

        Args:
            batch_id: Batch's unique identifier

        Returns:
            Batch if found, None otherwise
        """
        result = await self.session.execute(
            select(Batch).where(Batch.id == batch_id).with_for_update()  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def list_by_status(self, status: BatchStatus) -> list[Batch]:
        """Retrieve all batches in a given status, oldest first."""
        result = await self.session.execute(
            select(Batch)
            .where(Batch.status == status)  # type: ignore[arg-type]
            .order_by(Batch.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def save(self, batch: Batch) -> None:
        """Flush pending changes of a batch entity."""
        self.session.add(batch)
        await self.session.flush()
