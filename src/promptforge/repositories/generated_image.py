"""GeneratedImage repository.

Provides data access methods for GeneratedImage entities.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from promptforge.models.generated_image import GeneratedImage


class GeneratedImageRepository:
    """Repository for ingested output images."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, image: GeneratedImage) -> GeneratedImage:
        """Persist new generated image to database."""
        self.session.add(image)
        await self.session.flush()
        return image

    async def get_by_batch(self, batch_id: int) -> list[GeneratedImage]:
        """Retrieve all images of a batch ordered by creation time (oldest first)."""
        result = await self.session.execute(
            select(GeneratedImage)
            .where(GeneratedImage.batch_id == batch_id)  # type: ignore[arg-type]
            .order_by(GeneratedImage.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())
