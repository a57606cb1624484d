"""ReferenceImage repository.

Provides data access methods for ReferenceImage and BatchReferenceImage entities.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from promptforge.models.reference_image import BatchReferenceImage, ReferenceImage


class ReferenceImageRepository:
    """Repository for content-addressed reference images and their batch links."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, image: ReferenceImage) -> ReferenceImage:
        """Persist new reference image to database.

        Args:
            image: ReferenceImage entity to persist

        Returns:
            Persisted image with generated ID
        """
        self.session.add(image)
        await self.session.flush()
        return image

    async def get_by_id(self, image_id: int) -> ReferenceImage | None:
        """Retrieve reference image by ID."""
        result = await self.session.execute(
            select(ReferenceImage).where(ReferenceImage.id == image_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_hash(self, content_hash: str) -> ReferenceImage | None:
        """Retrieve reference image by SHA-256 content hash.

        Args:
            content_hash: Hex digest of the image bytes

        Returns:
            ReferenceImage if found, None otherwise
        """
        result = await self.session.execute(
            select(ReferenceImage).where(ReferenceImage.content_hash == content_hash)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def link_to_batch(
        self, batch_id: int, image: ReferenceImage, original_filename: str | None = None
    ) -> BatchReferenceImage:
        """Record that a batch used a reference image.

        Args:
            batch_id: Batch that used the image
            image: Reference image used
            original_filename: Name the user uploaded the file under for this batch

        Returns:
            Persisted link
        """
        link = BatchReferenceImage(
            batch_id=batch_id,
            reference_image_id=image.id,  # type: ignore[arg-type]
            original_filename=original_filename or image.original_filename,
        )
        self.session.add(link)
        await self.session.flush()
        return link

    async def get_ids_for_batch(self, batch_id: int) -> list[int]:
        """Retrieve the reference image IDs a batch used, in insertion order."""
        result = await self.session.execute(
            select(BatchReferenceImage.reference_image_id)
            .where(BatchReferenceImage.batch_id == batch_id)  # type: ignore[arg-type]
            .order_by(BatchReferenceImage.id.asc())  # type: ignore[union-attr]
        )
        return list(result.scalars().all())
