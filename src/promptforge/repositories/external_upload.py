"""ExternalUpload repository.

Provides data access methods for ExternalUpload entities.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from promptforge.core.timezone import utcnow
from promptforge.models.external_upload import ExternalUpload


class ExternalUploadRepository:
    """Repository for ExternalUpload entities.

    Each reference image has at most one upload row; writes replace it
    (last-write-wins).
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_for_reference(self, reference_image_id: int) -> ExternalUpload | None:
        """Retrieve the current upload of a reference image.

        Args:
            reference_image_id: Reference image identifier

        Returns:
            ExternalUpload if the image was ever staged, None otherwise
        """
        result = await self.session.execute(
            select(ExternalUpload).where(
                ExternalUpload.reference_image_id == reference_image_id  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def record_upload(
        self,
        reference_image_id: int,
        external_file_id: str,
        expires_at: datetime | None,
        provider_metadata: dict[str, Any] | None = None,
    ) -> ExternalUpload:
        """Insert or replace the upload record of a reference image.

        Args:
            reference_image_id: Reference image that was staged
            external_file_id: Provider file identifier
            expires_at: Provider-side expiry (naive UTC)
            provider_metadata: Raw provider response kept for debugging

        Returns:
            The current upload record
        """
        upload = await self.get_for_reference(reference_image_id)
        if upload is None:
            upload = ExternalUpload(reference_image_id=reference_image_id, external_file_id="")

        upload.external_file_id = external_file_id
        upload.expires_at = expires_at
        upload.uploaded_at = utcnow()
        upload.provider_metadata = provider_metadata
        self.session.add(upload)
        await self.session.flush()
        return upload

    async def get_expiring_before(self, cutoff: datetime) -> list[ExternalUpload]:
        """Retrieve uploads whose expiry falls before cutoff (or is unknown).

        Args:
            cutoff: Naive UTC timestamp; typically now + grace margin

        Returns:
            Uploads that need a refresh, soonest expiry first
        """
        result = await self.session.execute(
            select(ExternalUpload)
            .where(
                (ExternalUpload.expires_at.is_(None))  # type: ignore[union-attr]
                | (ExternalUpload.expires_at <= cutoff)  # type: ignore[operator]
            )
            .order_by(ExternalUpload.expires_at.asc())  # type: ignore[union-attr]
        )
        return list(result.scalars().all())
