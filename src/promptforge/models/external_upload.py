"""ExternalUpload entity - Time-limited staged copy of a reference image."""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from promptforge.core.timezone import utcnow


class ExternalUpload(SQLModel, table=True):
    """ExternalUpload is the current provider-side copy of a reference image.

    One row per reference image; re-staging overwrites it.
    """

    __tablename__ = "external_uploads"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    reference_image_id: int = Field(foreign_key="reference_images.id", unique=True, index=True)
    external_file_id: str = Field(max_length=255)
    expires_at: Optional[datetime] = Field(default=None, index=True, sa_type=DateTime)
    uploaded_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    provider_metadata: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    def is_valid(self, grace_margin: timedelta, now: Optional[datetime] = None) -> bool:
        """Return True if the upload stays usable for longer than grace_margin.

        An upload without a known expiry is never valid.
        """
        if self.expires_at is None:
            return False
        now = now or utcnow()
        return self.expires_at - now > grace_margin
