"""ReferenceImage entities - Content-addressed reference images and batch links."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from promptforge.core.timezone import utcnow


class ReferenceImage(SQLModel, table=True):
    """ReferenceImage is one distinct reference image, keyed by SHA-256 of its bytes."""

    __tablename__ = "reference_images"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    content_hash: str = Field(max_length=64, unique=True, index=True)
    stored_filename: str = Field(max_length=255)
    original_filename: Optional[str] = Field(default=None, max_length=255)
    content_type: Optional[str] = Field(default=None, max_length=100)
    file_size: int = Field(ge=0)
    uploaded_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class BatchReferenceImage(SQLModel, table=True):
    """BatchReferenceImage records which reference images steered a batch."""

    __tablename__ = "batch_reference_images"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    batch_id: int = Field(foreign_key="batches.id", index=True)
    reference_image_id: int = Field(foreign_key="reference_images.id", index=True)
    original_filename: Optional[str] = Field(default=None, max_length=255)
