"""GeneratedImage entity - An ingested output image."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from promptforge.core.timezone import utcnow


class GeneratedImage(SQLModel, table=True):
    """GeneratedImage is a downloaded and stored output of a generation job."""

    __tablename__ = "generated_images"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    batch_id: int = Field(foreign_key="batches.id", index=True)
    job_id: Optional[UUID] = Field(default=None, index=True)
    filename: str = Field(max_length=255)
    source_url: str
    content_type: Optional[str] = Field(default=None, max_length=100)
    file_size: int = Field(ge=0)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
