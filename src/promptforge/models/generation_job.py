"""GenerationJob entity - One external prediction producing one image."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from promptforge.core.timezone import utcnow
from promptforge.services.exceptions import InvalidStateError


class JobStatus(str, Enum):
    """Generation job status.

    The first six values mirror the prediction service; timed_out is local.
    """

    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    ABORTED = "aborted"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.STARTING, JobStatus.PROCESSING)

    @property
    def is_failure(self) -> bool:
        return self.is_terminal and self != JobStatus.SUCCEEDED


class GenerationJob(SQLModel, table=True):
    """GenerationJob tracks one image of a batch through the prediction service."""

    __tablename__ = "generation_jobs"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("batch_id", "image_index", name="uq_job_batch_index"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    batch_id: int = Field(foreign_key="batches.id", index=True)
    image_index: int = Field(ge=0)
    external_job_id: Optional[str] = Field(default=None, max_length=255, index=True)
    status: JobStatus = Field(default=JobStatus.STARTING, index=True)
    error: Optional[str] = Field(default=None, max_length=1000)
    output_url: Optional[str] = Field(default=None)
    asset_id: Optional[str] = Field(default=None, max_length=255)
    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    def mark_processing(self) -> None:
        """Record that the prediction service started working on the job."""
        if self.status.is_terminal:
            raise InvalidStateError(
                f"Cannot mark processing from terminal state {self.status.value}."
            )
        self.status = JobStatus.PROCESSING

    def mark_succeeded(self, output_url: str, asset_id: str) -> None:
        """Transition to succeeded once the output has been ingested.

        Raises:
            InvalidStateError: If the job is already terminal
            ValueError: If output_url is empty
        """
        if self.status.is_terminal:
            raise InvalidStateError(
                f"Cannot mark succeeded from terminal state {self.status.value}."
            )
        if not output_url:
            raise ValueError("output_url is required")
        self.status = JobStatus.SUCCEEDED
        self.output_url = output_url
        self.asset_id = asset_id
        self.error = None
        self.completed_at = utcnow()

    def mark_terminal_failure(
        self, status: JobStatus, error: str, output_url: Optional[str] = None
    ) -> None:
        """Transition to a failure-equivalent terminal status.

        Args:
            status: One of failed, canceled, aborted, timed_out
            error: Error message recorded on the job
            output_url: Remote output, kept when the job failed during ingestion

        Raises:
            InvalidStateError: If the job is already terminal
            ValueError: If status is not a failure status
        """
        if not status.is_failure:
            raise ValueError(f"{status.value} is not a failure status")
        if self.status.is_terminal:
            raise InvalidStateError(
                f"Cannot mark {status.value} from terminal state {self.status.value}."
            )
        self.status = status
        self.error = error[:1000]
        self.output_url = output_url
        self.completed_at = utcnow()
