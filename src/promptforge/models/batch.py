"""Batch entity - A user request for N images sharing one prompt."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from promptforge.core.timezone import utcnow
from promptforge.services.exceptions import InvalidStateError


class BatchStatus(str, Enum):
    """Batch lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED)


class Batch(SQLModel, table=True):
    """Batch groups the generation jobs for one prompt.

    Status changes go through the mark_* methods, which are only called by the
    batch status aggregator.
    """

    __tablename__ = "batches"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    prompt: str = Field(max_length=4000)
    requested_count: int = Field(ge=1)
    status: BatchStatus = Field(default=BatchStatus.PENDING, index=True)
    error_message: Optional[str] = Field(default=None, max_length=1000)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    def mark_processing(self) -> None:
        """Transition from pending to processing.

        Raises:
            InvalidStateError: If current status is not pending
        """
        if self.status != BatchStatus.PENDING:
            raise InvalidStateError(
                f"Cannot mark processing from {self.status.value}. Batch must be in pending state."
            )
        self.status = BatchStatus.PROCESSING

    def mark_completed(self) -> None:
        """Transition from processing to completed.

        Raises:
            InvalidStateError: If current status is not processing
        """
        if self.status != BatchStatus.PROCESSING:
            raise InvalidStateError(
                f"Cannot mark completed from {self.status.value}. "
                "Batch must be in processing state."
            )
        self.status = BatchStatus.COMPLETED
        self.error_message = None
        self.completed_at = utcnow()

    def mark_failed(self, error_message: str) -> None:
        """Transition from any non-terminal state to failed.

        Args:
            error_message: Human-readable reason shown to the user

        Raises:
            InvalidStateError: If current status is already terminal
        """
        if self.status.is_terminal:
            raise InvalidStateError(f"Cannot mark failed from terminal state {self.status.value}.")
        self.status = BatchStatus.FAILED
        self.error_message = error_message[:1000]
        self.completed_at = utcnow()
