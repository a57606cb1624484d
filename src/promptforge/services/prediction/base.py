"""Prediction client contract shared by the orchestrator and its implementations."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Sequence


class PredictionStatus(str, Enum):
    """Status values reported by the prediction service."""

    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self not in (PredictionStatus.STARTING, PredictionStatus.PROCESSING)


@dataclass(frozen=True)
class PredictionResult:
    """Normalized status of one prediction.

    output_url is set only for succeeded predictions.
    """

    job_id: str
    status: PredictionStatus
    output_url: Optional[str] = None
    error: Optional[str] = None


class PredictionClient(Protocol):
    """Remote image generation service producing one output per job."""

    async def submit(
        self,
        prompt: str,
        output_count: int = 1,
        reference_urls: Optional[Sequence[str]] = None,
    ) -> str:
        """Start a prediction and return its external job ID."""
        ...

    async def get_status(self, job_id: str) -> PredictionResult:
        """Fetch the current status of a prediction."""
        ...

    async def cancel(self, job_id: str) -> None:
        """Ask the service to stop a prediction."""
        ...
