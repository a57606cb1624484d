"""Replicate API client for image generation with error classification."""

import asyncio
import re
from typing import Any, Optional, Sequence

import httpx
import replicate
import structlog
from replicate.exceptions import ReplicateError as ReplicateAPIError

from promptforge.services.exceptions import (
    ExternalServiceError,
    PermanentExternalError,
    TransientExternalError,
)
from promptforge.services.prediction.base import PredictionResult, PredictionStatus

logger = structlog.get_logger(__name__)


def classify_error(exception: Exception) -> ExternalServiceError:
    """Classify exception into retry category.

    Args:
        exception: Original exception from Replicate SDK or network layer

    Returns:
        Classified ExternalServiceError subclass instance

    The HTTP status decides when the exception carries one; the message text
    is only inspected without it.

    Classification rules:
        - Timeout errors → TransientExternalError
        - 429 (rate limit) → TransientExternalError
        - 5xx (service unavailable) → TransientExternalError
        - 401/403 (authentication) → PermanentExternalError
        - Connection errors → TransientExternalError
        - Other errors → PermanentExternalError
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()

    if isinstance(exception, httpx.TimeoutException) or "timeout" in error_message_lower:
        return TransientExternalError(f"Network timeout: {error_message}")

    status = getattr(exception, "status", None)

    if isinstance(status, int):
        if status == 429:
            return TransientExternalError(f"Rate limit exceeded: {error_message}")
        if status >= 500:
            return TransientExternalError(f"Service unavailable: {error_message}")
        if status in (401, 403):
            return PermanentExternalError(f"Authentication failed: {error_message}")
        return PermanentExternalError(f"Permanent error: {error_message}")

    # No status code: fall back to the message text
    if _has_code(error_message, "429") or "rate limit" in error_message_lower:
        return TransientExternalError(f"Rate limit exceeded: {error_message}")

    if any(_has_code(error_message, code) for code in ("500", "502", "503", "504")):
        return TransientExternalError(f"Service unavailable: {error_message}")

    if (
        _has_code(error_message, "401")
        or _has_code(error_message, "403")
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "authentication" in error_message_lower
    ):
        return PermanentExternalError(f"Authentication failed: {error_message}")

    if isinstance(exception, (httpx.TransportError, ConnectionError, OSError)):
        return TransientExternalError(f"Connection error: {error_message}")

    return PermanentExternalError(f"Permanent error: {error_message}")


def _has_code(message: str, code: str) -> bool:
    """Return True if code appears in message as a standalone number."""
    return re.search(rf"(?<!\d){code}(?!\d)", message) is not None


def normalize_output(output: Any) -> str:
    """Reduce a prediction output to a single image URL.

    Accepted shapes are a URL string or a list holding exactly one URL string.
    Anything else is rejected rather than guessed at.

    Raises:
        PermanentExternalError: If the output has any other shape
    """
    if isinstance(output, str) and output:
        return output
    if isinstance(output, list) and len(output) == 1 and isinstance(output[0], str) and output[0]:
        return output[0]
    raise PermanentExternalError(f"Unexpected output format from Replicate: {output!r:.200}")


def parse_prediction(job_id: str, status: Any, output: Any, error: Any) -> PredictionResult:
    """Build a PredictionResult from raw prediction fields.

    Raises:
        PermanentExternalError: On unknown status or malformed succeeded output
    """
    try:
        parsed_status = PredictionStatus(status)
    except ValueError:
        raise PermanentExternalError(f"Unknown prediction status from Replicate: {status!r}")

    output_url = None
    if parsed_status == PredictionStatus.SUCCEEDED:
        output_url = normalize_output(output)

    return PredictionResult(
        job_id=job_id,
        status=parsed_status,
        output_url=output_url,
        error=str(error) if error else None,
    )


class ReplicatePredictionClient:
    """Prediction client backed by the Replicate predictions API.

    The Replicate SDK is synchronous, so calls run in a worker thread.
    """

    def __init__(
        self,
        api_token: str,
        model: str = "google/nano-banana",
        reference_field: str = "reference_images",
        client: Optional[replicate.Client] = None,
    ):
        """Initialize Replicate client.

        Args:
            api_token: Replicate API token (from REPLICATE_API_TOKEN env var)
            model: Model identifier used for every prediction
            reference_field: Model input name that receives reference image URLs
            client: Preconfigured SDK client (tests)
        """
        if client is None and not api_token:
            raise PermanentExternalError("REPLICATE_API_TOKEN not configured")
        self.model = model
        self.reference_field = reference_field
        self._client = client or replicate.Client(api_token=api_token)

    async def _call(self, operation: str, func, *args, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except ExternalServiceError:
            raise
        except (ReplicateAPIError, httpx.HTTPError, ConnectionError, OSError, TimeoutError) as e:
            classified = classify_error(e)
            logger.warning(
                "replicate.call_failed",
                operation=operation,
                error_type=type(classified).__name__,
                error_message=str(e),
            )
            raise classified from e
        except Exception as e:
            # Unexpected errors - treat as permanent to avoid infinite retries
            raise PermanentExternalError(f"Unexpected error during {operation}: {e}") from e

    async def submit(
        self,
        prompt: str,
        output_count: int = 1,
        reference_urls: Optional[Sequence[str]] = None,
    ) -> str:
        """Create a prediction.

        Args:
            prompt: Text prompt for image generation
            output_count: Number of outputs requested from the model
            reference_urls: Staged reference image URLs

        Returns:
            Replicate prediction ID

        Raises:
            TransientExternalError: Temporary failure
            PermanentExternalError: Permanent failure
        """
        payload: dict[str, Any] = {"prompt": prompt, "num_outputs": output_count}
        if reference_urls:
            payload[self.reference_field] = list(reference_urls)

        prediction = await self._call(
            "submit", self._client.predictions.create, model=self.model, input=payload
        )
        logger.info("replicate.prediction_created", prediction_id=prediction.id, model=self.model)
        return prediction.id

    async def get_status(self, job_id: str) -> PredictionResult:
        """Fetch and normalize the status of a prediction."""
        prediction = await self._call("get_status", self._client.predictions.get, job_id)
        return parse_prediction(job_id, prediction.status, prediction.output, prediction.error)

    async def cancel(self, job_id: str) -> None:
        """Cancel a running prediction."""
        await self._call("cancel", self._client.predictions.cancel, job_id)
