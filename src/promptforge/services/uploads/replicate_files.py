"""Replicate Files client for staging reference images."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

import httpx
import structlog

from promptforge.core.timezone import parse_timestamp, utcnow
from promptforge.services.exceptions import PermanentExternalError, TransientExternalError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class UploadedBlob:
    """Result of staging bytes on the file-hosting service."""

    external_id: str
    expires_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


class BlobUploadClient(Protocol):
    """Remote file-hosting service used to stage reference images."""

    async def upload(
        self,
        data: bytes,
        content_type: str,
        filename: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> UploadedBlob:
        """Upload bytes and return the provider file ID with its expiry."""
        ...

    def file_url(self, external_id: str) -> str:
        """Build the URL the prediction service reads the staged file from."""
        ...


class ReplicateFilesClient:
    """Blob upload client using the Replicate /v1/files endpoint."""

    def __init__(
        self,
        api_token: str,
        files_url: str = "https://api.replicate.com/v1/files",
        validity: timedelta = timedelta(hours=24),
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Replicate Files client.

        Args:
            api_token: Replicate API token (from REPLICATE_API_TOKEN env var)
            files_url: Files endpoint
            validity: Expiry assumed when the provider response carries none
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.files_url = files_url.rstrip("/")
        self.validity = validity
        self.timeout = timeout
        self.headers = {"Authorization": f"Bearer {api_token}"}
        self._transport = transport

    def file_url(self, external_id: str) -> str:
        """Convert a file ID to its API URL.

        Args:
            external_id: Replicate file ID

        Returns:
            File URL (e.g., "https://api.replicate.com/v1/files/<id>")
        """
        return f"{self.files_url}/{external_id}"

    async def upload(
        self,
        data: bytes,
        content_type: str,
        filename: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> UploadedBlob:
        """Upload a reference image to Replicate.

        Args:
            data: Raw image bytes
            content_type: MIME type of the image
            filename: Filename reported to the provider
            metadata: Optional key/values stored alongside the file

        Returns:
            UploadedBlob with file ID and expiry (naive UTC)

        Raises:
            TransientExternalError: Network timeout, rate limit (429), service unavailable (5xx)
            PermanentExternalError: Invalid API token (401), forbidden (403), bad request (4xx)
        """
        files = {"content": (filename, data, content_type)}
        form = {"metadata": json.dumps(metadata)} if metadata else None

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.files_url, headers=self.headers, files=files, data=form
                )
        except httpx.TimeoutException as e:
            raise TransientExternalError(f"Upload timeout after {self.timeout}s: {e}") from e
        except httpx.HTTPError as e:
            raise TransientExternalError(f"Network error during upload: {e}") from e

        if response.status_code == 429:
            raise TransientExternalError(f"Rate limit exceeded: {response.text}")
        elif response.status_code >= 500:
            raise TransientExternalError(
                f"Service unavailable ({response.status_code}): {response.text}"
            )
        elif response.status_code in (401, 403):
            raise PermanentExternalError(
                f"Replicate rejected the API token ({response.status_code}). "
                "Check REPLICATE_API_TOKEN configuration."
            )
        elif response.status_code >= 400:
            raise PermanentExternalError(
                f"Replicate upload failed: {response.status_code} {response.text}"
            )

        try:
            body = response.json()
            external_id = body["id"]
        except (ValueError, KeyError) as e:
            raise PermanentExternalError(f"Malformed upload response: {response.text[:200]}") from e

        expires_at = self._expiry_from(body.get("expires_at"))
        logger.info(
            "reference.uploaded",
            external_id=external_id,
            size=len(data),
            expires_at=expires_at.isoformat(),
        )
        return UploadedBlob(external_id=external_id, expires_at=expires_at, metadata=body)

    def _expiry_from(self, raw: Any) -> datetime:
        if isinstance(raw, str) and raw:
            try:
                return parse_timestamp(raw)
            except ValueError:
                logger.warning("reference.upload.bad_expiry", expires_at=raw)
        return utcnow() + self.validity
