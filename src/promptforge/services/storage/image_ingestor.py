"""Ingestion of generated images: download, store on disk, record in the database."""

import asyncio
from pathlib import Path
from typing import Optional, Protocol
from uuid import UUID, uuid4

import httpx
import structlog

from promptforge.models.generated_image import GeneratedImage
from promptforge.services.exceptions import StorageError
from promptforge.services.storage.reference_store import extension_for
from promptforge.uow import UowFactory

logger = structlog.get_logger(__name__)


class ImageIngestor(Protocol):
    """Post-processing step turning a remote output URL into a stored asset."""

    async def ingest(self, output_url: str, batch_id: int, job_id: Optional[UUID] = None) -> str:
        """Download and persist an output image, returning its asset ID."""
        ...


class FilesystemImageIngestor:
    """Stores generated images under <output_dir>/<batch_id>/ and records them."""

    def __init__(
        self,
        uow_factory: UowFactory,
        output_dir: str | Path,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize ingestor.

        Args:
            uow_factory: Unit of Work factory used to record GeneratedImage rows
            output_dir: Root directory for stored images
            timeout: Download timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.uow_factory = uow_factory
        self.output_dir = Path(output_dir)
        self.timeout = timeout
        self._transport = transport

    async def ingest(self, output_url: str, batch_id: int, job_id: Optional[UUID] = None) -> str:
        """Download an output image and persist it.

        Args:
            output_url: Remote URL of the generated image
            batch_id: Owning batch
            job_id: Generation job that produced the image

        Returns:
            GeneratedImage ID as string

        Raises:
            StorageError: Download, write or database failure
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport, follow_redirects=True
            ) as client:
                response = await client.get(output_url)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StorageError(
                f"Failed to download image: {e.response.status_code} {e.response.reason_phrase}"
            ) from e
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to download image: {e}") from e

        data = response.content
        if not data:
            raise StorageError(f"Downloaded image is empty: {output_url}")

        content_type = response.headers.get("content-type", "").split(";")[0].strip() or None
        image_id = uuid4()
        filename = f"{image_id.hex}{extension_for(content_type, '.png')}"
        path = self.output_dir / str(batch_id) / filename

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageError(f"Failed to store image {filename}: {e}") from e

        try:
            async with await self.uow_factory() as uow:
                await uow.generated_images.add(
                    GeneratedImage(
                        id=image_id,
                        batch_id=batch_id,
                        job_id=job_id,
                        filename=f"{batch_id}/{filename}",
                        source_url=output_url,
                        content_type=content_type,
                        file_size=len(data),
                    )
                )
        except Exception as e:
            path.unlink(missing_ok=True)
            raise StorageError(f"Failed to record image {filename}: {e}") from e

        logger.info(
            "image.ingested",
            batch_id=batch_id,
            job_id=str(job_id) if job_id else None,
            asset_id=str(image_id),
            size=len(data),
        )
        return str(image_id)
