"""Content-addressed cache of reference images and their staged uploads.

Reference images are deduplicated by the SHA-256 of their bytes. Each one keeps
at most one external upload; an upload is reused while its expiry is more than
the grace margin away and re-staged otherwise.

Uploads of the same content hash are serialized through a per-hash lock, so
concurrent requests for identical bytes produce a single external upload while
different images proceed independently. The lock is never held together with
the orchestrator's job registry lock.
"""

import asyncio
import hashlib
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import AsyncIterator, Optional, Sequence

import structlog

from promptforge.core.timezone import to_naive_utc, utcnow
from promptforge.models.external_upload import ExternalUpload
from promptforge.models.reference_image import ReferenceImage
from promptforge.services.exceptions import ExternalServiceError
from promptforge.services.storage.reference_store import ReferenceFileStore, guess_content_type
from promptforge.services.uploads.replicate_files import BlobUploadClient
from promptforge.uow import UowFactory

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReferenceFile:
    """A user-supplied reference image."""

    data: bytes
    filename: str
    content_type: Optional[str] = None


@dataclass(frozen=True)
class ResolvedReference:
    """A reference image with a currently valid external URL."""

    reference_image_id: int
    external_url: str
    was_refreshed: bool


@dataclass
class RefreshReport:
    """Outcome of re-validating previously used reference images.

    Images that could not be made valid are left out of resolved and described
    in warnings.
    """

    resolved: list[ResolvedReference] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def external_urls(self) -> list[str]:
        return [ref.external_url for ref in self.resolved]


def content_hash_of(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ReferenceImageCache:
    """Deduplicates reference images and keeps their external uploads valid."""

    def __init__(
        self,
        uow_factory: UowFactory,
        uploader: BlobUploadClient,
        store: ReferenceFileStore,
        grace_margin: timedelta = timedelta(hours=4),
    ):
        """Initialize cache.

        Args:
            uow_factory: Unit of Work factory
            uploader: External blob upload client
            store: Store holding the original bytes of every reference image
            grace_margin: Remaining lifetime below which an upload counts as stale
        """
        self.uow_factory = uow_factory
        self.uploader = uploader
        self.store = store
        self.grace_margin = grace_margin
        self._upload_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _hash_lock(self, content_hash: str) -> AsyncIterator[None]:
        """Hold the single-flight lock of a content hash.

        The lock is dropped once its last holder or waiter leaves.
        """
        lock = self._upload_locks.setdefault(content_hash, asyncio.Lock())
        self._lock_users[content_hash] = self._lock_users.get(content_hash, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[content_hash] -= 1
            if self._lock_users[content_hash] == 0:
                del self._lock_users[content_hash]
                del self._upload_locks[content_hash]

    def _is_valid(self, upload: Optional[ExternalUpload]) -> bool:
        return upload is not None and upload.is_valid(self.grace_margin)

    async def resolve(
        self, data: bytes, filename: str, content_type: Optional[str] = None
    ) -> ResolvedReference:
        """Register a reference image and return a valid external URL for it.

        Args:
            data: Raw image bytes
            filename: Name the user uploaded the file under
            content_type: Declared MIME type (guessed from filename when missing)

        Returns:
            ResolvedReference; was_refreshed is True when an upload happened

        Raises:
            ExternalServiceError: The upload failed (not retried here)
        """
        content_hash = content_hash_of(data)
        content_type = guess_content_type(filename, content_type)

        async with self._hash_lock(content_hash):
            async with await self.uow_factory() as uow:
                image = await uow.reference_images.get_by_hash(content_hash)
                if image is None:
                    image = await uow.reference_images.add(
                        ReferenceImage(
                            content_hash=content_hash,
                            stored_filename=self.store.filename_for(content_hash, content_type),
                            original_filename=filename,
                            content_type=content_type,
                            file_size=len(data),
                        )
                    )
                    logger.info(
                        "reference.created",
                        reference_image_id=image.id,
                        content_hash=content_hash,
                        size=len(data),
                    )
                upload = await uow.external_uploads.get_for_reference(image.id)  # type: ignore[arg-type]

            await self.store.save(image.stored_filename, data)

            if self._is_valid(upload):
                return self._reuse(image, upload)  # type: ignore[arg-type]
            return await self._stage(image, data, had_upload=upload is not None)

    async def resolve_many(self, files: Sequence[ReferenceFile]) -> list[ResolvedReference]:
        """Resolve several reference images in order; the first failure propagates."""
        results = []
        for file in files:
            results.append(await self.resolve(file.data, file.filename, file.content_type))
        return results

    async def ensure_valid(self, reference_image_ids: Sequence[int]) -> RefreshReport:
        """Re-validate previously used reference images, re-staging stale ones.

        Unknown IDs, images whose original bytes are gone and failed uploads are
        skipped and reported as warnings.

        Args:
            reference_image_ids: Reference images to reuse

        Returns:
            RefreshReport with the usable references and any warnings
        """
        report = RefreshReport()

        for reference_image_id in reference_image_ids:
            async with await self.uow_factory() as uow:
                image = await uow.reference_images.get_by_id(reference_image_id)

            if image is None:
                report.warnings.append(f"Reference image {reference_image_id} not found")
                logger.warning("reference.not_found", reference_image_id=reference_image_id)
                continue

            try:
                resolved = await self._ensure_one(image)
            except ExternalServiceError as e:
                report.warnings.append(
                    f"Reference image {reference_image_id} could not be re-uploaded: {e}"
                )
                logger.warning(
                    "reference.refresh_failed",
                    reference_image_id=reference_image_id,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
                continue

            if resolved is None:
                report.warnings.append(
                    f"Reference image {reference_image_id} skipped: "
                    "original file is no longer available"
                )
                continue
            report.resolved.append(resolved)

        return report

    async def find_expiring(self) -> list[int]:
        """Return IDs of reference images whose upload is within the grace margin."""
        async with await self.uow_factory() as uow:
            uploads = await uow.external_uploads.get_expiring_before(utcnow() + self.grace_margin)
        return [upload.reference_image_id for upload in uploads]

    async def refresh_expiring(self) -> RefreshReport:
        """Proactively re-stage every upload that is about to expire."""
        reference_image_ids = await self.find_expiring()
        if not reference_image_ids:
            return RefreshReport()
        report = await self.ensure_valid(reference_image_ids)
        logger.info(
            "reference.refresh_sweep",
            candidates=len(reference_image_ids),
            refreshed=sum(1 for ref in report.resolved if ref.was_refreshed),
            warnings=len(report.warnings),
        )
        return report

    async def _ensure_one(self, image: ReferenceImage) -> Optional[ResolvedReference]:
        async with self._hash_lock(image.content_hash):
            async with await self.uow_factory() as uow:
                upload = await uow.external_uploads.get_for_reference(image.id)  # type: ignore[arg-type]

            if self._is_valid(upload):
                return self._reuse(image, upload)  # type: ignore[arg-type]

            data = await self.store.load(image.stored_filename)
            if data is None:
                logger.warning(
                    "reference.refresh_skipped",
                    reference_image_id=image.id,
                    reason="original_bytes_missing",
                )
                return None
            return await self._stage(image, data, had_upload=upload is not None)

    def _reuse(self, image: ReferenceImage, upload: ExternalUpload) -> ResolvedReference:
        logger.debug(
            "reference.upload_reused",
            reference_image_id=image.id,
            expires_at=upload.expires_at.isoformat() if upload.expires_at else None,
        )
        return ResolvedReference(
            reference_image_id=image.id,  # type: ignore[arg-type]
            external_url=self.uploader.file_url(upload.external_file_id),
            was_refreshed=False,
        )

    async def _stage(
        self, image: ReferenceImage, data: bytes, had_upload: bool
    ) -> ResolvedReference:
        """Upload bytes and record the new upload. Caller holds the hash lock."""
        blob = await self.uploader.upload(
            data,
            image.content_type or guess_content_type(image.stored_filename),
            filename=image.original_filename or image.stored_filename,
            metadata={
                "purpose": "reference_image",
                "original_name": image.original_filename,
                "file_hash": image.content_hash,
            },
        )

        async with await self.uow_factory() as uow:
            await uow.external_uploads.record_upload(
                reference_image_id=image.id,  # type: ignore[arg-type]
                external_file_id=blob.external_id,
                expires_at=to_naive_utc(blob.expires_at),
                provider_metadata=blob.metadata,
            )

        logger.info(
            "reference.staged",
            reference_image_id=image.id,
            external_id=blob.external_id,
            replaced_expired=had_upload,
        )
        return ResolvedReference(
            reference_image_id=image.id,  # type: ignore[arg-type]
            external_url=self.uploader.file_url(blob.external_id),
            was_refreshed=True,
        )
