"""On-disk store for the original bytes of reference images.

Files are named after their content hash so identical uploads share one file.
The bytes are needed to re-stage a reference image once its external upload
has expired.
"""

import asyncio
import mimetypes
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_CONTENT_TYPE = "image/jpeg"

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


def extension_for(content_type: Optional[str], default: str = ".bin") -> str:
    return _EXTENSIONS.get(content_type or "", default)


def guess_content_type(filename: str, declared: Optional[str] = None) -> str:
    """Resolve the content type of an uploaded file.

    The declared type wins unless it is missing or the generic
    application/octet-stream, in which case the filename extension decides.
    Unknown extensions fall back to image/jpeg.
    """
    if declared and declared != "application/octet-stream":
        return declared
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or DEFAULT_CONTENT_TYPE


class ReferenceFileStore:
    """Content-addressed directory of reference image bytes."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def filename_for(self, content_hash: str, content_type: str) -> str:
        return content_hash + extension_for(content_type)

    async def save(self, filename: str, data: bytes) -> Path:
        """Write bytes under filename unless the file already exists."""
        path = self.root / filename

        def _write() -> None:
            self.root.mkdir(parents=True, exist_ok=True)
            if not path.exists():
                path.write_bytes(data)

        await asyncio.to_thread(_write)
        return path

    async def load(self, filename: str) -> Optional[bytes]:
        """Read stored bytes, or None when the file is gone."""
        path = self.root / filename
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            logger.warning("reference.bytes_missing", path=str(path))
            return None
