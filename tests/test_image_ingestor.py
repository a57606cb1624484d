"""Filesystem image ingestor tests using httpx.MockTransport."""

from uuid import UUID, uuid4

import httpx
import pytest
from conftest import create_batch

from promptforge.services.exceptions import StorageError
from promptforge.services.storage.image_ingestor import FilesystemImageIngestor


def make_ingestor(uow_factory, tmp_path, handler) -> FilesystemImageIngestor:
    return FilesystemImageIngestor(
        uow_factory, tmp_path / "generated", transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_ingest_stores_file_and_records_image(uow_factory, tmp_path):
    batch = await create_batch(uow_factory)
    job_id = uuid4()
    ingestor = make_ingestor(
        uow_factory,
        tmp_path,
        lambda request: httpx.Response(
            200, content=b"webp-bytes", headers={"content-type": "image/webp; charset=binary"}
        ),
    )

    asset_id = await ingestor.ingest("https://cdn.test/out.webp", batch.id, job_id=job_id)

    async with await uow_factory() as uow:
        images = await uow.generated_images.get_by_batch(batch.id)
    assert [str(image.id) for image in images] == [asset_id]
    image = images[0]
    assert image.job_id == job_id
    assert image.content_type == "image/webp"
    assert image.filename == f"{batch.id}/{UUID(asset_id).hex}.webp"
    assert (tmp_path / "generated" / image.filename).read_bytes() == b"webp-bytes"


@pytest.mark.asyncio
async def test_download_error_raises_storage_error(uow_factory, tmp_path):
    batch = await create_batch(uow_factory)
    ingestor = make_ingestor(uow_factory, tmp_path, lambda request: httpx.Response(404))

    with pytest.raises(StorageError, match="404"):
        await ingestor.ingest("https://cdn.test/missing.png", batch.id)

    assert not (tmp_path / "generated").exists()


@pytest.mark.asyncio
async def test_empty_download_raises_storage_error(uow_factory, tmp_path):
    batch = await create_batch(uow_factory)
    ingestor = make_ingestor(uow_factory, tmp_path, lambda request: httpx.Response(200))

    with pytest.raises(StorageError, match="empty"):
        await ingestor.ingest("https://cdn.test/empty.png", batch.id)


@pytest.mark.asyncio
async def test_network_error_raises_storage_error(uow_factory, tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    batch = await create_batch(uow_factory)
    ingestor = make_ingestor(uow_factory, tmp_path, handler)

    with pytest.raises(StorageError):
        await ingestor.ingest("https://cdn.test/out.png", batch.id)
