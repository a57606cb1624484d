"""Replicate Files upload client tests using httpx.MockTransport."""

import json
from datetime import timedelta

import httpx
import pytest

from promptforge.core.timezone import utcnow
from promptforge.services.exceptions import PermanentExternalError, TransientExternalError
from promptforge.services.uploads.replicate_files import ReplicateFilesClient


def make_client(handler) -> ReplicateFilesClient:
    return ReplicateFilesClient(
        api_token="r8_test",
        files_url="https://api.replicate.test/v1/files/",
        validity=timedelta(hours=24),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_upload_posts_multipart_and_parses_expiry():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = request.content
        return httpx.Response(
            201,
            json={"id": "file-xyz", "expires_at": "2030-01-02T03:04:05.000Z"},
        )

    blob = await make_client(handler).upload(
        b"png-bytes", "image/png", "style.png", metadata={"purpose": "reference_image"}
    )

    assert blob.external_id == "file-xyz"
    assert blob.expires_at.isoformat() == "2030-01-02T03:04:05"
    assert blob.expires_at.tzinfo is None
    assert seen["url"] == "https://api.replicate.test/v1/files"
    assert seen["auth"] == "Bearer r8_test"
    assert b'name="content"; filename="style.png"' in seen["body"]
    assert json.dumps({"purpose": "reference_image"}).encode() in seen["body"]


@pytest.mark.asyncio
async def test_missing_expiry_falls_back_to_validity_window():
    client = make_client(lambda request: httpx.Response(201, json={"id": "file-xyz"}))

    blob = await client.upload(b"png-bytes", "image/png", "style.png")

    remaining = blob.expires_at - utcnow()
    assert timedelta(hours=23, minutes=59) < remaining <= timedelta(hours=24)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,error_type",
    [
        (429, TransientExternalError),
        (503, TransientExternalError),
        (401, PermanentExternalError),
        (422, PermanentExternalError),
    ],
)
async def test_upload_status_classification(status, error_type):
    client = make_client(lambda request: httpx.Response(status, text="nope"))

    with pytest.raises(error_type):
        await client.upload(b"png-bytes", "image/png", "style.png")


@pytest.mark.asyncio
async def test_network_errors_are_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    with pytest.raises(TransientExternalError):
        await make_client(handler).upload(b"png-bytes", "image/png", "style.png")


@pytest.mark.asyncio
async def test_malformed_response_is_permanent():
    client = make_client(lambda request: httpx.Response(201, json={"name": "no id"}))

    with pytest.raises(PermanentExternalError):
        await client.upload(b"png-bytes", "image/png", "style.png")


def test_file_url():
    client = make_client(lambda request: httpx.Response(200))

    assert client.file_url("file-xyz") == "https://api.replicate.test/v1/files/file-xyz"
