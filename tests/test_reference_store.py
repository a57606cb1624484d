"""Reference file store and content type detection tests."""

import pytest

from promptforge.services.storage.reference_store import (
    ReferenceFileStore,
    extension_for,
    guess_content_type,
)


@pytest.mark.parametrize(
    "filename,declared,expected",
    [
        ("photo.png", "image/webp", "image/webp"),
        ("photo.png", None, "image/png"),
        ("photo.png", "application/octet-stream", "image/png"),
        ("photo.jpeg", "", "image/jpeg"),
        ("photo", None, "image/jpeg"),
        ("photo.unknownext", None, "image/jpeg"),
    ],
)
def test_guess_content_type(filename, declared, expected):
    assert guess_content_type(filename, declared) == expected


def test_extension_for():
    assert extension_for("image/png") == ".png"
    assert extension_for("image/jpeg") == ".jpg"
    assert extension_for("application/pdf") == ".bin"
    assert extension_for(None, ".png") == ".png"


@pytest.mark.asyncio
async def test_store_writes_once_and_loads(tmp_path):
    store = ReferenceFileStore(tmp_path / "refs")
    filename = store.filename_for("abc123", "image/png")

    await store.save(filename, b"first")
    await store.save(filename, b"second")

    assert filename == "abc123.png"
    assert await store.load(filename) == b"first"
    assert await store.load("missing.png") is None
