"""Batch facade tests.

Tests focus on:
- Validation errors returned as results instead of raised
- Reference resolution wired into batch start
- Reused reference sets degrading to warnings
- Failures while starting a batch ending as a failed batch
"""

import pytest
import pytest_asyncio

from promptforge.models.batch import BatchStatus
from promptforge.services.exceptions import ErrorKind, NotFoundError, TransientExternalError
from promptforge.services.generation.batch_service import BatchService, validate_batch_request
from promptforge.services.prediction.base import PredictionStatus
from promptforge.services.reference_cache import ReferenceFile

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"style" * 40


@pytest_asyncio.fixture
async def service(uow_factory, reference_cache, orchestrator, aggregator):
    return BatchService(
        uow_factory, reference_cache, orchestrator, aggregator, max_prompt_length=50, max_outputs=4
    )


@pytest.mark.parametrize(
    "prompt,count,fragment",
    [
        ("", 1, "cannot be empty"),
        ("   ", 1, "cannot be empty"),
        ("x" * 51, 1, "maximum length of 50"),
        ("a cat", 0, "between 1 and 4"),
        ("a cat", 5, "between 1 and 4"),
        ("a cat", True, "must be an integer"),
        (None, 1, "must be a string"),
    ],
)
def test_validate_batch_request_rejects(prompt, count, fragment):
    error = validate_batch_request(prompt, count, max_prompt_length=50, max_outputs=4)

    assert error is not None
    assert error.kind == ErrorKind.VALIDATION
    assert fragment in error.message


def test_validate_batch_request_accepts_bounds():
    assert validate_batch_request("x" * 50, 4, max_prompt_length=50, max_outputs=4) is None
    assert validate_batch_request("a cat", 1, max_prompt_length=50, max_outputs=4) is None


@pytest.mark.asyncio
async def test_invalid_request_creates_no_batch(service, uow_factory, predictions):
    submission = await service.create_batch("a cat", 9)

    assert not submission.ok
    assert submission.batch_id is None
    assert submission.error_kind == ErrorKind.VALIDATION
    assert predictions.submitted == []
    async with await uow_factory() as uow:
        assert await uow.batches.list_by_status(BatchStatus.PENDING) == []


@pytest.mark.asyncio
async def test_create_batch_with_reference_files(service, predictions, uploader, orchestrator):
    submission = await service.create_batch(
        "a cat in the style of the reference",
        2,
        reference_files=[
            ReferenceFile(PNG_BYTES, "style.png"),
            ReferenceFile(PNG_BYTES, "style-copy.png"),
        ],
    )

    assert submission.ok
    assert submission.status in (BatchStatus.PROCESSING, BatchStatus.COMPLETED)
    assert len(uploader.uploads) == 1
    assert all(
        entry["reference_urls"] == ["https://files.test/file-0"] for entry in predictions.submitted
    )

    report = await service.wait(submission.batch_id)
    assert report.status == BatchStatus.COMPLETED
    assert report.job_counts == {"succeeded": 2}
    assert report.active_jobs == 0
    assert await service.reference_ids_for_batch(submission.batch_id) == [1]


@pytest.mark.asyncio
async def test_reuse_references_of_previous_batch(service, uploader, predictions):
    first = await service.create_batch(
        "first", 1, reference_files=[ReferenceFile(PNG_BYTES, "style.png")]
    )
    await service.wait(first.batch_id)
    reuse_ids = await service.reference_ids_for_batch(first.batch_id)

    second = await service.create_batch("second", 1, reuse_reference_ids=reuse_ids + [777])

    assert second.ok
    assert second.warnings == ["Reference image 777 not found"]
    assert len(uploader.uploads) == 1
    assert predictions.submitted[-1]["reference_urls"] == ["https://files.test/file-0"]
    assert await service.reference_ids_for_batch(second.batch_id) == reuse_ids


@pytest.mark.asyncio
async def test_reference_upload_failure_fails_batch(service, uploader, predictions, uow_factory):
    uploader.error = TransientExternalError("Service unavailable (503)")

    submission = await service.create_batch(
        "a cat", 1, reference_files=[ReferenceFile(PNG_BYTES, "style.png")]
    )

    assert not submission.ok
    assert submission.error_kind == ErrorKind.EXTERNAL_SERVICE
    assert submission.status == BatchStatus.FAILED
    assert predictions.submitted == []

    report = await service.get_status(submission.batch_id)
    assert report.status == BatchStatus.FAILED
    assert report.error_message.startswith("Failed to start generation")


@pytest.mark.asyncio
async def test_get_status_and_cancel(service, predictions):
    predictions.default_timeline = [PredictionStatus.PROCESSING]
    submission = await service.create_batch("a cat", 3)

    report = await service.get_status(submission.batch_id)
    assert report.status == BatchStatus.PROCESSING
    assert report.active_jobs == 3
    assert not report.is_finished

    await service.cancel(submission.batch_id)

    report = await service.wait(submission.batch_id)
    assert report.status == BatchStatus.FAILED
    assert report.error_message == "Generation canceled by user"
    assert report.job_counts == {"canceled": 3}

    with pytest.raises(NotFoundError):
        await service.cancel(submission.batch_id)


@pytest.mark.asyncio
async def test_unknown_batch_queries_raise(service):
    with pytest.raises(NotFoundError):
        await service.get_status(404)
    with pytest.raises(NotFoundError):
        await service.reference_ids_for_batch(404)
