"""pytest fixtures for promptforge tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- session_factory: Function-scoped session factory on a fresh SQLite database
- uow_factory: Function-scoped UnitOfWork factory
- Fake external collaborators (prediction service, blob uploads, ingestion)
"""

import asyncio
import itertools
import os
from datetime import timedelta
from typing import Any, Optional, Sequence
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

from promptforge.core.database import create_tables, setup_db_session
from promptforge.core.timezone import utcnow
from promptforge.models.batch import Batch
from promptforge.services.exceptions import StorageError
from promptforge.services.generation.aggregator import BatchStatusAggregator
from promptforge.services.generation.orchestrator import JobOrchestrator, PollPolicy
from promptforge.services.prediction.base import PredictionResult, PredictionStatus
from promptforge.services.reference_cache import ReferenceImageCache
from promptforge.services.storage.reference_store import ReferenceFileStore
from promptforge.services.uploads.replicate_files import UploadedBlob
from promptforge.uow import create_uow_factory


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path):
    """Provide a session factory bound to a fresh SQLite database file.

    A single pooled connection mirrors the production SQLite setup.
    """
    factory = setup_db_session(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", pool_size=1)
    engine = factory.kw["bind"]
    await create_tables(engine)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


async def create_batch(uow_factory, prompt: str = "A lighthouse at dusk", requested_count: int = 1):
    """Insert a pending batch and return it."""
    async with await uow_factory() as uow:
        return await uow.batches.add(Batch(prompt=prompt, requested_count=requested_count))


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Wait until an async predicate returns True."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(interval)


class FakePredictionClient:
    """In-memory prediction service.

    Prediction IDs are "pred-0", "pred-1", ... in submission order. Each
    prediction walks through its timeline (a PredictionStatus, a
    PredictionResult or an exception per poll); the last entry repeats.
    """

    def __init__(self, default_timeline: Sequence[Any] = (PredictionStatus.SUCCEEDED,)):
        self.default_timeline = list(default_timeline)
        self.timelines: dict[str, list[Any]] = {}
        self.submit_errors: dict[int, Exception] = {}
        self.cancel_errors: dict[str, Exception] = {}
        self.submitted: list[dict[str, Any]] = []
        self.canceled: list[str] = []
        self.polls: dict[str, int] = {}
        self._calls = itertools.count()

    async def submit(
        self, prompt: str, output_count: int = 1, reference_urls: Optional[Sequence[str]] = None
    ) -> str:
        call = next(self._calls)
        if call in self.submit_errors:
            raise self.submit_errors[call]
        job_id = f"pred-{call}"
        self.submitted.append(
            {
                "job_id": job_id,
                "prompt": prompt,
                "output_count": output_count,
                "reference_urls": list(reference_urls or []),
            }
        )
        return job_id

    async def get_status(self, job_id: str) -> PredictionResult:
        timeline = self.timelines.get(job_id, self.default_timeline)
        position = self.polls.get(job_id, 0)
        self.polls[job_id] = position + 1
        entry = timeline[min(position, len(timeline) - 1)]

        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, PredictionResult):
            return entry
        if entry == PredictionStatus.SUCCEEDED:
            return PredictionResult(job_id, entry, output_url=f"https://cdn.test/{job_id}.png")
        if entry.is_terminal:
            return PredictionResult(job_id, entry, error=f"Prediction {entry.value} by provider")
        return PredictionResult(job_id, entry)

    async def cancel(self, job_id: str) -> None:
        self.canceled.append(job_id)
        if job_id in self.cancel_errors:
            raise self.cancel_errors[job_id]


class FakeUploader:
    """In-memory blob upload client counting uploads."""

    def __init__(self, validity: timedelta = timedelta(hours=24)):
        self.validity = validity
        self.uploads: list[dict[str, Any]] = []
        self.error: Optional[Exception] = None

    async def upload(
        self,
        data: bytes,
        content_type: str,
        filename: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> UploadedBlob:
        # Yield so concurrent callers can interleave
        await asyncio.sleep(0.01)
        if self.error is not None:
            raise self.error
        external_id = f"file-{len(self.uploads)}"
        self.uploads.append(
            {
                "external_id": external_id,
                "size": len(data),
                "content_type": content_type,
                "filename": filename,
                "metadata": metadata or {},
            }
        )
        return UploadedBlob(external_id=external_id, expires_at=utcnow() + self.validity)

    def file_url(self, external_id: str) -> str:
        return f"https://files.test/{external_id}"


class FakeIngestor:
    """Ingestor recording output URLs; URLs in fail_urls raise StorageError."""

    def __init__(self):
        self.ingested: list[tuple[str, int, Optional[UUID]]] = []
        self.fail_urls: set[str] = set()

    async def ingest(self, output_url: str, batch_id: int, job_id: Optional[UUID] = None) -> str:
        if output_url in self.fail_urls:
            raise StorageError(f"Failed to download image: 404 Not Found ({output_url})")
        self.ingested.append((output_url, batch_id, job_id))
        return str(uuid4())


@pytest.fixture
def predictions():
    return FakePredictionClient()


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def ingestor():
    return FakeIngestor()


@pytest.fixture
def aggregator(uow_factory):
    return BatchStatusAggregator(uow_factory)


@pytest_asyncio.fixture
async def orchestrator(uow_factory, predictions, ingestor, aggregator):
    """Orchestrator with a fast poll interval; poll loops are cancelled on teardown."""
    orchestrator = JobOrchestrator(
        uow_factory,
        predictions,
        ingestor,
        aggregator,
        PollPolicy(interval_seconds=0.01, max_wait_seconds=5.0),
    )
    yield orchestrator
    await orchestrator.shutdown()


@pytest.fixture
def reference_cache(uow_factory, uploader, tmp_path):
    return ReferenceImageCache(
        uow_factory,
        uploader,
        ReferenceFileStore(tmp_path / "references"),
        grace_margin=timedelta(hours=4),
    )
