"""Application lifecycle tests with fake external collaborators."""

import pytest
from conftest import FakeIngestor, FakePredictionClient, FakeUploader

from promptforge.app import lifespan
from promptforge.core.config import Settings
from promptforge.models.batch import Batch, BatchStatus
from promptforge.models.generation_job import GenerationJob, JobStatus
from promptforge.services.generation.orchestrator import INTERRUPTED_MESSAGE
from promptforge.services.prediction.base import PredictionStatus
from promptforge.services.reference_cache import ReferenceFile


def make_settings(tmp_path) -> Settings:
    return Settings(
        APP_ENV="test",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'app.db'}",
        POLL_INTERVAL_SECONDS=0.01,
        MAX_WAIT_SECONDS=5,
        REFERENCE_DIR=str(tmp_path / "refs"),
        OUTPUT_DIR=str(tmp_path / "out"),
    )


@pytest.mark.asyncio
async def test_lifespan_runs_a_batch_end_to_end(tmp_path):
    settings = make_settings(tmp_path)

    async with lifespan(
        settings,
        run_refresh_worker=False,
        predictions=FakePredictionClient(),
        uploader=FakeUploader(),
        ingestor=FakeIngestor(),
    ) as services:
        submission = await services.batches.create_batch(
            "a lighthouse", 2, reference_files=[ReferenceFile(b"png", "style.png")]
        )
        report = await services.batches.wait(submission.batch_id)

    assert report.status == BatchStatus.COMPLETED
    assert report.job_counts == {"succeeded": 2}


@pytest.mark.asyncio
async def test_lifespan_recovers_interrupted_jobs(tmp_path):
    settings = make_settings(tmp_path)
    predictions = FakePredictionClient(default_timeline=[PredictionStatus.PROCESSING])

    # First process stops while both jobs are still being polled
    async with lifespan(
        settings,
        run_refresh_worker=False,
        predictions=predictions,
        uploader=FakeUploader(),
        ingestor=FakeIngestor(),
    ) as services:
        submission = await services.batches.create_batch("a lighthouse", 2)

    async with lifespan(
        settings,
        run_refresh_worker=False,
        predictions=FakePredictionClient(),
        uploader=FakeUploader(),
        ingestor=FakeIngestor(),
    ) as services:
        async with await services.uow_factory() as uow:
            batch: Batch = await uow.batches.get_by_id(submission.batch_id)
            jobs: list[GenerationJob] = await uow.jobs.get_by_batch(submission.batch_id)

    assert batch.status == BatchStatus.FAILED
    assert {job.status for job in jobs} == {JobStatus.FAILED}
    assert all(job.error == INTERRUPTED_MESSAGE for job in jobs)


@pytest.mark.asyncio
async def test_lifespan_starts_and_stops_refresh_worker(tmp_path):
    settings = make_settings(tmp_path)

    async with lifespan(
        settings,
        predictions=FakePredictionClient(),
        uploader=FakeUploader(),
        ingestor=FakeIngestor(),
    ) as services:
        assert services.references is not None
