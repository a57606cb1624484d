"""Unit of Work pattern tests.

Tests focus on transaction management:
- Successful commits persist changes
- Exceptions trigger rollback
- Multiple repository operations are atomic
"""

import pytest

from promptforge.models.batch import Batch
from promptforge.models.generation_job import GenerationJob
from promptforge.models.reference_image import ReferenceImage


@pytest.mark.asyncio
async def test_uow_commits_on_successful_exit(uow_factory):
    """Changes made within the context persist after the context exits."""
    async with await uow_factory() as uow:
        batch = await uow.batches.add(Batch(prompt="A lighthouse", requested_count=2))
        batch_id = batch.id

    async with await uow_factory() as uow:
        found = await uow.batches.get_by_id(batch_id)
        assert found is not None
        assert found.prompt == "A lighthouse"


@pytest.mark.asyncio
async def test_uow_rollback_on_exception(uow_factory):
    """Exceptions roll back the transaction and propagate."""
    with pytest.raises(ValueError, match="Simulated error"):
        async with await uow_factory() as uow:
            await uow.reference_images.add(
                ReferenceImage(
                    content_hash="a" * 64, stored_filename="a.png", file_size=3
                )
            )
            raise ValueError("Simulated error")

    async with await uow_factory() as uow:
        assert await uow.reference_images.get_by_hash("a" * 64) is None


@pytest.mark.asyncio
async def test_uow_provides_all_repositories(uow_factory):
    async with await uow_factory() as uow:
        assert uow.batches is not None
        assert uow.jobs is not None
        assert uow.reference_images is not None
        assert uow.external_uploads is not None
        assert uow.generated_images is not None


@pytest.mark.asyncio
async def test_uow_atomic_multi_repository_operation(uow_factory):
    """A failing second write rolls back the first one."""
    async with await uow_factory() as uow:
        batch = await uow.batches.add(Batch(prompt="A lighthouse", requested_count=2))
        batch_id = batch.id

    with pytest.raises(Exception):
        async with await uow_factory() as uow:
            await uow.jobs.add(GenerationJob(batch_id=batch_id, image_index=0, external_job_id="a"))
            # Same (batch_id, image_index) violates the unique constraint
            await uow.jobs.add(GenerationJob(batch_id=batch_id, image_index=0, external_job_id="b"))

    async with await uow_factory() as uow:
        assert await uow.jobs.get_by_batch(batch_id) == []
