"""Active job registry tests."""

from uuid import uuid4

import pytest

from promptforge.services.generation.active_jobs import ActiveJobRegistry, JobContext


def make_ctx(batch_id: int, index: int, max_wait: float = 300.0) -> JobContext:
    return JobContext.start(uuid4(), batch_id, index, f"pred-{batch_id}-{index}", max_wait)


def test_job_context_deadline():
    ctx = make_ctx(1, 0, max_wait=300.0)
    assert not ctx.expired()
    assert 299.0 < ctx.remaining() <= 300.0

    expired = make_ctx(1, 0, max_wait=0.0)
    assert expired.expired()
    assert expired.remaining() == 0.0


@pytest.mark.asyncio
async def test_pop_claims_job_once():
    registry = ActiveJobRegistry()
    ctx = make_ctx(1, 0)
    await registry.add(ctx)

    assert await registry.contains(ctx.job_id)
    assert await registry.pop(ctx.job_id) == ctx
    assert await registry.pop(ctx.job_id) is None
    assert not await registry.contains(ctx.job_id)


@pytest.mark.asyncio
async def test_pop_batch_only_takes_that_batch():
    registry = ActiveJobRegistry()
    jobs = [make_ctx(1, 2), make_ctx(1, 0), make_ctx(2, 0)]
    for ctx in jobs:
        await registry.add(ctx)

    claimed = await registry.pop_batch(1)

    assert [ctx.image_index for ctx in claimed] == [0, 2]
    assert await registry.for_batch(1) == []
    assert [ctx.batch_id for ctx in await registry.snapshot()] == [2]


@pytest.mark.asyncio
async def test_pop_all_empties_registry():
    registry = ActiveJobRegistry()
    jobs = [make_ctx(1, 0), make_ctx(2, 0)]
    for ctx in jobs:
        await registry.add(ctx)

    claimed = await registry.pop_all()

    assert {ctx.job_id for ctx in claimed} == {ctx.job_id for ctx in jobs}
    assert await registry.snapshot() == []
    assert await registry.pop(jobs[0].job_id) is None
    assert await registry.pop_all() == []
