"""Registry of jobs whose poll loops are still running."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID


@dataclass(frozen=True)
class JobContext:
    """Identity and deadline of one running job.

    The deadline is a time.monotonic() value fixed when the job starts.
    """

    job_id: UUID
    batch_id: int
    image_index: int
    external_job_id: str
    deadline: float
    started: float = field(default_factory=time.monotonic)

    @classmethod
    def start(
        cls, job_id: UUID, batch_id: int, image_index: int, external_job_id: str, max_wait: float
    ) -> "JobContext":
        now = time.monotonic()
        return cls(
            job_id, batch_id, image_index, external_job_id, deadline=now + max_wait, started=now
        )

    def remaining(self) -> float:
        return max(self.deadline - time.monotonic(), 0.0)

    def expired(self) -> bool:
        return time.monotonic() >= self.deadline

    def elapsed(self) -> float:
        return time.monotonic() - self.started


class ActiveJobRegistry:
    """Lock-guarded map of job ID to JobContext.

    Removing a job is the claim on its terminal write: only the caller that got
    the context back from pop, pop_batch or pop_all may record the job's final status.
    """

    def __init__(self) -> None:
        self._jobs: dict[UUID, JobContext] = {}
        self._lock = asyncio.Lock()

    async def add(self, ctx: JobContext) -> None:
        async with self._lock:
            self._jobs[ctx.job_id] = ctx

    async def contains(self, job_id: UUID) -> bool:
        async with self._lock:
            return job_id in self._jobs

    async def pop(self, job_id: UUID) -> Optional[JobContext]:
        async with self._lock:
            return self._jobs.pop(job_id, None)

    async def pop_batch(self, batch_id: int) -> list[JobContext]:
        """Remove and return every active job of a batch."""
        async with self._lock:
            claimed = [ctx for ctx in self._jobs.values() if ctx.batch_id == batch_id]
            for ctx in claimed:
                del self._jobs[ctx.job_id]
        return sorted(claimed, key=lambda ctx: ctx.image_index)

    async def pop_all(self) -> list[JobContext]:
        """Remove and return every active job."""
        async with self._lock:
            claimed = list(self._jobs.values())
            self._jobs.clear()
        return claimed

    async def for_batch(self, batch_id: int) -> list[JobContext]:
        async with self._lock:
            jobs = [ctx for ctx in self._jobs.values() if ctx.batch_id == batch_id]
        return sorted(jobs, key=lambda ctx: ctx.image_index)

    async def snapshot(self) -> list[JobContext]:
        async with self._lock:
            return list(self._jobs.values())
