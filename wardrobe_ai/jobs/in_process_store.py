"""In-process job store using asyncio for local development.

Runs generation work sequentially in a background task instead of the
remote worker pool. No external services needed.
"""

import asyncio
import logging
import traceback
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from wardrobe_ai.jobs.models import Job, JobStatus, JobType
from wardrobe_ai.jobs.store import JobStore

logger = logging.getLogger(__name__)


class InProcessJobStore(JobStore):
    """Local job store. Processes triggered jobs one at a time via asyncio."""

    def __init__(self, worker_fn: Callable[[Job], Dict[str, Any]]):
        """
        worker_fn: callable(job: Job) -> dict
            Synchronous function that does the generation and returns the
            job result. Raising marks the job failed with the exception text.
            Called in a thread executor to avoid blocking the event loop.
        """
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._jobs: Dict[str, Job] = {}
        self._enqueued: Set[str] = set()
        self._worker_fn = worker_fn
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def create_job(
        self, owner_id: str, job_type: JobType, input: Dict[str, Any]
    ) -> Job:
        job = Job(
            id=str(uuid.uuid4()),
            owner_user_id=owner_id,
            job_type=job_type,
            input=dict(input),
        )
        self._jobs[job.id] = job
        return job.model_copy(deep=True)

    async def trigger(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        # Re-triggering a job that is queued, running or done is a no-op.
        if job_id in self._enqueued or job.status != JobStatus.QUEUED:
            return
        self._enqueued.add(job_id)
        await self._queue.put(job_id)

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(
        self,
        owner_id: str,
        job_type: JobType,
        statuses: Iterable[JobStatus],
        updated_since: Optional[datetime] = None,
        limit: int = 10,
    ) -> List[Job]:
        wanted = set(statuses)
        matches = [
            job for job in self._jobs.values()
            if job.owner_user_id == owner_id
            and job.job_type == job_type
            and job.status in wanted
            and (updated_since is None or job.updated_at >= updated_since)
        ]
        matches.sort(key=lambda j: j.updated_at, reverse=True)
        return [job.model_copy(deep=True) for job in matches[:limit]]

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._worker_loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _worker_loop(self) -> None:
        """Process triggered jobs one at a time from the queue."""
        while self._running:
            try:
                job_id = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            job = self._jobs.get(job_id)
            if job is None:
                continue

            job.status = JobStatus.RUNNING
            job.updated_at = datetime.utcnow()

            try:
                loop = asyncio.get_running_loop()
                result = await loop.run_in_executor(None, self._worker_fn, job)
                job.result = result or {}
                job.status = JobStatus.SUCCEEDED
            except Exception as e:
                logger.warning("Job %s failed: %s", job_id, e)
                job.status = JobStatus.FAILED
                job.error = f"{type(e).__name__}: {str(e)}\n{traceback.format_exc()}"
            job.updated_at = datetime.utcnow()
