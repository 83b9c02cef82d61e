"""Typed client over a JobStore: submit, trigger, fetch, and error classification."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Set

from wardrobe_ai.jobs.errors import JobFetchError, JobNotFound, SubmitFailed
from wardrobe_ai.jobs.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ErrorKind,
    Job,
    JobType,
    TriggerResult,
)
from wardrobe_ai.jobs.store import JobStore

logger = logging.getLogger(__name__)

# Provider refusals on content-safety grounds. These are not charged and
# need different input rather than a retry.
POLICY_BLOCK_PATTERNS = (
    "safety",
    "blocked",
    "policy",
    "harassment",
    "sexually explicit",
    "dangerous content",
    "generation blocked",
    "safety block",
)

TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "rate limit",
    "429",
    "502",
    "503",
    "504",
    "temporarily",
    "unavailable",
    "overloaded",
)

RECENT_JOB_WINDOW = timedelta(seconds=60)

JobMatcher = Callable[[Job], bool]


def classify_error(message: Optional[str]) -> ErrorKind:
    """Classify a backend failure message.

    Policy blocks win over everything else, so "blocked: request timed out
    by safety filter" is still a policy block.
    """
    if not message:
        return ErrorKind.FATAL
    normalized = message.lower()
    if any(pattern in normalized for pattern in POLICY_BLOCK_PATTERNS):
        return ErrorKind.POLICY_BLOCKED
    if any(pattern in normalized for pattern in TRANSIENT_PATTERNS):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


def is_policy_block_error(message: Optional[str]) -> bool:
    return classify_error(message) == ErrorKind.POLICY_BLOCKED


def render_item_limit(model_preference: Optional[str]) -> int:
    """Max wardrobe items an outfit render accepts before a mannequin pass is needed."""
    normalized = (model_preference or "").lower()
    if "pro" in normalized or "ultra" in normalized:
        return 7
    return 2


class JobClient:
    def __init__(self, store: JobStore):
        self._store = store
        # Dispatched triggers still waiting on the runner; held so they are not collected.
        self._pending: Set[asyncio.Task] = set()

    async def submit(self, owner_id: str, job_type: JobType, input: Dict[str, Any]) -> Job:
        try:
            job = await self._store.create_job(owner_id, job_type, input)
        except Exception as e:
            logger.error("Failed to create %s job for %s: %s", job_type.value, owner_id, e)
            raise SubmitFailed(f"Failed to start {job_type.value} job: {e}") from e
        logger.info("Created %s job %s", job_type.value, job.id)
        return job

    async def trigger(self, job_id: str) -> TriggerResult:
        """Best-effort execution trigger. Never raises."""
        try:
            await self._store.trigger(job_id)
        except Exception as e:
            # The worker may still pick the job up; polling decides the outcome.
            logger.warning("Trigger for job %s failed, continuing to poll: %s", job_id, e)
            return TriggerResult(job_id=job_id, ok=False, error=f"{type(e).__name__}: {e}")
        return TriggerResult(job_id=job_id, ok=True)

    async def dispatch_trigger(self, job_id: str) -> "asyncio.Task[TriggerResult]":
        """Send the trigger without waiting for the runner to answer.

        The runner only responds once the job is done, so the response is
        never worth waiting for. Yields once so the request goes out before
        the caller starts polling. The returned task never raises.
        """
        task = asyncio.ensure_future(self.trigger(job_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        await asyncio.sleep(0)
        return task

    async def fetch(self, job_id: str) -> Job:
        try:
            job = await self._store.get_job(job_id)
        except Exception as e:
            raise JobFetchError(job_id, f"Failed to read job {job_id}: {e}") from e
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def submit_and_trigger(
        self, owner_id: str, job_type: JobType, input: Dict[str, Any]
    ) -> tuple[Job, "asyncio.Task[TriggerResult]"]:
        job = await self.submit(owner_id, job_type, input)
        return job, await self.dispatch_trigger(job.id)

    async def find_active_job(
        self, owner_id: str, job_type: JobType, matcher: JobMatcher
    ) -> Optional[Job]:
        """Newest queued/running job of this type that matches."""
        jobs = await self._store.list_jobs(owner_id, job_type, ACTIVE_STATUSES)
        return next((job for job in jobs if matcher(job)), None)

    async def find_recent_job(
        self,
        owner_id: str,
        job_type: JobType,
        matcher: JobMatcher,
        window: timedelta = RECENT_JOB_WINDOW,
    ) -> Optional[Job]:
        """Newest terminal job of this type updated within ``window``."""
        since = datetime.utcnow() - window
        jobs = await self._store.list_jobs(owner_id, job_type, TERMINAL_STATUSES, updated_since=since)
        return next((job for job in jobs if matcher(job)), None)


def input_references(key: str, entity_id: str) -> JobMatcher:
    """Matcher for jobs whose input points at ``entity_id`` under ``key``."""

    def _match(job: Job) -> bool:
        return job.input.get(key) == entity_id

    return _match
