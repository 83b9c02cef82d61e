"""Job polling engine.

Polls a job until it reaches a terminal status, the attempt budget runs
out, or the caller cancels. A client-side timeout says nothing about the
remote job, which keeps running; after the budget is spent the engine
makes one final check before reporting a timeout.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

from wardrobe_ai.config import settings
from wardrobe_ai.jobs.client import JobClient
from wardrobe_ai.jobs.errors import AlreadyPolling, GenerationError
from wardrobe_ai.jobs.models import Job, JobStatus, JobType

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]
# fn(attempt, max_attempts, job_or_none)
AttemptCallback = Callable[[int, int, Optional[Job]], None]


class PollState(str, Enum):
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class PollOutcome:
    state: PollState
    job_id: str
    job: Optional[Job] = None
    attempts: int = 0
    final_check: bool = False
    last_error: Optional[str] = None


class CancelToken:
    """Caller-side stop signal. Stops local polling only."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class PollSchedule:
    """How many fetches to make and how long to wait between them.

    ``delays()`` has one entry per attempt: the wait after that attempt.
    The last entry is the pause before the final check. Their sum never
    exceeds ``max_attempts * interval_ms``.
    """

    def __init__(
        self,
        max_attempts: int,
        interval_ms: int = 2000,
        backoff_factor: float = 1.0,
        initial_ms: Optional[int] = None,
        max_interval_ms: Optional[int] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if interval_ms < 0:
            raise ValueError("interval_ms must not be negative")
        self.max_attempts = max_attempts
        self.interval_ms = interval_ms
        self.backoff_factor = backoff_factor
        self.initial_ms = interval_ms if initial_ms is None else initial_ms
        self.max_interval_ms = max_interval_ms

    @classmethod
    def fixed(cls, max_attempts: int, interval_ms: int = 2000) -> "PollSchedule":
        return cls(max_attempts, interval_ms)

    @classmethod
    def exponential(
        cls,
        max_attempts: int,
        interval_ms: int = 2000,
        factor: float = 2.0,
        max_interval_ms: int = 10000,
    ) -> "PollSchedule":
        return cls(
            max_attempts,
            interval_ms,
            backoff_factor=factor,
            initial_ms=max(1, interval_ms // 4),
            max_interval_ms=max_interval_ms,
        )

    @property
    def budget_ms(self) -> int:
        return self.max_attempts * self.interval_ms

    def delays(self) -> List[float]:
        if self.backoff_factor == 1.0:
            return [float(self.interval_ms)] * self.max_attempts

        raw: List[float] = []
        step = float(self.initial_ms)
        for _ in range(self.max_attempts):
            raw.append(min(step, self.max_interval_ms) if self.max_interval_ms else step)
            step *= self.backoff_factor
        total = sum(raw)
        if total <= self.budget_ms:
            return raw
        # Keep the ramp shape but fit the whole schedule into the budget.
        scale = self.budget_ms / total
        return [d * scale for d in raw]


def schedule_for(job_type: JobType, try_on: bool = False) -> PollSchedule:
    """Default schedule per job type. Heavier renders get a larger budget."""
    budgets = {
        JobType.HEADSHOT_GENERATE: settings.max_attempts_headshot,
        JobType.BODY_SHOT_GENERATE: settings.max_attempts_body_shot,
        JobType.WARDROBE_ITEM_GENERATE: settings.max_attempts_wardrobe_item,
        JobType.OUTFIT_RENDER: settings.max_attempts_try_on if try_on else settings.max_attempts_outfit_render,
        JobType.OUTFIT_MANNEQUIN: settings.max_attempts_mannequin,
    }
    max_attempts = budgets.get(job_type, settings.max_attempts_outfit_render)
    if settings.poll_backoff == "exponential":
        return PollSchedule.exponential(
            max_attempts, settings.poll_interval_ms, max_interval_ms=settings.poll_max_interval_ms
        )
    return PollSchedule.fixed(max_attempts, settings.poll_interval_ms)


_OUTCOME_FOR_STATUS = {
    JobStatus.SUCCEEDED: PollState.SUCCEEDED,
    JobStatus.FAILED: PollState.FAILED,
}


class PollingEngine:
    """Job-type agnostic poller shared by every generation flow."""

    def __init__(self, client: JobClient, sleep: Sleeper = asyncio.sleep):
        self._client = client
        self._sleep = sleep
        self._active: Set[str] = set()

    def is_polling(self, job_id: str) -> bool:
        return job_id in self._active

    async def poll(
        self,
        job_id: str,
        schedule: PollSchedule,
        cancel_token: Optional[CancelToken] = None,
        on_attempt: Optional[AttemptCallback] = None,
    ) -> PollOutcome:
        if job_id in self._active:
            raise AlreadyPolling(job_id)
        self._active.add(job_id)
        try:
            return await self._poll(job_id, schedule, cancel_token, on_attempt)
        finally:
            self._active.discard(job_id)

    async def _poll(
        self,
        job_id: str,
        schedule: PollSchedule,
        cancel_token: Optional[CancelToken],
        on_attempt: Optional[AttemptCallback],
    ) -> PollOutcome:
        delays = schedule.delays()
        last_error: Optional[str] = None

        for attempt in range(1, schedule.max_attempts + 1):
            if cancel_token is not None and cancel_token.cancelled:
                return self._cancelled(job_id, attempt - 1, last_error)

            job, error = await self._read(job_id)
            if error:
                last_error = error
            if on_attempt is not None:
                on_attempt(attempt, schedule.max_attempts, job)

            if job is not None and job.is_terminal:
                logger.info("Job %s reached %s on attempt %d/%d",
                            job_id, job.status.value, attempt, schedule.max_attempts)
                return PollOutcome(_OUTCOME_FOR_STATUS[job.status], job_id, job, attempt)

            logger.debug("Job %s attempt %d/%d: %s", job_id, attempt, schedule.max_attempts,
                         job.status.value if job else error)
            if await self._wait(delays[attempt - 1], cancel_token):
                return self._cancelled(job_id, attempt, last_error)

        logger.info("Job %s: attempt budget spent, doing final check", job_id)
        job, error = await self._read(job_id)
        if job is not None and job.is_terminal:
            return PollOutcome(
                _OUTCOME_FOR_STATUS[job.status], job_id, job, schedule.max_attempts, final_check=True
            )
        logger.warning("Job %s still not finished after %d attempts", job_id, schedule.max_attempts)
        return PollOutcome(
            PollState.TIMED_OUT,
            job_id,
            job,
            schedule.max_attempts,
            final_check=True,
            last_error=error or last_error,
        )

    async def _read(self, job_id: str) -> tuple[Optional[Job], Optional[str]]:
        """Fetch once. Read errors are reported, not raised: polling goes on."""
        try:
            return await self._client.fetch(job_id), None
        except GenerationError as e:
            logger.debug("Transient read error for job %s: %s", job_id, e.message)
            return None, e.message

    async def _wait(self, delay_ms: float, cancel_token: Optional[CancelToken]) -> bool:
        """Sleep ``delay_ms``. Returns True when cancelled meanwhile."""
        if cancel_token is None:
            await self._sleep(delay_ms / 1000)
            return False
        if cancel_token.cancelled:
            return True
        sleeper = asyncio.ensure_future(self._sleep(delay_ms / 1000))
        waiter = asyncio.ensure_future(cancel_token.wait())
        _, pending = await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        return cancel_token.cancelled

    def _cancelled(self, job_id: str, attempts: int, last_error: Optional[str]) -> PollOutcome:
        logger.info("Stopped polling job %s after %d attempts", job_id, attempts)
        return PollOutcome(PollState.CANCELLED, job_id, None, attempts, last_error=last_error)
