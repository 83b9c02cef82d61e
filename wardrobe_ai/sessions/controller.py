"""Generation session controller.

Owns the one-job-in-flight-per-entity rule and drives a session through
preprocessing, trigger and polling, then turns the terminal outcome into
listener callbacks. Every error is caught here; callers get a
``SessionResult`` and never an exception, except the immediate rejection
of a second session for a busy entity.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from wardrobe_ai.jobs.client import JobClient, classify_error, input_references
from wardrobe_ai.jobs.errors import GenerationCancelled, GenerationError, SessionAlreadyActive
from wardrobe_ai.jobs.models import ErrorKind, Job, JobType
from wardrobe_ai.jobs.polling import (
    CancelToken,
    PollingEngine,
    PollOutcome,
    PollSchedule,
    PollState,
    schedule_for,
)
from wardrobe_ai.jobs.results import extract_result
from wardrobe_ai.pipeline.base import PipelineContext, PreprocessingPipeline
from wardrobe_ai.sessions.state import (
    Errored,
    FailureKind,
    GenerationSession,
    JobFailed,
    JobSubmitted,
    JobSucceeded,
    PhaseStarted,
    PollProgressed,
    PollTimedOut,
    StopRequested,
)

logger = logging.getLogger(__name__)

# Progress split: preprocessing fills 0-60, trigger 65, polling up to 95.
PREPROCESS_SHARE = 60
TRIGGERED_PROGRESS = 65
POLLING_SHARE = 30

SUBJECT_LABELS = {
    JobType.OUTFIT_RENDER: "this outfit",
    JobType.OUTFIT_MANNEQUIN: "this outfit",
    JobType.HEADSHOT_GENERATE: "this headshot",
    JobType.BODY_SHOT_GENERATE: "this studio model",
    JobType.WARDROBE_ITEM_GENERATE: "this item image",
}

GENERIC_FAILURE_MESSAGE = "Generation failed. Please try again later."
TIMEOUT_MESSAGE = (
    "Generation is still in progress. You can check back later to see when it's ready."
)


def policy_block_message(job_type: JobType) -> str:
    subject = SUBJECT_LABELS.get(job_type, "this image")
    return (
        f"The image provider could not generate {subject} because it conflicts with "
        "safety policy. No credits were charged. Try a different photo or items."
    )


class SessionStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    POLICY_BLOCKED = "policy_blocked"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class SessionResult:
    status: SessionStatus
    target_entity_id: str
    job_type: JobType
    message: str = ""
    job_id: Optional[str] = None
    draft_id: Optional[str] = None
    phase: Optional[str] = None
    retryable: bool = False
    result: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == SessionStatus.SUCCEEDED


class SessionListener:
    """UI side effects. Override what the screen needs; defaults do nothing."""

    def on_progress(self, session: GenerationSession, message: str) -> None:
        pass

    def on_succeeded(self, session: GenerationSession, result: SessionResult) -> None:
        pass

    def on_failed(self, session: GenerationSession, result: SessionResult) -> None:
        pass

    def on_policy_blocked(self, session: GenerationSession, result: SessionResult) -> None:
        pass

    def on_timed_out(self, session: GenerationSession, result: SessionResult) -> None:
        pass

    def on_cancelled(self, session: GenerationSession, result: SessionResult) -> None:
        pass


class SessionGuard:
    """At most one active session per target entity."""

    def __init__(self):
        self._active: Dict[str, GenerationSession] = {}

    def acquire(self, session: GenerationSession) -> None:
        self.claim(session.target_entity_id, session)

    def claim(self, key: str, session: GenerationSession) -> None:
        """Hold ``key`` for ``session``, e.g. the draft an outfit session just saved."""
        holder = self._active.get(key)
        if holder is not None and holder is not session:
            raise SessionAlreadyActive(key)
        self._active[key] = session

    def release(self, target_entity_id: str) -> None:
        self._active.pop(target_entity_id, None)

    def is_active(self, target_entity_id: str) -> bool:
        return target_entity_id in self._active

    def get(self, target_entity_id: str) -> Optional[GenerationSession]:
        return self._active.get(target_entity_id)


class GenerationSessionController:
    def __init__(
        self,
        client: JobClient,
        engine: PollingEngine,
        listener: Optional[SessionListener] = None,
        guard: Optional[SessionGuard] = None,
    ):
        self.client = client
        self.engine = engine
        self.listener = listener or SessionListener()
        self.guard = guard or SessionGuard()
        self._tokens: Dict[str, CancelToken] = {}

    def is_generating(self, target_entity_id: str) -> bool:
        return self.guard.is_active(target_entity_id)

    def session(self, target_entity_id: str) -> Optional[GenerationSession]:
        return self.guard.get(target_entity_id)

    def cancel(self, target_entity_id: str) -> bool:
        """Stop watching the entity's job. The remote job keeps running."""
        token = self._tokens.get(target_entity_id)
        if token is None:
            return False
        token.cancel()
        return True

    async def generate(
        self,
        target_entity_id: str,
        pipeline: PreprocessingPipeline,
        ctx: PipelineContext,
    ) -> SessionResult:
        """Run preprocessing, submit, trigger and poll for one entity.

        Raises SessionAlreadyActive if the entity already has a session;
        everything else ends up in the returned SessionResult.
        """
        session = GenerationSession(target_entity_id, pipeline.job_type)
        token = CancelToken()
        keys: List[str] = []
        # Guard goes up before the first await and comes down on every exit.
        self._hold(target_entity_id, session, token, keys)
        try:
            if pipeline.entity_input_key and ctx.draft_id:
                # A rerun watches the saved draft's job; resume() keys by the draft.
                self._hold(ctx.draft_id, session, token, keys)
            ctx.cancel_token = token
            return await self._generate(session, pipeline, ctx, token, keys)
        except SessionAlreadyActive:
            raise
        except Exception as e:
            logger.exception("Generation for %s failed unexpectedly", target_entity_id)
            return self._fail(session, FailureKind.UNEXPECTED, str(e) or GENERIC_FAILURE_MESSAGE,
                              ctx=ctx, retryable=True)
        finally:
            ctx.cancel_token = None
            for key in keys:
                self._tokens.pop(key, None)
                self.guard.release(key)

    async def resume(
        self,
        target_entity_id: str,
        owner_id: str,
        job_type: JobType,
        entity_input_key: Optional[str] = None,
        pipeline: Optional[PreprocessingPipeline] = None,
        ctx: Optional[PipelineContext] = None,
    ) -> Optional[SessionResult]:
        """Pick up a job submitted in an earlier session for this entity.

        Looks for a queued/running job whose input references the entity
        and watches it; a job that finished within the last minute is
        reported straight away. Returns None when there is nothing to resume.
        """
        session = GenerationSession(target_entity_id, job_type)
        self.guard.acquire(session)
        token = CancelToken()
        self._tokens[target_entity_id] = token
        ctx = ctx or PipelineContext(owner_id=owner_id)
        try:
            matcher = (
                input_references(entity_input_key, target_entity_id)
                if entity_input_key else (lambda job: True)
            )
            job = await self.client.find_active_job(owner_id, job_type, matcher)
            if job is None:
                job = await self.client.find_recent_job(owner_id, job_type, matcher)
            if job is None:
                return None

            logger.info("Resuming %s job %s for %s", job_type.value, job.id, target_entity_id)
            ctx.job = job
            if entity_input_key and ctx.draft_id is None:
                ctx.draft_id = target_entity_id
            session.apply(JobSubmitted(job.id, progress=TRIGGERED_PROGRESS))
            if job.is_terminal:
                outcome = PollOutcome(PollState(job.status.value), job.id, job)
            else:
                schedule = pipeline.poll_schedule() if pipeline else schedule_for(job_type)
                outcome = await self._watch(session, job.id, schedule, token)
            return await self._conclude(session, pipeline, ctx, outcome)
        except Exception as e:
            logger.exception("Resuming generation for %s failed", target_entity_id)
            return self._fail(session, FailureKind.UNEXPECTED, str(e) or GENERIC_FAILURE_MESSAGE,
                              ctx=ctx, retryable=True)
        finally:
            self._tokens.pop(target_entity_id, None)
            self.guard.release(target_entity_id)

    async def _generate(
        self,
        session: GenerationSession,
        pipeline: PreprocessingPipeline,
        ctx: PipelineContext,
        token: CancelToken,
        keys: List[str],
    ) -> SessionResult:
        total = pipeline.total_weight or 1

        def on_progress(phase: str, percent: int, message: str) -> None:
            if pipeline.entity_input_key and ctx.draft_id:
                self._hold(ctx.draft_id, session, token, keys)
            if ctx.job is not None:
                return
            session.apply(PhaseStarted(phase, progress=percent * PREPROCESS_SHARE // total))
            self.listener.on_progress(session, message)

        try:
            job = await pipeline.run(ctx, on_progress)
        except GenerationCancelled as e:
            session.apply(StopRequested())
            session_result = SessionResult(
                SessionStatus.CANCELLED,
                target_entity_id=session.target_entity_id,
                job_type=session.job_type,
                message="Generation cancelled",
                draft_id=ctx.draft_id,
                phase=e.phase,
            )
            logger.info("Generation for %s cancelled before %s", session.target_entity_id, e.phase)
            self._notify(self.listener.on_cancelled, session, session_result)
            return session_result
        except SessionAlreadyActive:
            raise
        except GenerationError as e:
            kind = FailureKind.PHASE if e.retryable else FailureKind.PREREQUISITE
            return self._fail(session, kind, e.message, ctx=ctx,
                              phase=getattr(e, "phase", None), retryable=e.retryable)

        session.apply(JobSubmitted(job.id, progress=PREPROCESS_SHARE))
        self.listener.on_progress(session, "Job submitted")

        # The runner may hold the request open until the job is done, so
        # polling starts without waiting for its answer.
        await self.client.dispatch_trigger(job.id)
        session.apply(PollProgressed(TRIGGERED_PROGRESS))

        outcome = await self._watch(session, job.id, pipeline.poll_schedule(), token)
        return await self._conclude(session, pipeline, ctx, outcome)

    async def _watch(
        self,
        session: GenerationSession,
        job_id: str,
        schedule: PollSchedule,
        token: CancelToken,
    ) -> PollOutcome:
        def on_attempt(attempt: int, max_attempts: int, job: Optional[Job]) -> None:
            progress = TRIGGERED_PROGRESS + POLLING_SHARE * attempt // max_attempts
            session.apply(PollProgressed(progress))
            self.listener.on_progress(session, "Generating...")

        return await self.engine.poll(job_id, schedule, token, on_attempt)

    async def _conclude(
        self,
        session: GenerationSession,
        pipeline: Optional[PreprocessingPipeline],
        ctx: PipelineContext,
        outcome: PollOutcome,
    ) -> SessionResult:
        base = dict(
            target_entity_id=session.target_entity_id,
            job_type=session.job_type,
            job_id=outcome.job_id,
            draft_id=ctx.draft_id,
        )

        if outcome.state == PollState.SUCCEEDED:
            result = extract_result(outcome.job)
            if pipeline is not None:
                try:
                    await pipeline.follow_up(ctx, outcome.job, result)
                except Exception as e:
                    # The job did succeed; a stale entity view is not a failure.
                    logger.warning("Follow-up after job %s failed: %s", outcome.job_id, e)
            session.apply(JobSucceeded(result))
            ctx.forget_job()
            session_result = SessionResult(SessionStatus.SUCCEEDED, result=result,
                                           message="Generation complete", **base)
            logger.info("Job %s for %s succeeded", outcome.job_id, session.target_entity_id)
            self._notify(self.listener.on_succeeded, session, session_result)
            return session_result

        if outcome.state == PollState.FAILED:
            error_text = outcome.job.error if outcome.job else None
            ctx.forget_job()
            if classify_error(error_text) == ErrorKind.POLICY_BLOCKED:
                message = policy_block_message(session.job_type)
                session.apply(JobFailed(FailureKind.POLICY_BLOCKED, message))
                session_result = SessionResult(SessionStatus.POLICY_BLOCKED, message=message,
                                               retryable=False, **base)
                logger.info("Job %s blocked by provider policy", outcome.job_id)
                self._notify(self.listener.on_policy_blocked, session, session_result)
                return session_result

            message = error_text or GENERIC_FAILURE_MESSAGE
            session.apply(JobFailed(FailureKind.JOB_FAILED, message))
            session_result = SessionResult(SessionStatus.FAILED, message=message,
                                           retryable=True, **base)
            logger.info("Job %s failed: %s", outcome.job_id, message)
            self._notify(self.listener.on_failed, session, session_result)
            return session_result

        if outcome.state == PollState.TIMED_OUT:
            # ctx keeps the job: running the same context again re-watches it
            # instead of submitting a duplicate.
            session.apply(PollTimedOut())
            session_result = SessionResult(SessionStatus.TIMED_OUT, message=TIMEOUT_MESSAGE,
                                           retryable=False, **base)
            self._notify(self.listener.on_timed_out, session, session_result)
            return session_result

        session.apply(StopRequested())
        session_result = SessionResult(SessionStatus.CANCELLED, message="Stopped watching generation",
                                       retryable=False, **base)
        self._notify(self.listener.on_cancelled, session, session_result)
        return session_result

    def _fail(
        self,
        session: GenerationSession,
        kind: FailureKind,
        message: str,
        ctx: Optional[PipelineContext] = None,
        phase: Optional[str] = None,
        retryable: bool = True,
    ) -> SessionResult:
        if not session.is_terminal:
            session.apply(Errored(kind, message, phase=phase))
        session_result = SessionResult(
            SessionStatus.FAILED,
            target_entity_id=session.target_entity_id,
            job_type=session.job_type,
            message=message,
            job_id=session.job_id,
            draft_id=ctx.draft_id if ctx else None,
            phase=phase,
            retryable=retryable,
        )
        self._notify(self.listener.on_failed, session, session_result)
        return session_result

    def _hold(self, key: str, session: GenerationSession, token: CancelToken, keys: List[str]) -> None:
        if key in keys:
            return
        self.guard.claim(key, session)
        self._tokens[key] = token
        keys.append(key)

    def _notify(
        self,
        callback: Callable[[GenerationSession, SessionResult], None],
        session: GenerationSession,
        session_result: SessionResult,
    ) -> None:
        # The outcome is settled by now; a broken listener must not turn it into another one.
        try:
            callback(session, session_result)
        except Exception:
            logger.exception("Listener %s failed for %s", callback.__name__, session.target_entity_id)
