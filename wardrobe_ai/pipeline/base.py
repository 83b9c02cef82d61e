"""Preprocessing pipeline: the ordered client-side work before a job is submitted.

Phases run strictly one after another, each feeding the next through a
shared ``PipelineContext``. A failing phase aborts the pipeline before
anything is submitted. Completed phases are recorded on the context, so
running the same context again resumes after the last completed phase.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from wardrobe_ai.jobs.errors import GenerationCancelled, GenerationError, PhaseFailed
from wardrobe_ai.jobs.models import Job, JobType
from wardrobe_ai.jobs.polling import CancelToken, PollSchedule, schedule_for

logger = logging.getLogger(__name__)


class DraftCleanupPolicy(str, Enum):
    KEEP = "keep"          # leave the draft entity as is
    ARCHIVE = "archive"    # soft-delete the draft (archived_at)


@dataclass
class PipelineContext:
    owner_id: str
    values: Dict[str, Any] = field(default_factory=dict)
    draft_id: Optional[str] = None
    job: Optional[Job] = None
    completed: List[str] = field(default_factory=list)
    draft_archived: bool = False
    # Set by the session controller for the duration of one run.
    cancel_token: Optional[CancelToken] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.cancelled

    def forget_job(self) -> None:
        """Allow a later run to submit a new job, reusing finished preprocessing."""
        self.job = None
        if SUBMIT_PHASE in self.completed:
            self.completed.remove(SUBMIT_PHASE)


PhaseFn = Callable[[PipelineContext], Awaitable[None]]
# fn(phase_name, percent, message)
ProgressFn = Callable[[str, int, str], None]

PERSIST_PHASE = "persist_draft"
SUBMIT_PHASE = "submit"


@dataclass
class Phase:
    name: str
    weight: int
    run: PhaseFn
    error_message: str
    message: str = ""
    requires_draft: bool = False
    skip_if: Optional[Callable[[PipelineContext], bool]] = None


class PreprocessingPipeline:
    """Base pipeline. Subclasses set ``job_type`` and build their phases."""

    job_type: JobType
    cleanup_policy: DraftCleanupPolicy = DraftCleanupPolicy.KEEP
    # Key in the job input that references the target entity; used to find
    # an already-submitted job again after the session is gone.
    entity_input_key: Optional[str] = None

    def __init__(self, phases: Sequence[Phase], cleanup_policy: Optional[DraftCleanupPolicy] = None):
        self.phases = list(phases)
        if cleanup_policy is not None:
            self.cleanup_policy = cleanup_policy

    @property
    def total_weight(self) -> int:
        return sum(p.weight for p in self.phases)

    async def run(self, ctx: PipelineContext, on_progress: Optional[ProgressFn] = None) -> Job:
        progress = 0
        for phase in self.phases:
            if phase.name in ctx.completed:
                progress += phase.weight
                continue
            if phase.skip_if is not None and phase.skip_if(ctx):
                logger.debug("Skipping phase %s", phase.name)
                ctx.completed.append(phase.name)
                progress += phase.weight
                continue

            # Checked between phases: a cancelled run never reaches submit.
            if ctx.cancelled:
                logger.info("Cancelled before phase %s", phase.name)
                raise GenerationCancelled(phase.name)

            if on_progress is not None:
                on_progress(phase.name, progress, phase.message)

            try:
                if phase.requires_draft and not ctx.draft_id:
                    raise PhaseFailed(phase.name, f"{phase.name} needs a saved draft first")
                await phase.run(ctx)
            except GenerationCancelled:
                # The draft stays; running the same context again resumes here.
                raise
            except GenerationError as e:
                logger.warning("Phase %s failed: %s", phase.name, e.message)
                await self._cleanup(ctx)
                raise
            except Exception as e:
                logger.error("Phase %s failed: %s", phase.name, e)
                await self._cleanup(ctx)
                raise PhaseFailed(phase.name, phase.error_message, e) from e

            ctx.completed.append(phase.name)
            progress += phase.weight

        if ctx.job is None:
            raise PhaseFailed(SUBMIT_PHASE, "Pipeline finished without submitting a job")
        if on_progress is not None:
            on_progress(SUBMIT_PHASE, progress, "Job submitted")
        return ctx.job

    def poll_schedule(self) -> PollSchedule:
        return schedule_for(self.job_type)

    async def archive_draft(self, draft_id: str) -> bool:
        """Soft-delete the draft entity. Returns False when nothing was archived.

        Pipelines whose draft can be archived override this.
        """
        logger.warning("%s has no archivable draft; keeping %s", type(self).__name__, draft_id)
        return False

    async def follow_up(self, ctx: PipelineContext, job: Job, result: Dict[str, Any]) -> None:
        """Entity-specific work after the job succeeded (e.g. refetch the entity)."""
        return None

    async def _cleanup(self, ctx: PipelineContext) -> None:
        if not ctx.draft_id or self.cleanup_policy == DraftCleanupPolicy.KEEP:
            return
        draft_id = ctx.draft_id
        try:
            archived = await self.archive_draft(draft_id)
        except Exception as e:
            # The phase error is what the user sees; the leftover draft stays visible.
            logger.error("Failed to archive draft %s: %s", draft_id, e)
            return
        if not archived:
            return
        logger.info("Archived draft %s after failed preprocessing", draft_id)
        ctx.draft_archived = True
        ctx.draft_id = None
        if PERSIST_PHASE in ctx.completed:
            ctx.completed.remove(PERSIST_PHASE)
