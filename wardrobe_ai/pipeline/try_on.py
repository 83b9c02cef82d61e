"""Try-on pipeline: render someone else's outfit on the current user's body model."""

import logging
from typing import Any, Dict, Optional

from wardrobe_ai.config import settings
from wardrobe_ai.db.models import OutfitItem, UserSettings
from wardrobe_ai.jobs.client import JobClient, render_item_limit
from wardrobe_ai.jobs.errors import GenerationCancelled, PhaseFailed, PrerequisiteMissing
from wardrobe_ai.jobs.models import Job, JobType
from wardrobe_ai.jobs.polling import PollingEngine, PollSchedule, PollState, schedule_for
from wardrobe_ai.pipeline.base import (
    DraftCleanupPolicy,
    Phase,
    PipelineContext,
    PreprocessingPipeline,
)

logger = logging.getLogger(__name__)


class TryOnPipeline(PreprocessingPipeline):
    """Copy the outfit into a private draft and submit ``outfit_render`` for it.

    Outfits with more items than the user's render model accepts first go
    through an ``outfit_mannequin`` job whose image replaces the item list.
    A failed try-on archives its draft copy.
    """

    job_type = JobType.OUTFIT_RENDER
    entity_input_key = "outfit_id"
    cleanup_policy = DraftCleanupPolicy.ARCHIVE

    def __init__(
        self,
        client: JobClient,
        engine: PollingEngine,
        repository,
        source_outfit_id: str,
        cleanup_policy: Optional[DraftCleanupPolicy] = None,
    ):
        self.client = client
        self.engine = engine
        self.repository = repository
        self.source_outfit_id = source_outfit_id
        super().__init__(
            [
                Phase("persist_draft", 10, self._persist_draft,
                      "Failed to save outfit", "Saving outfit..."),
                Phase("resolve_prerequisites", 10, self._resolve_prerequisites,
                      "Failed to load your settings", "Preparing try-on..."),
                Phase("resolve_items", 20, self._resolve_items,
                      "Failed to access outfit items. Please try again.", "Collecting items..."),
                Phase("mannequin", 20, self._mannequin,
                      "Mannequin generation failed. Please try again.", "Preparing outfit...",
                      skip_if=self._within_render_limit),
                Phase("submit", 0, self._submit,
                      "Failed to start render job", "Rendering outfit...",
                      requires_draft=True),
            ],
            cleanup_policy,
        )

    async def _persist_draft(self, ctx: PipelineContext) -> None:
        source = await self.repository.get_outfit(self.source_outfit_id)
        if source is None or not source.items:
            raise PhaseFailed("persist_draft", "Outfit not found or has no items")
        items = [
            OutfitItem(wardrobe_item_id=i.wardrobe_item_id, category_id=i.category_id, position=i.position)
            for i in source.items
        ]
        ctx.values["source_items"] = items
        ctx.draft_id = await self.repository.save_outfit(
            ctx.owner_id, f"Try on: {source.title or 'Outfit'}", items, visibility="private"
        )

    async def _resolve_prerequisites(self, ctx: PipelineContext) -> None:
        user_settings: Optional[UserSettings] = await self.repository.get_user_settings(ctx.owner_id)
        if user_settings is None or not user_settings.body_shot_image_id or not user_settings.headshot_image_id:
            raise PrerequisiteMissing(
                "Please upload a body photo and generate a headshot before trying on outfits."
            )
        ctx.values["user_settings"] = user_settings

    async def _resolve_items(self, ctx: PipelineContext) -> None:
        source_items = ctx.values["source_items"]
        wanted = [i.wardrobe_item_id for i in source_items]
        accessible = {item.id: item for item in await self.repository.get_wardrobe_items(wanted)}
        if not accessible:
            raise PhaseFailed(
                "resolve_items",
                "Could not access outfit items. The outfit may contain items from users you don't follow.",
            )
        if len(accessible) < len(wanted):
            logger.warning("Only %d of %d wardrobe items accessible", len(accessible), len(wanted))

        categories = await self.repository.get_category_names()
        selected = []
        for outfit_item in source_items:
            item = accessible.get(outfit_item.wardrobe_item_id)
            category_id = (item.category_id if item else None) or outfit_item.category_id
            selected.append({
                "category": categories.get(category_id, "") if category_id else "",
                "wardrobe_item_id": outfit_item.wardrobe_item_id,
            })
        ctx.values["selected"] = selected

    def _model_preference(self, ctx: PipelineContext) -> str:
        user_settings: UserSettings = ctx.values["user_settings"]
        return (
            user_settings.ai_model_outfit_render
            or user_settings.ai_model_preference
            or settings.default_model_preference
        )

    def _within_render_limit(self, ctx: PipelineContext) -> bool:
        return len(ctx.values["selected"]) <= render_item_limit(self._model_preference(ctx))

    async def _mannequin(self, ctx: PipelineContext) -> None:
        job, _ = await self.client.submit_and_trigger(
            ctx.owner_id,
            JobType.OUTFIT_MANNEQUIN,
            {"user_id": ctx.owner_id, "outfit_id": ctx.draft_id, "selected": ctx.values["selected"]},
        )
        outcome = await self.engine.poll(job.id, schedule_for(JobType.OUTFIT_MANNEQUIN), ctx.cancel_token)
        if outcome.state == PollState.CANCELLED:
            raise GenerationCancelled("mannequin")
        mannequin_id = (outcome.job.result or {}).get("mannequin_image_id") if outcome.job else None
        if outcome.state != PollState.SUCCEEDED or not mannequin_id:
            if outcome.state == PollState.FAILED and outcome.job and outcome.job.error:
                raise PhaseFailed("mannequin", outcome.job.error)
            raise PhaseFailed("mannequin", "Mannequin generation timed out. Please try again.")
        ctx.values["mannequin_image_id"] = mannequin_id

    async def _submit(self, ctx: PipelineContext) -> None:
        job_input: Dict[str, Any] = {
            "user_id": ctx.owner_id,
            "outfit_id": ctx.draft_id,
            "selected": ctx.values["selected"],
        }
        if ctx.values.get("mannequin_image_id"):
            job_input["mannequin_image_id"] = ctx.values["mannequin_image_id"]
        ctx.job = await self.client.submit(ctx.owner_id, self.job_type, job_input)

    def poll_schedule(self) -> PollSchedule:
        return schedule_for(self.job_type, try_on=True)

    async def archive_draft(self, draft_id: str) -> bool:
        await self.repository.archive_outfit(draft_id)
        return True

    async def follow_up(self, ctx: PipelineContext, job: Job, result: Dict[str, Any]) -> None:
        if ctx.draft_id:
            ctx.values["entity"] = await self.repository.get_outfit(ctx.draft_id)
