"""Wardrobe item pipeline: new item photo -> product shot and suggested details."""

import time
from typing import Any, Dict, Optional

from wardrobe_ai.jobs.client import JobClient
from wardrobe_ai.jobs.errors import NoItemsSelected
from wardrobe_ai.jobs.models import Job, JobType
from wardrobe_ai.pipeline.base import (
    DraftCleanupPolicy,
    Phase,
    PipelineContext,
    PreprocessingPipeline,
)


class WardrobeItemPipeline(PreprocessingPipeline):
    """Create a placeholder item, attach the photo, submit ``wardrobe_item_generate``.

    One job produces both the product shot and the text fields (title,
    description, attributes) for the item.
    """

    job_type = JobType.WARDROBE_ITEM_GENERATE
    entity_input_key = "item_id"

    def __init__(
        self,
        client: JobClient,
        repository,
        assets,
        wardrobe_id: str,
        photo: Optional[bytes],
        cleanup_policy: Optional[DraftCleanupPolicy] = None,
    ):
        self.client = client
        self.repository = repository
        self.assets = assets
        self.wardrobe_id = wardrobe_id
        self.photo = photo
        super().__init__(
            [
                Phase("persist_draft", 10, self._persist_draft,
                      "Failed to create item", "Saving item..."),
                Phase("upload_photo", 30, self._upload_photo,
                      "Failed to upload photo", "Uploading photo..."),
                Phase("link_image", 10, self._link_image,
                      "Failed to attach photo to item", "Preparing item..."),
                Phase("submit", 0, self._submit,
                      "Failed to start item generation", "Analysing item...",
                      requires_draft=True),
            ],
            cleanup_policy,
        )

    async def _persist_draft(self, ctx: PipelineContext) -> None:
        if not self.photo:
            raise NoItemsSelected("Please select at least one image")
        ctx.draft_id = await self.repository.create_wardrobe_item(ctx.owner_id, self.wardrobe_id)

    async def _upload_photo(self, ctx: PipelineContext) -> None:
        ctx.values["photo_key"] = await self.assets.upload(
            ctx.owner_id, self.photo, "wardrobe", filename=f"item-{int(time.time() * 1000)}.jpg"
        )

    async def _link_image(self, ctx: PipelineContext) -> None:
        image_id = await self.repository.create_image_record(ctx.owner_id, ctx.values["photo_key"])
        await self.repository.link_item_image(ctx.draft_id, image_id)
        ctx.values["source_image_id"] = image_id

    async def _submit(self, ctx: PipelineContext) -> None:
        ctx.job = await self.client.submit(
            ctx.owner_id,
            self.job_type,
            {"item_id": ctx.draft_id, "source_image_id": ctx.values["source_image_id"]},
        )

    async def archive_draft(self, draft_id: str) -> bool:
        await self.repository.archive_wardrobe_item(draft_id)
        return True

    async def follow_up(self, ctx: PipelineContext, job: Job, result: Dict[str, Any]) -> None:
        if ctx.draft_id:
            ctx.values["entity"] = await self.repository.get_wardrobe_item(ctx.draft_id)
