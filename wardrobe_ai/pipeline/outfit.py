"""Outfit render pipeline: selected wardrobe items -> composite grid -> outfit_render job."""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from wardrobe_ai.config import settings
from wardrobe_ai.db.models import ImageLink, OutfitItem, UserSettings, WardrobeItem
from wardrobe_ai.imaging.grid import generate_clothing_grid
from wardrobe_ai.jobs.client import JobClient
from wardrobe_ai.jobs.errors import NoItemsSelected, PhaseFailed, PrerequisiteMissing
from wardrobe_ai.jobs.models import Job, JobType
from wardrobe_ai.pipeline.base import (
    DraftCleanupPolicy,
    Phase,
    PipelineContext,
    PreprocessingPipeline,
)
from wardrobe_ai.storage.ttl_cache import TTLCache, composite_cache

logger = logging.getLogger(__name__)

PRIMARY_IMAGE_TYPE = "product_shot"
MISSING_SORT_ORDER = 999


def select_primary_images(links: Sequence[ImageLink], item_ids: Sequence[str]) -> List[ImageLink]:
    """One image per item, in item order: product shots first, then lowest sort order."""
    by_item: Dict[str, List[ImageLink]] = {}
    for link in links:
        by_item.setdefault(link.wardrobe_item_id, []).append(link)

    selected = []
    for item_id in item_ids:
        candidates = by_item.get(item_id)
        if not candidates:
            continue
        candidates = sorted(
            candidates,
            key=lambda l: (
                0 if l.type == PRIMARY_IMAGE_TYPE else 1,
                l.sort_order if l.sort_order is not None else MISSING_SORT_ORDER,
            ),
        )
        selected.append(candidates[0])
    return selected


def selection_key(items: Sequence[WardrobeItem]) -> str:
    return ",".join(item.id for item in items)


def item_snapshot(item: WardrobeItem, categories: Dict[str, str]) -> Dict[str, Any]:
    """Job input entry for one item, with a text snapshot of its current fields."""
    category = categories.get(item.category_id, "") if item.category_id else ""
    return {
        "category": category,
        "category_id": item.category_id,
        "subcategory_id": item.subcategory_id,
        "wardrobe_item_id": item.id,
        "text_snapshot": {
            "title": item.title or "",
            "description": item.description or "",
            "brand": item.brand or "",
            "color_primary": item.color_primary or "",
            "category": category,
            "category_id": item.category_id,
            "subcategory_id": item.subcategory_id,
        },
    }


class OutfitRenderPipeline(PreprocessingPipeline):
    """Save the outfit, build the item grid, submit ``outfit_render``.

    Phases: persist_draft -> resolve_prerequisites -> acquire_assets ->
    composite -> upload_composite -> submit. The three image phases are
    skipped when a composite for the same selection was uploaded recently.
    """

    job_type = JobType.OUTFIT_RENDER
    entity_input_key = "outfit_id"

    def __init__(
        self,
        client: JobClient,
        repository,
        assets,
        items: Sequence[WardrobeItem],
        categories: Optional[Dict[str, str]] = None,
        cache: Optional[TTLCache[str]] = None,
        title: str = "Generated Outfit",
        cleanup_policy: Optional[DraftCleanupPolicy] = None,
    ):
        self.client = client
        self.repository = repository
        self.assets = assets
        self.items = list(items)
        self.categories = categories or {}
        self.cache = composite_cache if cache is None else cache
        self.title = title
        super().__init__(
            [
                Phase("persist_draft", 10, self._persist_draft,
                      "Failed to save outfit", "Saving outfit..."),
                Phase("resolve_prerequisites", 10, self._resolve_prerequisites,
                      "Failed to load your settings", "Preparing generation..."),
                Phase("acquire_assets", 20, self._acquire_assets,
                      "Failed to load item images", f"Preparing {len(self.items)} items...",
                      skip_if=self._composite_ready),
                Phase("composite", 10, self._composite,
                      "Failed to create the outfit grid image", "Creating item grid...",
                      skip_if=self._composite_ready),
                Phase("upload_composite", 10, self._upload_composite,
                      "Failed to upload grid image", "Uploading grid image...",
                      skip_if=self._composite_ready),
                Phase("submit", 0, self._submit,
                      "Failed to start AI generation", "Generating outfit image...",
                      requires_draft=True),
            ],
            cleanup_policy,
        )

    async def _persist_draft(self, ctx: PipelineContext) -> None:
        if not self.items:
            raise NoItemsSelected()
        outfit_items = [
            OutfitItem(wardrobe_item_id=item.id, category_id=item.category_id, position=i)
            for i, item in enumerate(self.items)
        ]
        ctx.draft_id = await self.repository.save_outfit(
            ctx.owner_id, self.title, outfit_items, notes="AI-generated outfit"
        )
        logger.info("Saved outfit draft %s with %d items", ctx.draft_id, len(outfit_items))

    async def _resolve_prerequisites(self, ctx: PipelineContext) -> None:
        user_settings: Optional[UserSettings] = await self.repository.get_user_settings(ctx.owner_id)
        if user_settings is None or not user_settings.body_shot_image_id:
            raise PrerequisiteMissing("Please upload a body photo in settings before generating outfits")
        ctx.values["user_settings"] = user_settings

    def _composite_ready(self, ctx: PipelineContext) -> bool:
        if "composite_key" in ctx.values:
            return True
        cached = self.cache.get(selection_key(self.items))
        if cached:
            logger.info("Reusing uploaded grid %s", cached)
            ctx.values["composite_key"] = cached
            return True
        return False

    async def _acquire_assets(self, ctx: PipelineContext) -> None:
        item_ids = [item.id for item in self.items]
        links = await self.repository.get_item_image_links(item_ids)
        primary = select_primary_images(links, item_ids)
        if not primary:
            raise PhaseFailed("acquire_assets", "No images found for selected items")

        blobs = []
        for link in primary:
            url = self.assets.public_url(link.storage_key)
            try:
                blobs.append(await self.assets.download(url))
            except Exception as e:
                raise PhaseFailed("acquire_assets", f"Failed to download image {link.image_id}", e) from e
        ctx.values["image_blobs"] = blobs
        logger.info("Downloaded %d item images", len(blobs))

    async def _composite(self, ctx: PipelineContext) -> None:
        loop = asyncio.get_running_loop()
        ctx.values["composite"] = await loop.run_in_executor(
            None, generate_clothing_grid, ctx.values["image_blobs"]
        )

    async def _upload_composite(self, ctx: PipelineContext) -> None:
        key = await self.assets.upload(
            ctx.owner_id,
            ctx.values["composite"],
            "ai/stacked",
            filename=f"grid-{int(time.time() * 1000)}.jpg",
        )
        ctx.values["composite_key"] = key
        self.cache.set(selection_key(self.items), key)

    async def _submit(self, ctx: PipelineContext) -> None:
        user_settings: UserSettings = ctx.values["user_settings"]
        ctx.job = await self.client.submit(
            ctx.owner_id,
            self.job_type,
            {
                "user_id": ctx.owner_id,
                "outfit_id": ctx.draft_id,
                "selected": [item_snapshot(item, self.categories) for item in self.items],
                "stacked_image_id": ctx.values["composite_key"],
                "body_shot_image_id": user_settings.body_shot_image_id,
                "model_preference": user_settings.ai_model_preference or settings.default_model_preference,
                "settings": {
                    "items_count": len(self.items),
                    "used_client_stacking": True,
                },
            },
        )

    async def archive_draft(self, draft_id: str) -> bool:
        await self.repository.archive_outfit(draft_id)
        return True

    async def follow_up(self, ctx: PipelineContext, job: Job, result: Dict[str, Any]) -> None:
        if ctx.draft_id:
            ctx.values["entity"] = await self.repository.get_outfit(ctx.draft_id)
