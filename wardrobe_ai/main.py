"""Wardrobe generation orchestrator - wiring and the five generation entry points."""

import logging
from typing import Dict, Optional, Sequence

from wardrobe_ai.db.models import WardrobeItem
from wardrobe_ai.jobs.client import JobClient
from wardrobe_ai.jobs.models import JobType
from wardrobe_ai.jobs.polling import PollingEngine
from wardrobe_ai.jobs.store import JobStore
from wardrobe_ai.logging_config import setup_logging
from wardrobe_ai.pipeline.base import PipelineContext, PreprocessingPipeline
from wardrobe_ai.pipeline.outfit import OutfitRenderPipeline
from wardrobe_ai.pipeline.profile import BodyShotPipeline, HeadshotPipeline
from wardrobe_ai.pipeline.try_on import TryOnPipeline
from wardrobe_ai.pipeline.wardrobe_item import WardrobeItemPipeline
from wardrobe_ai.sessions.controller import (
    GenerationSessionController,
    SessionListener,
    SessionResult,
)
from wardrobe_ai.storage.ttl_cache import TTLCache, composite_cache

logger = logging.getLogger(__name__)


class GenerationService:
    """One object per app process. Screens call these methods and nothing lower."""

    def __init__(
        self,
        store: JobStore,
        repository,
        assets,
        listener: Optional[SessionListener] = None,
        engine: Optional[PollingEngine] = None,
        cache: Optional[TTLCache[str]] = None,
    ):
        self.client = JobClient(store)
        self.engine = engine or PollingEngine(self.client)
        self.repository = repository
        self.assets = assets
        self.cache = composite_cache if cache is None else cache
        self.controller = GenerationSessionController(self.client, self.engine, listener)

    def is_generating(self, target_entity_id: str) -> bool:
        return self.controller.is_generating(target_entity_id)

    def cancel(self, target_entity_id: str) -> bool:
        return self.controller.cancel(target_entity_id)

    async def _run(
        self, target_entity_id: str, owner_id: str, pipeline: PreprocessingPipeline,
        ctx: Optional[PipelineContext],
    ) -> SessionResult:
        return await self.controller.generate(
            target_entity_id, pipeline, ctx or PipelineContext(owner_id=owner_id)
        )

    async def render_outfit(
        self,
        owner_id: str,
        items: Sequence[WardrobeItem],
        categories: Optional[Dict[str, str]] = None,
        title: str = "Generated Outfit",
        ctx: Optional[PipelineContext] = None,
    ) -> SessionResult:
        """Outfit creation screen. A first render is keyed by the item selection
        since the outfit row does not exist yet; a rerun of a saved draft is
        keyed by the outfit id, the same key resume() uses."""
        pipeline = OutfitRenderPipeline(
            self.client, self.repository, self.assets, items,
            categories=categories or await self.repository.get_category_names(),
            cache=self.cache, title=title,
        )
        if ctx is not None and ctx.draft_id:
            target = ctx.draft_id
        else:
            target = "selection:" + ",".join(item.id for item in items)
        return await self._run(target, owner_id, pipeline, ctx)

    async def try_on(self, owner_id: str, outfit_id: str, ctx: Optional[PipelineContext] = None) -> SessionResult:
        pipeline = TryOnPipeline(self.client, self.engine, self.repository, outfit_id)
        return await self._run(outfit_id, owner_id, pipeline, ctx)

    async def generate_headshot(
        self,
        owner_id: str,
        photo: Optional[bytes],
        hair_style: Optional[str] = None,
        makeup_style: Optional[str] = None,
        ctx: Optional[PipelineContext] = None,
    ) -> SessionResult:
        pipeline = HeadshotPipeline(self.client, self.repository, self.assets, photo, hair_style, makeup_style)
        return await self._run(f"headshot:{owner_id}", owner_id, pipeline, ctx)

    async def generate_body_shot(
        self,
        owner_id: str,
        photo: Optional[bytes],
        headshot_image_id: Optional[str] = None,
        ctx: Optional[PipelineContext] = None,
    ) -> SessionResult:
        pipeline = BodyShotPipeline(self.client, self.repository, self.assets, photo, headshot_image_id)
        return await self._run(f"body_shot:{owner_id}", owner_id, pipeline, ctx)

    async def generate_wardrobe_item(
        self,
        owner_id: str,
        wardrobe_id: str,
        photo: Optional[bytes],
        ctx: Optional[PipelineContext] = None,
    ) -> SessionResult:
        pipeline = WardrobeItemPipeline(self.client, self.repository, self.assets, wardrobe_id, photo)
        return await self._run(f"wardrobe:{wardrobe_id}", owner_id, pipeline, ctx)

    async def resume(
        self, target_entity_id: str, owner_id: str, job_type: JobType, entity_input_key: Optional[str] = None
    ) -> Optional[SessionResult]:
        """Reattach to a job submitted by an earlier session, e.g. after a timeout."""
        return await self.controller.resume(target_entity_id, owner_id, job_type, entity_input_key)


def create_service(listener: Optional[SessionListener] = None) -> GenerationService:
    """Production wiring: Supabase tables, storage and the job runner."""
    from wardrobe_ai.db.repositories import SupabaseRepository
    from wardrobe_ai.jobs.supabase_store import SupabaseJobStore
    from wardrobe_ai.storage.assets import SupabaseAssetStore

    setup_logging()
    service = GenerationService(
        SupabaseJobStore(),
        SupabaseRepository(),
        SupabaseAssetStore(),
        listener=listener,
    )
    logger.info("Generation service ready")
    return service
