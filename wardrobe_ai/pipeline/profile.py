"""Profile image pipelines: headshot and studio body model generation."""

import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from wardrobe_ai.jobs.client import JobClient
from wardrobe_ai.jobs.errors import NoItemsSelected
from wardrobe_ai.jobs.models import JobType
from wardrobe_ai.pipeline.base import Phase, PipelineContext, PreprocessingPipeline


class _PhotoPipeline(PreprocessingPipeline, ABC):
    """Upload a user photo, record it as an image, submit a job on it.

    The image record is the draft entity here: it is what the job input
    references.
    """

    photo_folder = "uploads"
    photo_prefix = "photo"

    def __init__(self, client: JobClient, repository, assets, photo: Optional[bytes], extra_phases=()):
        self.client = client
        self.repository = repository
        self.assets = assets
        self.photo = photo
        super().__init__(
            [
                Phase("upload_photo", 30, self._upload_photo,
                      "Failed to upload photo", "Uploading photo..."),
                Phase("persist_draft", 10, self._create_image_record,
                      "Failed to create image record", "Creating job..."),
                *extra_phases,
                Phase("submit", 0, self._submit,
                      f"Failed to create {self.job_type.value} job", "Generating...",
                      requires_draft=True),
            ]
        )

    async def _upload_photo(self, ctx: PipelineContext) -> None:
        if not self.photo:
            raise NoItemsSelected("Please take or upload a photo first")
        ctx.values["photo_key"] = await self.assets.upload(
            ctx.owner_id,
            self.photo,
            self.photo_folder,
            filename=f"{self.photo_prefix}-{int(time.time() * 1000)}.jpg",
        )

    async def _create_image_record(self, ctx: PipelineContext) -> None:
        ctx.draft_id = await self.repository.create_image_record(ctx.owner_id, ctx.values["photo_key"])

    @abstractmethod
    def job_input(self, ctx: PipelineContext) -> Dict[str, Any]:
        """Job input built from the recorded image and pipeline options."""

    async def _submit(self, ctx: PipelineContext) -> None:
        ctx.job = await self.client.submit(ctx.owner_id, self.job_type, self.job_input(ctx))


class HeadshotPipeline(_PhotoPipeline):
    job_type = JobType.HEADSHOT_GENERATE
    photo_folder = "selfies"
    photo_prefix = "selfie"

    def __init__(
        self,
        client: JobClient,
        repository,
        assets,
        photo: Optional[bytes],
        hair_style: Optional[str] = None,
        makeup_style: Optional[str] = None,
    ):
        self.hair_style = hair_style
        self.makeup_style = makeup_style
        super().__init__(client, repository, assets, photo)

    def job_input(self, ctx: PipelineContext) -> Dict[str, Any]:
        return {
            "selfie_image_id": ctx.draft_id,
            "hair_style": self.hair_style,
            "makeup_style": self.makeup_style,
        }


class BodyShotPipeline(_PhotoPipeline):
    """Studio model from a full-body photo plus a headshot.

    Without an explicit headshot the active one from user settings is used;
    when neither exists the worker falls back to its own lookup.
    """

    job_type = JobType.BODY_SHOT_GENERATE
    photo_folder = "body"
    photo_prefix = "body"

    def __init__(
        self,
        client: JobClient,
        repository,
        assets,
        photo: Optional[bytes],
        headshot_image_id: Optional[str] = None,
    ):
        self.headshot_image_id = headshot_image_id
        super().__init__(
            client, repository, assets, photo,
            extra_phases=[
                Phase("resolve_prerequisites", 10, self._resolve_headshot,
                      "Failed to load your settings", "Preparing studio model..."),
            ],
        )

    async def _resolve_headshot(self, ctx: PipelineContext) -> None:
        headshot_id = self.headshot_image_id
        if not headshot_id:
            user_settings = await self.repository.get_user_settings(ctx.owner_id)
            headshot_id = user_settings.headshot_image_id if user_settings else None
        ctx.values["headshot_image_id"] = headshot_id

    def job_input(self, ctx: PipelineContext) -> Dict[str, Any]:
        job_input = {"body_photo_image_id": ctx.draft_id}
        if ctx.values.get("headshot_image_id"):
            job_input["headshot_image_id"] = ctx.values["headshot_image_id"]
        return job_input
