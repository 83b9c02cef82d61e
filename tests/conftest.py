"""Shared fakes: in-memory job store, repository, asset storage and sleeper."""

import io
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import pytest
from PIL import Image

from wardrobe_ai.db.models import ImageLink, Outfit, OutfitItem, UserSettings, WardrobeItem
from wardrobe_ai.jobs.client import JobClient
from wardrobe_ai.jobs.models import Job, JobStatus, JobType
from wardrobe_ai.jobs.polling import PollingEngine
from wardrobe_ai.jobs.store import JobStore
from wardrobe_ai.storage.ttl_cache import TTLCache


def make_jpeg(color=(200, 30, 30), size=(60, 80), border=10) -> bytes:
    """A coloured block on a white margin, like a product photo."""
    image = Image.new("RGB", (size[0] + 2 * border, size[1] + 2 * border), (255, 255, 255))
    image.paste(Image.new("RGB", size, color), (border, border))
    out = io.BytesIO()
    image.save(out, format="JPEG", quality=90)
    return out.getvalue()


class FakeJobStore(JobStore):
    """Scripted job table.

    Each job type plays back a list of statuses, one per read; the last
    status repeats once the script runs out.
    """

    def __init__(self):
        self.jobs: Dict[str, Job] = {}
        self.scripts: Dict[JobType, Dict[str, Any]] = {}
        self.reads: Dict[str, int] = {}
        self.read_errors: Dict[int, Exception] = {}
        self.total_reads = 0
        self.created: List[Job] = []
        self.triggered: List[str] = []
        self.trigger_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None

    def script(self, job_type: JobType, statuses, result=None, error=None) -> None:
        self.scripts[job_type] = {
            "statuses": list(statuses),
            "result": result if result is not None else {"image_id": "img-generated"},
            "error": error,
        }

    def add_job(self, job: Job) -> Job:
        self.jobs[job.id] = job
        return job

    async def create_job(self, owner_id: str, job_type: JobType, input: Dict[str, Any]) -> Job:
        if self.create_error is not None:
            raise self.create_error
        job = Job(id=f"job-{len(self.jobs) + 1}", owner_user_id=owner_id, job_type=job_type, input=dict(input))
        self.jobs[job.id] = job
        self.created.append(job)
        return job.model_copy(deep=True)

    async def trigger(self, job_id: str) -> None:
        self.triggered.append(job_id)
        if self.trigger_error is not None:
            raise self.trigger_error

    async def get_job(self, job_id: str) -> Optional[Job]:
        self.total_reads += 1
        if self.total_reads in self.read_errors:
            raise self.read_errors[self.total_reads]
        job = self.jobs.get(job_id)
        if job is None:
            return None
        script = self.scripts.get(job.job_type)
        if script is not None:
            count = self.reads.get(job_id, 0) + 1
            self.reads[job_id] = count
            statuses = script["statuses"]
            job.status = statuses[min(count, len(statuses)) - 1]
            if job.status == JobStatus.SUCCEEDED:
                job.result = script["result"]
            elif job.status == JobStatus.FAILED:
                job.error = script["error"]
            job.updated_at = datetime.utcnow()
        return job.model_copy(deep=True)

    async def list_jobs(
        self,
        owner_id: str,
        job_type: JobType,
        statuses: Iterable[JobStatus],
        updated_since: Optional[datetime] = None,
        limit: int = 10,
    ) -> List[Job]:
        wanted = set(statuses)
        jobs = [
            job for job in self.jobs.values()
            if job.owner_user_id == owner_id and job.job_type == job_type and job.status in wanted
            and (updated_since is None or job.updated_at >= updated_since)
        ]
        jobs.sort(key=lambda j: j.updated_at, reverse=True)
        return [job.model_copy(deep=True) for job in jobs[:limit]]


class FakeRepository:
    def __init__(self):
        self.user_settings: Dict[str, UserSettings] = {}
        self.outfits: Dict[str, Outfit] = {}
        self.items: Dict[str, WardrobeItem] = {}
        self.links: List[ImageLink] = []
        self.categories: Dict[str, str] = {"cat-top": "Tops", "cat-bottom": "Bottoms", "cat-shoes": "Shoes"}
        self.images: Dict[str, str] = {}
        self.item_images: List[tuple] = []
        self.saved_outfits: List[str] = []
        self.archived_outfits: List[str] = []
        self.archived_items: List[str] = []
        self.created_items: List[str] = []
        self.fail_archive = False

    async def save_outfit(self, owner_id, title, items, notes=None, visibility=None) -> str:
        outfit_id = f"outfit-{len(self.outfits) + 1}"
        self.outfits[outfit_id] = Outfit(id=outfit_id, title=title, items=list(items))
        self.saved_outfits.append(outfit_id)
        return outfit_id

    async def get_outfit(self, outfit_id):
        return self.outfits.get(outfit_id)

    async def archive_outfit(self, outfit_id) -> None:
        if self.fail_archive:
            raise RuntimeError("archive failed")
        self.archived_outfits.append(outfit_id)

    async def get_user_settings(self, user_id):
        return self.user_settings.get(user_id)

    async def get_wardrobe_items(self, item_ids):
        return [self.items[i] for i in item_ids if i in self.items]

    async def get_wardrobe_item(self, item_id):
        return self.items.get(item_id)

    async def get_category_names(self):
        return dict(self.categories)

    async def get_item_image_links(self, item_ids):
        return [link for link in self.links if link.wardrobe_item_id in item_ids]

    async def create_image_record(self, owner_id, storage_key, source="upload") -> str:
        image_id = f"image-{len(self.images) + 1}"
        self.images[image_id] = storage_key
        return image_id

    async def create_wardrobe_item(self, owner_id, wardrobe_id, title="New Item") -> str:
        item_id = f"item-new-{len(self.created_items) + 1}"
        self.items[item_id] = WardrobeItem(id=item_id, title=title)
        self.created_items.append(item_id)
        return item_id

    async def link_item_image(self, item_id, image_id, type="original", sort_order=0) -> None:
        self.item_images.append((item_id, image_id, type, sort_order))

    async def archive_wardrobe_item(self, item_id) -> None:
        self.archived_items.append(item_id)


class FakeAssetStore:
    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.failing: set = set()
        self.downloads: List[str] = []
        self.uploads: List[str] = []

    def public_url(self, storage_key: str) -> str:
        return f"https://cdn.test/media/{storage_key}"

    async def download(self, url: str) -> bytes:
        self.downloads.append(url)
        if url in self.failing:
            raise ConnectionError(f"could not fetch {url}")
        return self.blobs.get(url) or make_jpeg()

    async def upload(self, owner_id, data, folder, filename=None, content_type="image/jpeg") -> str:
        key = f"{owner_id}/{folder}/{filename or 'upload.jpg'}"
        self.uploads.append(key)
        return key


class RecordingSleep:
    """Stands in for asyncio.sleep; records the requested delays."""

    def __init__(self):
        self.delays: List[float] = []
        self.on_sleep = None

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.on_sleep is not None:
            self.on_sleep(len(self.delays))

    @property
    def total(self) -> float:
        return sum(self.delays)


@pytest.fixture
def store():
    return FakeJobStore()


@pytest.fixture
def client(store):
    return JobClient(store)


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def engine(client, sleeper):
    return PollingEngine(client, sleep=sleeper)


@pytest.fixture
def cache():
    return TTLCache(ttl_seconds=900)


@pytest.fixture
def repository():
    repo = FakeRepository()
    repo.user_settings["user-1"] = UserSettings(
        user_id="user-1", body_shot_image_id="body-1", headshot_image_id="head-1"
    )
    for item_id, category in (("item-1", "cat-top"), ("item-2", "cat-bottom"), ("item-3", "cat-shoes")):
        repo.items[item_id] = WardrobeItem(id=item_id, title=item_id.title(), category_id=category)
        repo.links.append(
            ImageLink(image_id=f"{item_id}-orig", wardrobe_item_id=item_id, type="original",
                      sort_order=0, storage_key=f"user-1/{item_id}.jpg")
        )
    return repo


@pytest.fixture
def assets():
    return FakeAssetStore()


@pytest.fixture
def items(repository):
    return [repository.items[i] for i in ("item-1", "item-2", "item-3")]


@pytest.fixture
def saved_outfit(repository):
    outfit = Outfit(
        id="outfit-src",
        title="Weekend",
        items=[
            OutfitItem(wardrobe_item_id="item-1", category_id="cat-top", position=0),
            OutfitItem(wardrobe_item_id="item-2", category_id="cat-bottom", position=1),
        ],
    )
    repository.outfits[outfit.id] = outfit
    return outfit
