"""Asset storage: resolve stored keys to URLs, download, upload."""

import asyncio
import logging
import time
from typing import Optional

import httpx
from supabase import Client

from wardrobe_ai.config import settings
from wardrobe_ai.db.supabase_client import get_supabase

logger = logging.getLogger(__name__)


class SupabaseAssetStore:
    """Media bucket access through Supabase Storage plus httpx downloads."""

    def __init__(
        self,
        client: Optional[Client] = None,
        bucket: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client
        self._bucket = bucket or settings.media_bucket
        self._http = http

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase()
        return self._client

    def public_url(self, storage_key: str) -> str:
        url = self.client.storage.from_(self._bucket).get_public_url(storage_key)
        if not url:
            raise ValueError(f"Failed to get URL for {storage_key}")
        return url

    async def download(self, url: str) -> bytes:
        if self._http is not None:
            response = await self._http.get(url, timeout=settings.download_timeout_seconds)
        else:
            async with httpx.AsyncClient(timeout=settings.download_timeout_seconds) as http:
                response = await http.get(url)
        response.raise_for_status()
        return response.content

    async def upload(
        self,
        owner_id: str,
        data: bytes,
        folder: str,
        filename: Optional[str] = None,
        content_type: str = "image/jpeg",
    ) -> str:
        """Upload ``data`` under ``<owner>/<folder>/`` and return its storage key."""
        name = filename or f"{int(time.time() * 1000)}.jpg"
        storage_path = f"{owner_id}/{folder}/{name}"

        def _upload():
            return self.client.storage.from_(self._bucket).upload(
                storage_path,
                data,
                file_options={
                    "content-type": content_type,
                    "cache-control": "3600",
                    "upsert": "false",
                },
            )

        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, _upload)
        key = getattr(response, "path", None) or storage_path
        logger.info("Uploaded %d bytes to %s/%s", len(data), self._bucket, key)
        return key
