"""Supabase table access used by the preprocessing pipelines.

Thin wrappers: each method is one or two table calls. The Supabase client
is synchronous, so calls run in the default thread executor.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from supabase import Client

from wardrobe_ai.db.models import ImageLink, Outfit, OutfitItem, UserSettings, WardrobeItem
from wardrobe_ai.db.supabase_client import get_supabase
from wardrobe_ai.config import settings


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseRepository:
    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase()
        return self._client

    async def _run(self, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    # Outfits

    async def save_outfit(
        self,
        owner_id: str,
        title: str,
        items: Sequence[OutfitItem],
        notes: Optional[str] = None,
        visibility: Optional[str] = None,
    ) -> str:
        def _save():
            row: Dict[str, Any] = {"owner_user_id": owner_id, "title": title}
            if notes is not None:
                row["notes"] = notes
            if visibility is not None:
                row["visibility"] = visibility
            outfit = self.client.table("outfits").insert(row).execute().data[0]
            if items:
                self.client.table("outfit_items").insert([
                    {"outfit_id": outfit["id"], **item.model_dump()} for item in items
                ]).execute()
            return outfit["id"]

        return await self._run(_save)

    async def get_outfit(self, outfit_id: str) -> Optional[Outfit]:
        def _get():
            rows = (
                self.client.table("outfits")
                .select("id, title, outfit_items(wardrobe_item_id, category_id, position)")
                .eq("id", outfit_id)
                .limit(1)
                .execute()
                .data
            )
            if not rows:
                return None
            row = rows[0]
            return Outfit(
                id=row["id"],
                title=row.get("title"),
                items=[OutfitItem.model_validate(i) for i in row.get("outfit_items") or []],
            )

        return await self._run(_get)

    async def archive_outfit(self, outfit_id: str) -> None:
        await self._run(
            lambda: self.client.table("outfits")
            .update({"archived_at": _now_iso()})
            .eq("id", outfit_id)
            .execute()
        )

    # Settings

    async def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        def _get():
            rows = (
                self.client.table("user_settings")
                .select("user_id, body_shot_image_id, headshot_image_id, "
                        "ai_model_preference, ai_model_outfit_render")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
                .data
            )
            return UserSettings.model_validate(rows[0]) if rows else None

        return await self._run(_get)

    # Wardrobe items and images

    async def get_wardrobe_items(self, item_ids: Sequence[str]) -> List[WardrobeItem]:
        def _get():
            rows = (
                self.client.table("wardrobe_items")
                .select("id, title, description, brand, color_primary, category_id, subcategory_id")
                .in_("id", list(item_ids))
                .execute()
                .data
            )
            return [WardrobeItem.model_validate(r) for r in rows or []]

        return await self._run(_get)

    async def get_wardrobe_item(self, item_id: str) -> Optional[WardrobeItem]:
        items = await self.get_wardrobe_items([item_id])
        return items[0] if items else None

    async def get_category_names(self) -> Dict[str, str]:
        def _get():
            rows = self.client.table("wardrobe_categories").select("id, name").execute().data
            return {r["id"]: r["name"] for r in rows or []}

        return await self._run(_get)

    async def get_item_image_links(self, item_ids: Sequence[str]) -> List[ImageLink]:
        def _get():
            rows = (
                self.client.table("wardrobe_item_images")
                .select("image_id, wardrobe_item_id, type, sort_order, images!inner(storage_key)")
                .in_("wardrobe_item_id", list(item_ids))
                .execute()
                .data
            )
            return [
                ImageLink(
                    image_id=r["image_id"],
                    wardrobe_item_id=r["wardrobe_item_id"],
                    type=r.get("type"),
                    sort_order=r.get("sort_order"),
                    storage_key=(r.get("images") or {})["storage_key"],
                )
                for r in rows or []
            ]

        return await self._run(_get)

    async def create_image_record(self, owner_id: str, storage_key: str, source: str = "upload") -> str:
        def _insert():
            return (
                self.client.table("images")
                .insert({
                    "owner_user_id": owner_id,
                    "storage_bucket": settings.media_bucket,
                    "storage_key": storage_key,
                    "mime_type": "image/jpeg",
                    "source": source,
                })
                .execute()
                .data[0]["id"]
            )

        return await self._run(_insert)

    async def create_wardrobe_item(self, owner_id: str, wardrobe_id: str, title: str = "New Item") -> str:
        def _insert():
            return (
                self.client.table("wardrobe_items")
                .insert({
                    "owner_user_id": owner_id,
                    "wardrobe_id": wardrobe_id,
                    "title": title,
                    "visibility_override": "inherit",
                })
                .execute()
                .data[0]["id"]
            )

        return await self._run(_insert)

    async def link_item_image(self, item_id: str, image_id: str, type: str = "original", sort_order: int = 0) -> None:
        await self._run(
            lambda: self.client.table("wardrobe_item_images")
            .insert({"wardrobe_item_id": item_id, "image_id": image_id, "type": type, "sort_order": sort_order})
            .execute()
        )

    async def archive_wardrobe_item(self, item_id: str) -> None:
        await self._run(
            lambda: self.client.table("wardrobe_items")
            .update({"archived_at": _now_iso()})
            .eq("id", item_id)
            .execute()
        )
