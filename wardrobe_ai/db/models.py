"""Row models for the tables the generation flows read and write."""

from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class _Row(BaseModel):
    model_config = ConfigDict(extra="ignore")


class UserSettings(_Row):
    user_id: str
    body_shot_image_id: Optional[str] = None
    headshot_image_id: Optional[str] = None
    ai_model_preference: Optional[str] = None
    ai_model_outfit_render: Optional[str] = None


class WardrobeItem(_Row):
    id: str
    title: Optional[str] = None
    description: Optional[str] = None
    brand: Optional[str] = None
    color_primary: Optional[str] = None
    category_id: Optional[str] = None
    subcategory_id: Optional[str] = None


class ImageLink(_Row):
    """One image attached to a wardrobe item."""
    image_id: str
    wardrobe_item_id: str
    type: Optional[str] = None
    sort_order: Optional[int] = None
    storage_key: str


class OutfitItem(_Row):
    wardrobe_item_id: str
    category_id: Optional[str] = None
    position: int = 0


class Outfit(_Row):
    id: str
    title: Optional[str] = None
    items: List[OutfitItem] = Field(default_factory=list)
