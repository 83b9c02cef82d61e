"""Clothing grid compositing.

Builds the single portrait (3:4) composite an outfit render job receives:
every item image trimmed of surrounding whitespace, scaled to fit its grid
cell and centred on a white canvas.
"""

import io
import logging
from typing import List, Sequence, Tuple

import numpy as np
from PIL import Image

from wardrobe_ai.config import settings

logger = logging.getLogger(__name__)

BACKGROUND_COLOR = (255, 255, 255)


def calculate_grid_layout(item_count: int) -> Tuple[int, int]:
    """Return (cols, rows) that best fits ``item_count`` items on a portrait canvas."""
    if item_count <= 1:
        return 1, 1
    if item_count == 2:
        return 2, 1  # side by side
    if item_count <= 4:
        return 2, 2
    if item_count <= 6:
        return 2, 3
    if item_count <= 9:
        return 3, 3
    if item_count <= 12:
        return 3, 4
    cols = int(np.ceil(np.sqrt(item_count)))
    rows = int(np.ceil(item_count / cols))
    return cols, rows


def trim_whitespace(image: Image.Image, threshold: int = 15) -> Image.Image:
    """Crop to the bounding box of non-empty pixels.

    A pixel is empty when fully transparent or when R, G and B are all
    above ``255 - threshold``. Images with no content come back unchanged.
    """
    rgba = np.asarray(image.convert("RGBA"))
    min_value = 255 - threshold
    light = np.all(rgba[:, :, :3] > min_value, axis=2)
    transparent = rgba[:, :, 3] == 0
    content = ~(light | transparent)

    rows = np.flatnonzero(content.any(axis=1))
    cols = np.flatnonzero(content.any(axis=0))
    if rows.size == 0 or cols.size == 0:
        return image
    top, bottom = int(rows[0]), int(rows[-1])
    left, right = int(cols[0]), int(cols[-1])
    if left >= right or top >= bottom:
        return image
    return image.crop((left, top, right + 1, bottom + 1))


def _flatten(image: Image.Image) -> Image.Image:
    """RGB copy with transparent areas painted white."""
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        flat = Image.new("RGB", rgba.size, BACKGROUND_COLOR)
        flat.paste(rgba, mask=rgba.split()[3])
        return flat
    return image.convert("RGB")


def compose_grid(
    images: Sequence[Image.Image],
    width: int = 1536,
    height: int = 2048,
    padding: int = 20,
    threshold: int = 15,
) -> Image.Image:
    """Lay ``images`` out in a grid on a ``width`` x ``height`` white canvas."""
    if not images:
        raise ValueError("No images provided for grid generation")

    cols, rows = calculate_grid_layout(len(images))
    cell_w = (width - (cols - 1) * padding) // cols
    cell_h = (height - (rows - 1) * padding) // rows
    logger.debug("Grid %dx%d, cell %dx%d for %d images", cols, rows, cell_w, cell_h, len(images))

    canvas = Image.new("RGB", (width, height), BACKGROUND_COLOR)
    for i, source in enumerate(images):
        trimmed = _flatten(trim_whitespace(source, threshold))
        tw, th = trimmed.size
        scale = min(cell_w / tw, cell_h / th)
        dst_w = max(1, int(tw * scale))
        dst_h = max(1, int(th * scale))
        resized = trimmed.resize((dst_w, dst_h), Image.LANCZOS)

        col, row = i % cols, i // cols
        x = col * (cell_w + padding) + (cell_w - dst_w) // 2
        y = row * (cell_h + padding) + (cell_h - dst_h) // 2
        canvas.paste(resized, (x, y))
    return canvas


def generate_clothing_grid(image_blobs: List[bytes]) -> bytes:
    """Decode item images, compose the grid and encode it as JPEG.

    Synchronous and CPU bound; call it through ``run_in_executor``.
    """
    if not image_blobs:
        raise ValueError("No images provided for grid generation")
    images = []
    for i, blob in enumerate(image_blobs):
        try:
            image = Image.open(io.BytesIO(blob))
            image.load()
        except Exception as exc:
            raise ValueError(f"Could not decode image {i + 1}: {exc}") from exc
        images.append(image)

    grid = compose_grid(
        images,
        width=settings.grid_width,
        height=settings.grid_height,
        padding=settings.grid_padding,
        threshold=settings.trim_threshold,
    )
    out = io.BytesIO()
    grid.save(out, format="JPEG", quality=settings.grid_jpeg_quality)
    return out.getvalue()
