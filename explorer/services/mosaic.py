from __future__ import annotations

import io
import logging
from typing import List, Tuple

import httpx
from PIL import Image, UnidentifiedImageError

from .coordinates import TILE_SIZE
from .proxy import is_image_response

logger = logging.getLogger(__name__)

MOSAIC_RADIUS = 1
MOSAIC_BACKGROUND = (0, 0, 0)
DEFAULT_MOSAIC_FORMAT = "png"
_JPEG_FORMATS = {"jpg", "jpeg"}
MOSAIC_JPEG_QUALITY = 90


class MosaicError(Exception):
    """Raised when a composited mosaic cannot be produced at all."""


def fill_template(template_url: str, *, z: int, x: int, y: int) -> str:
    return template_url.replace("{z}", str(z)).replace("{x}", str(x)).replace("{y}", str(y))


def neighborhood(x: int, y: int, radius: int = MOSAIC_RADIUS) -> List[Tuple[int, int, int, int]]:
    """``(column, row, tile_x, tile_y)`` for each tile of the square around ``(x, y)``."""

    cells: List[Tuple[int, int, int, int]] = []
    for dy in range(-radius, radius + 1):
        for dx in range(-radius, radius + 1):
            cells.append((dx + radius, dy + radius, x + dx, y + dy))
    return cells


async def _fetch_tile_image(client: httpx.AsyncClient, url: str) -> Image.Image | None:
    try:
        response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.debug("Mosaic tile %s unavailable: %s", url, exc)
        return None

    if not is_image_response(response):
        logger.debug("Mosaic tile %s returned a non-image payload", url)
        return None

    try:
        image = Image.open(io.BytesIO(response.content))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        logger.debug("Mosaic tile %s could not be decoded: %s", url, exc)
        return None
    return image.convert("RGB")


async def composite_neighborhood(
    client: httpx.AsyncClient,
    template_url: str,
    *,
    z: int,
    x: int,
    y: int,
    tile_size: int = TILE_SIZE,
    radius: int = MOSAIC_RADIUS,
) -> Image.Image:
    """Stitch the tiles around ``(x, y)`` at zoom ``z`` onto a black canvas.

    Tiles that fail to download or decode, and tiles with negative indices,
    stay black; the partial result is returned without reporting them.
    """

    if not template_url:
        raise MosaicError("template URL is required")

    span = 2 * radius + 1
    canvas = Image.new("RGB", (span * tile_size, span * tile_size), MOSAIC_BACKGROUND)
    pasted = 0

    for column, row, tile_x, tile_y in neighborhood(x, y, radius):
        if tile_x < 0 or tile_y < 0:
            continue
        url = fill_template(template_url, z=z, x=tile_x, y=tile_y)
        tile = await _fetch_tile_image(client, url)
        if tile is None:
            continue
        if tile.size != (tile_size, tile_size):
            tile = tile.resize((tile_size, tile_size), Image.LANCZOS)
        canvas.paste(tile, (column * tile_size, row * tile_size))
        pasted += 1

    logger.info(
        "Composited %d of %d tiles around z%s/%s/%s", pasted, span * span, z, x, y
    )
    return canvas


def mosaic_media_type(image_format: str | None) -> str:
    if (image_format or "").lower() in _JPEG_FORMATS:
        return "image/jpeg"
    return "image/png"


def encode_mosaic(image: Image.Image, image_format: str | None = DEFAULT_MOSAIC_FORMAT) -> bytes:
    buffer = io.BytesIO()
    if (image_format or "").lower() in _JPEG_FORMATS:
        image.save(buffer, format="JPEG", quality=MOSAIC_JPEG_QUALITY)
    else:
        image.save(buffer, format="PNG")
    return buffer.getvalue()
