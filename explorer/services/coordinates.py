"""Projection helpers mapping geographic coordinates into tile and image space.

Two tiling schemes are covered: spherical Web Mercator (EPSG:3857, used by the
GIBS ``GoogleMapsCompatible`` tile matrix sets) and the equirectangular grid
served by the NASA Trek planetary WMTS endpoints. Static mosaics such as the
Hubble images carry no georeference at all, so every function here answers
with ``NaN`` (or ``None``) instead of raising when a mapping is undefined.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

TILE_SIZE = 256
# Latitudes beyond this map outside the square Web Mercator world.
MERCATOR_LATITUDE_LIMIT = 85.05112878


class Projection(str, Enum):
    """Coordinate systems a layer's imagery can be addressed in."""

    WEB_MERCATOR = "webmercator"
    TREK = "trek"
    IMAGE = "image"


@dataclass(frozen=True)
class PixelPoint:
    x: float
    y: float

    @property
    def is_finite(self) -> bool:
        return math.isfinite(self.x) and math.isfinite(self.y)


@dataclass(frozen=True)
class TileIndex:
    tile_x: float
    tile_y: float


@dataclass(frozen=True)
class ViewportPoint:
    x: float
    y: float


def lon_to_x(lon: float) -> float:
    return (lon + 180.0) / 360.0


def lat_to_y(lat: float) -> float:
    """Fractional Web Mercator ``y`` for ``lat``; ``NaN`` at or beyond the poles."""

    if not math.isfinite(lat) or abs(lat) >= 90.0:
        return math.nan
    clamped = max(min(lat, MERCATOR_LATITUDE_LIMIT), -MERCATOR_LATITUDE_LIMIT)
    sin_lat = math.sin(math.radians(clamped))
    y = 0.5 - math.log((1 + sin_lat) / (1 - sin_lat)) / (4 * math.pi)
    return min(max(y, 0.0), 1.0)


def _world_tiles(zoom: float) -> float:
    try:
        return math.pow(2.0, zoom)
    except OverflowError:
        return math.inf
    except ValueError:
        return math.nan


def world_pixels(zoom: float) -> float:
    return TILE_SIZE * _world_tiles(zoom)


def lat_lon_to_web_mercator_pixels(lat: float, lon: float, zoom: float) -> PixelPoint:
    scale = world_pixels(zoom)
    return PixelPoint(x=lon_to_x(lon) * scale, y=lat_to_y(lat) * scale)


def _floor_or_nan(value: float) -> float:
    if not math.isfinite(value):
        return math.nan
    return math.floor(value)


def lat_lon_to_trek_tile_xy(lat: float, lon: float, zoom: float) -> TileIndex:
    """Equirectangular tile indices: longitude left to right, latitude flipped."""

    x_norm = (lon + 180.0) / 360.0
    y_norm = 1.0 - (lat + 90.0) / 180.0
    tiles = _world_tiles(zoom)
    return TileIndex(
        tile_x=_floor_or_nan(x_norm * tiles),
        tile_y=_floor_or_nan(y_norm * tiles),
    )


def lat_lon_to_image_pixels(
    lat: float,
    lon: float,
    zoom: float,
    image_width: float,
    image_height: float,
    projection: Projection | str = Projection.WEB_MERCATOR,
) -> PixelPoint:
    """Project ``lat``/``lon`` onto an image of the given dimensions.

    The world pixel space (``TILE_SIZE * 2**zoom`` on each axis) is rescaled
    onto ``image_width`` x ``image_height``. Non-georeferenced images answer
    ``(NaN, NaN)``; callers must treat that as "cannot pan here".
    """

    unmapped = PixelPoint(math.nan, math.nan)
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return unmapped
    if not image_width or not image_height:
        return unmapped

    try:
        projection = Projection(projection)
    except ValueError:
        return unmapped

    scale = world_pixels(zoom)
    if not scale or not math.isfinite(scale):
        return unmapped

    if projection == Projection.WEB_MERCATOR:
        world = lat_lon_to_web_mercator_pixels(lat, lon, zoom)
    elif projection == Projection.TREK:
        world = PixelPoint(
            x=(lon + 180.0) / 360.0 * scale,
            y=(1.0 - (lat + 90.0) / 180.0) * scale,
        )
    else:
        return unmapped

    return PixelPoint(x=world.x * image_width / scale, y=world.y * image_height / scale)


def image_pixels_to_viewport_point(viewer: Any, x: float, y: float) -> ViewportPoint | None:
    """Convert image pixels to the viewer's normalized viewport space."""

    if viewer is None:
        return None
    if not (math.isfinite(x) and math.isfinite(y)):
        return None
    try:
        return viewer.image_to_viewport(PixelPoint(x, y))
    except Exception as exc:
        logger.debug("Viewer could not map image point (%s, %s): %s", x, y, exc)
        return None
