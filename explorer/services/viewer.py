"""Adapter between resolved tile sources and a deep-zoom viewer.

The rendering engine itself lives in the browser; the core only relies on the
narrow ``DeepZoomViewer`` protocol below so the resolver and fallback logic can
be driven by any implementation, including ``HeadlessViewer`` which checks a
source over HTTP instead of drawing it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Protocol

import httpx

from .catalog import Layer, UrlOrder
from .coordinates import (
    TILE_SIZE,
    PixelPoint,
    ViewportPoint,
    image_pixels_to_viewport_point,
    lat_lon_to_image_pixels,
)
from .proxy import is_image_response, proxied_tile_url

logger = logging.getLogger(__name__)


class SourceKind(str, Enum):
    IMAGE = "image"
    DZI = "dzi"
    IIIF = "iiif"
    PYRAMID = "legacy-image-pyramid"


@dataclass(frozen=True)
class ViewerSource:
    """Tile source configuration handed to the deep-zoom viewer."""

    kind: SourceKind
    url: str
    width: int | None = None
    height: int | None = None
    tile_size: int = TILE_SIZE
    min_level: int = 0
    max_level: int = 0
    wrap_horizontal: bool = False
    url_order: UrlOrder = UrlOrder.Z_Y_X

    def tile_url(self, level: int, x: int, y: int) -> str:
        return (
            self.url.replace("{z}", str(level))
            .replace("{y}", str(y))
            .replace("{x}", str(x))
        )

    def to_config(self) -> Dict[str, Any]:
        if self.kind == SourceKind.IMAGE:
            return {
                "type": self.kind.value,
                "url": self.url,
                "buildPyramid": True,
                "crossOriginPolicy": "Anonymous",
            }
        if self.kind in {SourceKind.DZI, SourceKind.IIIF}:
            return {"type": self.kind.value, "url": self.url}
        return {
            "type": self.kind.value,
            "tileUrlTemplate": self.url,
            "urlOrder": self.url_order.value,
            "width": self.width,
            "height": self.height,
            "tileWidth": self.tile_size,
            "tileHeight": self.tile_size,
            "minLevel": self.min_level,
            "maxLevel": self.max_level,
            "tileOverlap": 0,
            "wrapHorizontal": self.wrap_horizontal,
            "wrapVertical": False,
            "crossOriginPolicy": "Anonymous",
        }


@dataclass(frozen=True)
class LoadResult:
    ok: bool
    error: str | None = None


class DeepZoomViewer(Protocol):
    async def load_source(self, source: ViewerSource) -> LoadResult:
        ...

    def pan_to_normalized(self, point: ViewportPoint) -> None:
        ...

    def image_to_viewport(self, point: PixelPoint) -> ViewportPoint:
        ...


class HeadlessViewer:
    """Viewer stand-in that accepts a source once one of its tiles downloads.

    Viewport coordinates follow the OpenSeadragon convention: both axes are
    image pixels divided by the image width.
    """

    def __init__(self, client: httpx.AsyncClient, *, proxy_base: str | None = None) -> None:
        self._client = client
        self._proxy_base = proxy_base
        self.current_source: ViewerSource | None = None
        self.center: ViewportPoint | None = None

    async def load_source(self, source: ViewerSource) -> LoadResult:
        if source.url.startswith("data:"):
            self.current_source = source
            return LoadResult(ok=True)

        if source.kind == SourceKind.PYRAMID:
            target = source.tile_url(source.min_level, 0, 0)
        else:
            target = source.url
        target = proxied_tile_url(target, self._proxy_base)

        try:
            async with self._client.stream("GET", target) as response:
                if not response.is_success:
                    return LoadResult(ok=False, error=f"{response.status_code} from {target}")
                expects_image = source.kind in {SourceKind.IMAGE, SourceKind.PYRAMID}
                if expects_image and not is_image_response(response):
                    content_type = response.headers.get("Content-Type", "unknown")
                    return LoadResult(ok=False, error=f"unexpected payload ({content_type}) from {target}")
        except httpx.HTTPError as exc:
            return LoadResult(ok=False, error=str(exc))

        self.current_source = source
        return LoadResult(ok=True)

    def pan_to_normalized(self, point: ViewportPoint) -> None:
        self.center = point

    def image_to_viewport(self, point: PixelPoint) -> ViewportPoint:
        width = self.current_source.width if self.current_source else None
        if not width:
            raise ValueError("No sized image is loaded")
        return ViewportPoint(x=point.x / width, y=point.y / width)


class ViewerAdapter:
    """Feeds resolved sources into a viewer and pans it to geographic targets."""

    def __init__(self, viewer: DeepZoomViewer) -> None:
        self.viewer = viewer

    async def show(self, source: ViewerSource) -> LoadResult:
        try:
            return await self.viewer.load_source(source)
        except Exception as exc:
            logger.warning("Viewer rejected tile source %s: %s", source.url, exc)
            return LoadResult(ok=False, error=str(exc))

    def pan_to_lat_lon(
        self,
        lat: float,
        lon: float,
        layer: Layer,
        width: int | None,
        height: int | None,
    ) -> bool:
        """Pan to ``lat``/``lon``; returns ``False`` when no mapping is possible."""

        pixels = lat_lon_to_image_pixels(
            lat, lon, layer.max_zoom, width or 0, height or 0, layer.projection
        )
        if not pixels.is_finite:
            logger.info("Layer %s has no coordinate mapping; not panning", layer.id)
            return False
        point = image_pixels_to_viewport_point(self.viewer, pixels.x, pixels.y)
        if point is None:
            return False
        self.viewer.pan_to_normalized(point)
        return True
