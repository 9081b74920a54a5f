from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

import httpx
from PIL import Image, ImageStat, UnidentifiedImageError

from .catalog import Layer
from .proxy import proxied_tile_url
from .viewer import ViewerSource

logger = logging.getLogger(__name__)

PROBE_GRID_SIZE = 4
PROBE_SAMPLE_COUNT = 6
PROBE_CANVAS_SIZE = 32
PROBE_MIN_ZOOM = 2
PROBE_ZOOM_OFFSET = 2
EMPTY_LUMINANCE_THRESHOLD = 10.0


@dataclass
class ProbeReport:
    """Outcome of sampling a handful of tiles from one tile source."""

    zoom: int
    sampled: int = 0
    empty: int = 0
    luminances: List[float | None] = field(default_factory=list)

    @property
    def likely_empty(self) -> bool:
        return self.sampled > 0 and self.empty * 2 > self.sampled


def probe_zoom(layer: Layer) -> int:
    zoom = max(PROBE_MIN_ZOOM, layer.max_zoom - PROBE_ZOOM_OFFSET)
    if layer.min_level is not None:
        zoom = max(zoom, layer.min_level)
    return zoom


def probe_coordinates(
    grid_size: int = PROBE_GRID_SIZE, count: int = PROBE_SAMPLE_COUNT
) -> List[Tuple[int, int]]:
    """Row-major ``(x, y)`` tile offsets from the origin of a ``grid_size`` block."""

    coordinates = [(x, y) for y in range(grid_size) for x in range(grid_size)]
    return coordinates[:count]


def mean_luminance(content: bytes, canvas_size: int = PROBE_CANVAS_SIZE) -> float:
    """Average 8-bit luma of an encoded tile after downscaling it."""

    with Image.open(io.BytesIO(content)) as image:
        image.load()
        if image.mode in {"RGBA", "LA", "P"}:
            rgba = image.convert("RGBA")
            background = Image.new("RGBA", rgba.size, (0, 0, 0, 255))
            image = Image.alpha_composite(background, rgba)
        thumbnail = image.convert("L").resize((canvas_size, canvas_size), Image.BILINEAR)
    return float(ImageStat.Stat(thumbnail).mean[0])


class ContentProber:
    """Flags tile sources that would mostly render black before they are shown.

    Tiles are fetched one after another. A sample that cannot be downloaded or
    decoded counts as not empty, so a flaky probe never blocks loading.
    """

    def __init__(
        self,
        *,
        proxy_base: str | None = None,
        threshold: float = EMPTY_LUMINANCE_THRESHOLD,
        coordinates: Sequence[Tuple[int, int]] | None = None,
    ) -> None:
        self.proxy_base = proxy_base
        self.threshold = threshold
        self.coordinates = list(coordinates) if coordinates is not None else probe_coordinates()

    async def probe(
        self, client: httpx.AsyncClient, source: ViewerSource, layer: Layer
    ) -> ProbeReport:
        zoom = probe_zoom(layer)
        report = ProbeReport(zoom=zoom)

        for x, y in self.coordinates:
            url = proxied_tile_url(source.tile_url(zoom, x, y), self.proxy_base)
            luminance = await self._sample(client, url)
            report.sampled += 1
            report.luminances.append(luminance)
            if luminance is not None and luminance < self.threshold:
                report.empty += 1

        logger.debug(
            "Probed %d tile(s) of %s at zoom %d: %d empty",
            report.sampled,
            layer.id,
            zoom,
            report.empty,
        )
        return report

    async def _sample(self, client: httpx.AsyncClient, url: str) -> float | None:
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.debug("Probe tile %s unavailable: %s", url, exc)
            return None

        try:
            return mean_luminance(response.content)
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            logger.debug("Probe tile %s could not be decoded: %s", url, exc)
            return None
