from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from datetime import date as dt_date, datetime, timedelta, timezone
from typing import Any, Dict, List

import httpx

from .cache import MatrixSetCache
from .catalog import DataSource, Layer, LayerCatalog, LayerType
from .coordinates import TILE_SIZE, world_pixels
from .proxy import fetch_capabilities, proxied_tile_url
from .viewer import SourceKind, ViewerSource
from .wmts import capabilities_url, discover_matrix_set_name

logger = logging.getLogger(__name__)

DEFAULT_MATRIX_SET = "GoogleMapsCompatible_Level9"
FALLBACK_MATRIX_SETS = tuple(f"GoogleMapsCompatible_Level{level}" for level in range(8, 12))
AVAILABLE_DATE_WINDOW_DAYS = 30

_EXTENSION_PATTERN = re.compile(r"\.(jpe?g|png)(?=$|\?)", flags=re.IGNORECASE)
_EXTENSION_SWAPS = {"jpg": "png", "jpeg": "png", "png": "jpg"}


@dataclass(frozen=True)
class TileSourceDescriptor:
    """Concrete tile URL template resolved for one layer and date."""

    url: str
    date: str
    layer_id: str
    width: int | None = None
    height: int | None = None
    matrix_set: str | None = None
    mosaic: bool = False

    def sample_url(self, z: int = 0, y: int = 0, x: int = 0) -> str:
        return self.url.replace("{z}", str(z)).replace("{y}", str(y)).replace("{x}", str(x))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def current_utc_date() -> dt_date:
    return datetime.now(timezone.utc).date()


def format_date(value: dt_date | datetime | None) -> str:
    if value is None:
        value = current_utc_date()
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def url_extension(url: str) -> str | None:
    matches = _EXTENSION_PATTERN.findall(url)
    return matches[-1].lower() if matches else None


def with_extension(url: str, extension: str) -> str:
    """Replace the trailing ``.jpg``/``.png`` of a tile template with ``extension``."""

    extension = extension.lstrip(".")
    matches = list(_EXTENSION_PATTERN.finditer(url))
    if not matches:
        return url
    last = matches[-1]
    return f"{url[:last.start()]}.{extension}{url[last.end():]}"


def swapped_extension(url: str) -> str | None:
    """The ``.jpg`` <-> ``.png`` twin of ``url``, or ``None`` when it has neither."""

    current = url_extension(url)
    if current is None:
        return None
    return with_extension(url, _EXTENSION_SWAPS[current])


def available_dates(today: dt_date | None = None, days: int = AVAILABLE_DATE_WINDOW_DAYS) -> List[dt_date]:
    """Most recent first; imagery is assumed to exist for each of the last ``days`` days."""

    today = today or current_utc_date()
    return [today - timedelta(days=offset) for offset in range(max(0, days))]


class TileSourceResolver:
    """Builds tile sources for catalog layers across the three addressing schemes.

    GIBS layers are WMTS Web Mercator endpoints whose URL embeds a tile matrix
    set; the set is taken from ``matrix_sets`` once capability discovery has
    run for the layer, and defaults to ``GoogleMapsCompatible_Level9`` before
    that. Trek layers already carry an ``{z}/{y}/{x}`` template and Hubble
    layers are single images the viewer builds its own pyramid over.
    """

    def __init__(
        self,
        catalog: LayerCatalog,
        matrix_sets: MatrixSetCache | None = None,
        *,
        proxy_base: str | None = None,
    ) -> None:
        self.catalog = catalog
        self.matrix_sets = matrix_sets if matrix_sets is not None else MatrixSetCache()
        self.proxy_base = proxy_base

    def get_tile_source(
        self,
        body_id: str,
        layer_id: str,
        date: dt_date | datetime | None = None,
        *,
        matrix_set: str | None = None,
        tile_format: str | None = None,
    ) -> TileSourceDescriptor:
        layer = self.catalog.require_layer(body_id, layer_id)
        image_date = format_date(date)

        if layer.data_source == DataSource.GIBS and not layer.is_static_image:
            token = matrix_set or self.matrix_sets.load(layer.base_url, layer.id) or DEFAULT_MATRIX_SET
            extension = (tile_format or layer.tile_format).lstrip(".")
            url = (
                f"{layer.base_url.rstrip('/')}/{layer.id}/default/{image_date}/{token}"
                f"/{{z}}/{{y}}/{{x}}.{extension}"
            )
            scale = int(world_pixels(layer.max_zoom))
            return TileSourceDescriptor(
                url=url,
                date=image_date,
                layer_id=layer.id,
                width=scale,
                height=scale,
                matrix_set=token,
            )

        if layer.is_static_image:
            dimensions = layer.image_dimensions()
            width, height = dimensions if dimensions else (None, None)
            return TileSourceDescriptor(
                url=layer.base_url,
                date=image_date,
                layer_id=layer.id,
                width=width,
                height=height,
            )

        url = layer.base_url
        if tile_format:
            url = with_extension(url, tile_format)
        scale = int(world_pixels(layer.max_zoom))
        return TileSourceDescriptor(
            url=url,
            date=image_date,
            layer_id=layer.id,
            width=scale,
            height=scale,
        )

    def build_viewer_source(self, descriptor: TileSourceDescriptor, layer: Layer) -> ViewerSource:
        if layer.is_static_image or descriptor.mosaic:
            return ViewerSource(
                kind=SourceKind.IMAGE,
                url=descriptor.url,
                width=descriptor.width,
                height=descriptor.height,
            )
        if layer.type == LayerType.DZI:
            return ViewerSource(kind=SourceKind.DZI, url=descriptor.url)
        if layer.type == LayerType.IIIF:
            return ViewerSource(kind=SourceKind.IIIF, url=descriptor.url)

        scale = int(world_pixels(layer.max_zoom))
        kwargs: Dict[str, Any] = {}
        if layer.url_order is not None:
            kwargs["url_order"] = layer.url_order
        return ViewerSource(
            kind=SourceKind.PYRAMID,
            url=descriptor.url,
            width=scale,
            height=scale,
            tile_size=TILE_SIZE,
            min_level=layer.min_level or 0,
            max_level=layer.max_zoom,
            wrap_horizontal=layer.data_source == DataSource.GIBS,
            **kwargs,
        )

    async def validate_tile_source(
        self, client: httpx.AsyncClient, descriptor: TileSourceDescriptor
    ) -> bool:
        """Report whether tile ``0/0/0`` is reachable; deeper levels are not checked."""

        target = proxied_tile_url(descriptor.sample_url(), self.proxy_base)
        try:
            response = await client.get(target)
        except httpx.HTTPError as exc:
            logger.debug("Tile source probe %s failed: %s", target, exc)
            return False
        return response.is_success

    async def discover_matrix_set(self, client: httpx.AsyncClient, layer: Layer) -> str | None:
        """Matrix set advertised for a GIBS layer, memoised for the session."""

        cached = self.matrix_sets.load(layer.base_url, layer.id)
        if cached:
            return cached

        xml_text = await fetch_capabilities(
            client, capabilities_url(layer.base_url), proxy_base=self.proxy_base
        )
        if xml_text is None:
            return None

        discovered = discover_matrix_set_name(xml_text, layer.id)
        if discovered is None:
            return None

        logger.info("Discovered tile matrix set %s for layer %s", discovered, layer.id)
        return self.matrix_sets.store(layer.base_url, layer.id, discovered)

    async def check_layer_availability(
        self,
        client: httpx.AsyncClient,
        body_id: str,
        layer_id: str,
        date: dt_date | datetime | None = None,
    ) -> bool:
        try:
            descriptor = self.get_tile_source(body_id, layer_id, date)
        except LookupError as exc:
            logger.warning("Failed to check layer availability: %s", exc)
            return False
        return await self.validate_tile_source(client, descriptor)
