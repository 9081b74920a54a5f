from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Tuple

from .coordinates import Projection

logger = logging.getLogger(__name__)


class DataSource(str, Enum):
    """Upstream services the catalog layers are served from."""

    GIBS = "NASA GIBS"
    TREK = "NASA Trek"
    HUBBLE = "NASA Hubble"


class LayerType(str, Enum):
    XYZ = "xyz"
    DZI = "dzi"
    IIIF = "iiif"
    IMAGE = "image"


class UrlOrder(str, Enum):
    Z_Y_X = "z-y-x"
    Z_X_Y = "z-x-y"


class BodyNotFoundError(LookupError):
    """Raised when a celestial body identifier is not in the catalog."""


class LayerNotFoundError(LookupError):
    """Raised when a layer identifier does not resolve for a celestial body."""


_RESOLUTION_PATTERN = re.compile(r"^\s*(\d+)\s*[xX×]\s*(\d+)\s*$")


@dataclass(frozen=True)
class Layer:
    """Imagery layer entry as described by the static catalog configuration."""

    id: str
    name: str
    description: str
    resolution: str
    category: str
    data_source: DataSource
    base_url: str
    tile_format: str
    max_zoom: int
    type: LayerType | None = None
    url_order: UrlOrder | None = None
    min_level: int | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Layer id must not be empty.")
        if self.max_zoom < (self.min_level or 0):
            raise ValueError(
                f"Layer {self.id} has max zoom {self.max_zoom} below its minimum level {self.min_level}."
            )

    @property
    def is_static_image(self) -> bool:
        return self.type == LayerType.IMAGE

    @property
    def projection(self) -> Projection:
        if self.is_static_image or self.data_source == DataSource.HUBBLE:
            return Projection.IMAGE
        if self.data_source == DataSource.GIBS:
            return Projection.WEB_MERCATOR
        return Projection.TREK

    def image_dimensions(self) -> Tuple[int, int] | None:
        """Pixel size encoded in ``resolution`` (``"10552x2468"``), if any."""

        match = _RESOLUTION_PATTERN.match(self.resolution or "")
        if match is None:
            return None
        return int(match.group(1)), int(match.group(2))

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "Layer":
        layer_type = config.get("type")
        url_order = config.get("urlOrder")
        min_level = config.get("minLevel")
        return cls(
            id=str(config["id"]),
            name=str(config.get("name") or config["id"]),
            description=str(config.get("description") or ""),
            resolution=str(config.get("resolution") or ""),
            category=str(config.get("category") or ""),
            data_source=DataSource(config["dataSource"]),
            base_url=str(config["baseUrl"]),
            tile_format=str(config.get("tileFormat") or "jpg"),
            max_zoom=int(config["maxZoom"]),
            type=LayerType(layer_type) if layer_type else None,
            url_order=UrlOrder(url_order) if url_order else None,
            min_level=int(min_level) if min_level is not None else None,
        )

    def to_config(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "resolution": self.resolution,
            "category": self.category,
            "dataSource": self.data_source.value,
            "baseUrl": self.base_url,
            "tileFormat": self.tile_format,
            "maxZoom": self.max_zoom,
        }
        if self.type is not None:
            config["type"] = self.type.value
        if self.url_order is not None:
            config["urlOrder"] = self.url_order.value
        if self.min_level is not None:
            config["minLevel"] = self.min_level
        return config


@dataclass
class CelestialBody:
    id: str
    name: str
    description: str
    icon: str
    layers: List[Layer] = field(default_factory=list)

    def to_config(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "datasets": [layer.to_config() for layer in self.layers],
        }


_GIBS_LAYERS: Tuple[Dict[str, Any], ...] = (
    {
        "id": "MODIS_Terra_CorrectedReflectance_TrueColor",
        "name": "True Color (Terra/MODIS)",
        "description": "True color image of Earth from Terra satellite",
        "resolution": "250m",
        "category": "Base Layers",
        "dataSource": "NASA GIBS",
        "baseUrl": "https://gibs-a.earthdata.nasa.gov/wmts/epsg3857/best",
        "tileFormat": "jpg",
        "maxZoom": 8,
    },
    {
        "id": "VIIRS_SNPP_CorrectedReflectance_TrueColor",
        "name": "True Color (Suomi NPP/VIIRS)",
        "description": "True color image from Suomi NPP satellite",
        "resolution": "375m",
        "category": "Base Layers",
        "dataSource": "NASA GIBS",
        "baseUrl": "https://gibs-b.earthdata.nasa.gov/wmts/epsg3857/best",
        "tileFormat": "jpg",
        "maxZoom": 8,
    },
    {
        "id": "MODIS_Terra_CorrectedReflectance_Bands367",
        "name": "False Color (Terra/MODIS)",
        "description": "False color image emphasizing vegetation",
        "resolution": "250m",
        "category": "Base Layers",
        "dataSource": "NASA GIBS",
        "baseUrl": "https://gibs-c.earthdata.nasa.gov/wmts/epsg3857/best",
        "tileFormat": "jpg",
        "maxZoom": 8,
    },
    {
        "id": "MODIS_Terra_Land_Surface_Temp_Day",
        "name": "Land Surface Temperature (Day)",
        "description": "Daily land surface temperature",
        "resolution": "1km",
        "category": "Science Layers",
        "dataSource": "NASA GIBS",
        "baseUrl": "https://gibs-a.earthdata.nasa.gov/wmts/epsg3857/best",
        "tileFormat": "png",
        "maxZoom": 8,
    },
)

_TREK_TILE_ROOT = "https://trek.nasa.gov/tiles"
_HUBBLE_ANDROMEDA_ROOT = (
    "https://assets.science.nasa.gov/content/dam/science/missions/hubble/galaxies/andromeda"
)

_MOON_LAYERS: Tuple[Dict[str, Any], ...] = (
    {
        "id": "LRO_WAC_Mosaic_Global_303ppd",
        "name": "LRO WAC Global Mosaic",
        "description": "Lunar Reconnaissance Orbiter WAC global mosaic",
        "resolution": "100m",
        "category": "Base Layers",
        "dataSource": "NASA Trek",
        "baseUrl": (
            f"{_TREK_TILE_ROOT}/Moon/EQ/LRO_WAC_Mosaic_Global_303ppd_v02/1.0.0/"
            "default/default028mm/{z}/{y}/{x}.jpg"
        ),
        "tileFormat": "jpg",
        "maxZoom": 9,
        "type": "xyz",
        "minLevel": 4,
    },
)

_MARS_LAYERS: Tuple[Dict[str, Any], ...] = (
    {
        "id": "Mars_Viking_MDIM21_ClrMosaic_global_232m",
        "name": "Viking VIS, Global Color Mosaic (232m)",
        "description": "Global color mosaic of Mars (Viking MDIM2.1)",
        "resolution": "250m",
        "category": "Base Layers",
        "dataSource": "NASA Trek",
        "baseUrl": (
            f"{_TREK_TILE_ROOT}/Mars/EQ/Mars_Viking_MDIM21_ClrMosaic_global_232m/1.0.0/"
            "default/default028mm/{z}/{y}/{x}.jpg"
        ),
        "tileFormat": "jpg",
        "maxZoom": 9,
        "type": "xyz",
        "minLevel": 4,
    },
    {
        "id": "Mars_MGS_MOLA_ClrShade_merge_global_463m",
        "name": "MGS MOLA Color Shaded Relief (463m)",
        "description": "Color shaded relief map of Mars from MGS MOLA",
        "resolution": "463m",
        "category": "Base Layers",
        "dataSource": "NASA Trek",
        "baseUrl": (
            f"{_TREK_TILE_ROOT}/Mars/EQ/Mars_MGS_MOLA_ClrShade_merge_global_463m/1.0.0/"
            "default/default028mm/{z}/{y}/{x}.jpg"
        ),
        "tileFormat": "jpg",
        "maxZoom": 15,
        "type": "xyz",
        "minLevel": 0,
    },
)

_ANDROMEDA_LAYERS: Tuple[Dict[str, Any], ...] = (
    {
        "id": "Hubble_Andromeda",
        "name": "Hubble Andromeda Galaxy",
        "description": "Hubble M31 mosaic (2025 release)",
        "resolution": "10552x2468",
        "category": "Deep Space",
        "dataSource": "NASA Hubble",
        "baseUrl": (
            f"{_HUBBLE_ANDROMEDA_ROOT}/Hubble_M31Mosaic_2025_10552x2468_STScI-01JGY92V0Z2HJTVH605N4WH9XQ.jpg"
        ),
        "tileFormat": "jpg",
        "maxZoom": 8,
        "type": "image",
    },
    {
        "id": "Hubble_Andromeda_Compass",
        "name": "Hubble Andromeda Galaxy (Compass)",
        "description": "Hubble M31 mosaic with compass overlay (7680x4320)",
        "resolution": "7680x4320",
        "category": "Deep Space",
        "dataSource": "NASA Hubble",
        "baseUrl": (
            f"{_HUBBLE_ANDROMEDA_ROOT}/Hubble_M31Mosaic_Compass_7680x4320_STScI-01JGYCFA9BHKB7V0W7SKDKND29.jpg"
        ),
        "tileFormat": "jpg",
        "maxZoom": 8,
        "type": "image",
    },
)

DEFAULT_BODIES: Tuple[CelestialBody, ...] = (
    CelestialBody(
        id="earth",
        name="Earth",
        description="Our home planet with real-time satellite imagery",
        icon="🌍",
        layers=[Layer.from_config(entry) for entry in _GIBS_LAYERS],
    ),
    CelestialBody(
        id="moon",
        name="Moon",
        description="Lunar Reconnaissance Orbiter high-resolution imagery",
        icon="🌙",
        layers=[Layer.from_config(entry) for entry in _MOON_LAYERS],
    ),
    CelestialBody(
        id="mars",
        name="Mars",
        description="Mars Reconnaissance Orbiter, Viking, and other Mars missions",
        icon="🔴",
        layers=[Layer.from_config(entry) for entry in _MARS_LAYERS],
    ),
    CelestialBody(
        id="andromeda",
        name="Andromeda Galaxy",
        description="Hubble Space Telescope 2.5-gigapixel image",
        icon="🌌",
        layers=[Layer.from_config(entry) for entry in _ANDROMEDA_LAYERS],
    ),
)


class LayerCatalog:
    """Registry of celestial bodies and their imagery layers.

    Meant for a single event loop; concurrent ``add_layers_to_body`` calls from
    several threads are not coordinated.
    """

    def __init__(self, bodies: Iterable[CelestialBody] | None = None) -> None:
        source = DEFAULT_BODIES if bodies is None else bodies
        self._bodies: List[CelestialBody] = [copy.deepcopy(body) for body in source]

    @property
    def bodies(self) -> List[CelestialBody]:
        return list(self._bodies)

    def get_body(self, body_id: str) -> CelestialBody | None:
        for body in self._bodies:
            if body.id == body_id:
                return body
        return None

    def get_layers_for_body(self, body_id: str) -> List[Layer]:
        body = self.get_body(body_id)
        return list(body.layers) if body else []

    def get_layer(self, body_id: str, layer_id: str) -> Layer | None:
        for layer in self.get_layers_for_body(body_id):
            if layer.id == layer_id:
                return layer
        return None

    def require_layer(self, body_id: str, layer_id: str) -> Layer:
        layer = self.get_layer(body_id, layer_id)
        if layer is None:
            raise LayerNotFoundError(f"Layer {layer_id} not found for body {body_id}")
        return layer

    def add_layers_to_body(self, body_id: str, layers: Iterable[Layer]) -> List[Layer]:
        """Append layers whose id is not present yet and return the ones added."""

        body = self.get_body(body_id)
        if body is None:
            raise BodyNotFoundError(f"Celestial body {body_id} not found")

        known = {layer.id for layer in body.layers}
        added: List[Layer] = []
        for layer in layers:
            if layer.id in known:
                logger.debug("Skipping layer %s already registered for %s", layer.id, body_id)
                continue
            body.layers.append(layer)
            known.add(layer.id)
            added.append(layer)

        if added:
            logger.info("Registered %d new layer(s) for %s", len(added), body_id)
        return added
