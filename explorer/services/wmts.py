from __future__ import annotations

import asyncio
import logging
import re
import xml.etree.ElementTree as ET
from typing import Iterable, Iterator, List, Sequence

import httpx

from .catalog import DataSource, Layer, LayerType
from .proxy import fetch_capabilities

logger = logging.getLogger(__name__)

PREFERRED_MATRIX_SET_MARKER = "GoogleMapsCompatible"
DEFAULT_TREK_MATRIX_SET = "default028mm"
DEFAULT_STYLE = "default"
DEFAULT_MAX_ZOOM = 9
CAPABILITIES_PATH = "1.0.0/WMTSCapabilities.xml"

_PLACEHOLDERS = (
    ("{TileMatrix}", "{z}"),
    ("{TileRow}", "{y}"),
    ("{TileCol}", "{x}"),
)
_TRAILING_DIGITS = re.compile(r"(\d+)$")


def capabilities_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/{CAPABILITIES_PATH}"


def parse_capabilities(xml_text: str) -> ET.Element | None:
    try:
        return ET.fromstring(xml_text)
    except ET.ParseError as exc:
        logger.warning("Failed to parse WMTS capabilities XML: %s", exc)
        return None


def _local_name(tag: object) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> Iterator[ET.Element]:
    for child in element:
        if _local_name(child.tag) == name:
            yield child


def _child_text(element: ET.Element, name: str) -> str | None:
    for child in _children(element, name):
        text = (child.text or "").strip()
        if text:
            return text
    return None


def _contents(root: ET.Element) -> ET.Element:
    for element in root.iter():
        if _local_name(element.tag) == "Contents":
            return element
    return root


def find_layer(root: ET.Element, layer_id: str | None = None) -> ET.Element | None:
    """Locate ``layer_id`` in the document, or its first layer when no id is given."""

    for layer in _children(_contents(root), "Layer"):
        if layer_id is None or _child_text(layer, "Identifier") == layer_id:
            return layer
    return None


def matrix_set_links(layer: ET.Element) -> List[str]:
    names: List[str] = []
    for link in _children(layer, "TileMatrixSetLink"):
        name = _child_text(link, "TileMatrixSet")
        if name and name not in names:
            names.append(name)
    return names


def preferred_matrix_set(names: Sequence[str]) -> str | None:
    """Prefer any Web Mercator (``GoogleMapsCompatible``) set, else the first link."""

    for name in names:
        if PREFERRED_MATRIX_SET_MARKER in name:
            return name
    return names[0] if names else None


def discover_matrix_set_name(xml_text: str, layer_id: str) -> str | None:
    root = parse_capabilities(xml_text)
    if root is None:
        return None
    layer = find_layer(root, layer_id)
    if layer is None:
        logger.info("Capabilities document does not advertise layer %s", layer_id)
        return None
    return preferred_matrix_set(matrix_set_links(layer))


def _parse_level(identifier: str) -> int | None:
    try:
        return int(identifier)
    except ValueError:
        match = _TRAILING_DIGITS.search(identifier)
        return int(match.group(1)) if match else None


def tile_matrix_levels(root: ET.Element, matrix_set: str) -> List[int]:
    for definition in _children(_contents(root), "TileMatrixSet"):
        if _child_text(definition, "Identifier") != matrix_set:
            continue
        levels: List[int] = []
        for matrix in _children(definition, "TileMatrix"):
            level = _parse_level(_child_text(matrix, "Identifier") or "")
            if level is not None:
                levels.append(level)
        return levels
    return []


def _default_style(layer: ET.Element) -> str:
    styles = list(_children(layer, "Style"))
    for style in styles:
        if style.attrib.get("isDefault", "").lower() == "true":
            return _child_text(style, "Identifier") or DEFAULT_STYLE
    if styles:
        return _child_text(styles[0], "Identifier") or DEFAULT_STYLE
    return DEFAULT_STYLE


def _tile_template(layer: ET.Element) -> str | None:
    for resource in _children(layer, "ResourceURL"):
        if resource.attrib.get("resourceType") == "tile" and resource.attrib.get("template"):
            return resource.attrib["template"]
    return None


def to_xyz_template(template: str, *, matrix_set: str, style: str) -> str:
    url = template.replace("{TileMatrixSet}", matrix_set).replace("{Style}", style)
    for placeholder, replacement in _PLACEHOLDERS:
        url = url.replace(placeholder, replacement)
    return url


def import_wmts_layer(xml_text: str, *, data_source: DataSource = DataSource.TREK) -> Layer | None:
    """Turn the first layer of a WMTS capabilities document into a catalog entry."""

    root = parse_capabilities(xml_text)
    if root is None:
        return None
    layer_node = find_layer(root)
    if layer_node is None:
        logger.info("Capabilities document contains no layers")
        return None

    template = _tile_template(layer_node)
    if not template:
        logger.info("WMTS layer has no tile ResourceURL template; skipping import")
        return None

    layer_id = _child_text(layer_node, "Identifier") or "WMTS_Layer"
    matrix_set = (matrix_set_links(layer_node) or [DEFAULT_TREK_MATRIX_SET])[0]
    levels = tile_matrix_levels(root, matrix_set)
    base_url = to_xyz_template(template, matrix_set=matrix_set, style=_default_style(layer_node))

    try:
        return Layer(
            id=layer_id,
            name=_child_text(layer_node, "Title") or layer_id,
            description=f"WMTS {layer_id}",
            resolution="unknown",
            category="Base Layers",
            data_source=data_source,
            base_url=base_url,
            tile_format="png" if base_url.lower().endswith(".png") else "jpg",
            max_zoom=max(levels) if levels else DEFAULT_MAX_ZOOM,
            min_level=min(levels) if levels else 0,
            type=LayerType.XYZ,
        )
    except ValueError as exc:
        logger.warning("Rejected WMTS layer %s: %s", layer_id, exc)
        return None


async def import_wmts_layers(
    client: httpx.AsyncClient,
    urls: Iterable[str],
    *,
    proxy_base: str | None = None,
) -> List[Layer]:
    """Import every capabilities URL that yields a usable layer; failures are skipped."""

    async def _import(url: str) -> Layer | None:
        xml_text = await fetch_capabilities(client, url, proxy_base=proxy_base)
        if xml_text is None:
            return None
        return import_wmts_layer(xml_text)

    url_list = list(urls)
    results = await asyncio.gather(*(_import(url) for url in url_list), return_exceptions=True)
    layers: List[Layer] = []
    for url, result in zip(url_list, results):
        if isinstance(result, Exception):
            logger.warning("WMTS import from %s failed: %s", url, result)
        elif isinstance(result, BaseException):
            raise result
        elif isinstance(result, Layer):
            layers.append(result)
    return layers
