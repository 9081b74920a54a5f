"""Thin relay helpers shared by the HTTP proxy routes and the client-side core.

The proxy is a byte forwarder: it fetches WMTS capability documents and tiles
from the public NASA servers on behalf of the browser, which cannot read them
directly because of cross-origin restrictions. Server-side callers may skip
the relay entirely by leaving ``EXPLORER_PROXY_BASE_URL`` unset.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Tuple

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TILE_CONTENT_TYPE = "image/png"
TILE_ROUTE = "/api/tiles"
CAPABILITIES_ROUTE = "/api/wmts/capabilities"
MOSAIC_ROUTE = "/api/mosaic"


@dataclass(frozen=True)
class UpstreamTile:
    content: bytes
    status_code: int
    content_type: str


def upstream_tile_url(tile_path: str) -> str:
    """Rebuild the upstream URL from a relay path such as ``gibs-a.earthdata.nasa.gov/wmts/...``."""

    return f"https://{tile_path.lstrip('/')}"


def proxied_tile_url(url: str, proxy_base: str | None) -> str:
    """Route ``url`` through the tile relay when a relay is configured."""

    if not proxy_base:
        return url
    parsed = httpx.URL(url)
    if parsed.scheme not in {"http", "https"} or not parsed.host:
        return url
    relay_path = f"{parsed.host}{parsed.raw_path.decode('ascii')}"
    return f"{proxy_base.rstrip('/')}{TILE_ROUTE}/{relay_path}"


def capabilities_request(url: str, proxy_base: str | None) -> Tuple[str, Dict[str, str] | None]:
    if not proxy_base:
        return url, None
    return f"{proxy_base.rstrip('/')}{CAPABILITIES_ROUTE}", {"url": url}


async def fetch_capabilities(
    client: httpx.AsyncClient, url: str, *, proxy_base: str | None = None
) -> str | None:
    """Download a WMTS capabilities document, returning ``None`` on failure."""

    request_url, params = capabilities_request(url, proxy_base)
    try:
        response = await client.get(request_url, params=params)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Failed to fetch WMTS capabilities from %s: %s", url, exc)
        return None
    return response.text


async def fetch_upstream_tile(client: httpx.AsyncClient, target_url: str) -> UpstreamTile:
    """Fetch one tile verbatim. Network errors propagate as ``httpx.HTTPError``."""

    response = await client.get(target_url)
    content_type = response.headers.get("Content-Type") or DEFAULT_TILE_CONTENT_TYPE
    if response.status_code >= 400:
        logger.warning("Upstream tile %s answered with status %s", target_url, response.status_code)
    return UpstreamTile(
        content=response.content,
        status_code=response.status_code,
        content_type=content_type,
    )


def is_image_response(response: httpx.Response) -> bool:
    content_type = response.headers.get("Content-Type", "")
    return "image" in content_type.lower()


def short_error_detail(detail: str) -> str:
    detail = detail.strip()
    if len(detail) > 160:
        return f"{detail[:157]}..."
    return detail or "(no detail)"
