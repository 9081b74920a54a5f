import asyncio
from datetime import date

import httpx
import pytest

from explorer.services.cache import MatrixSetCache
from explorer.services.catalog import LayerCatalog, LayerNotFoundError
from explorer.services.resolver import (
    DEFAULT_MATRIX_SET,
    TileSourceResolver,
    available_dates,
    swapped_extension,
    with_extension,
)
from explorer.services.viewer import SourceKind

VIIRS = "VIIRS_SNPP_CorrectedReflectance_TrueColor"


def _resolver(**kwargs) -> TileSourceResolver:
    return TileSourceResolver(LayerCatalog(), MatrixSetCache(), **kwargs)


def test_gibs_tile_source_keeps_placeholders():
    descriptor = _resolver().get_tile_source("earth", VIIRS, date(2025, 10, 2))

    assert VIIRS in descriptor.url
    assert "/default/2025-10-02/GoogleMapsCompatible_Level" in descriptor.url
    assert descriptor.url.endswith("/{z}/{y}/{x}.jpg")
    assert descriptor.matrix_set == DEFAULT_MATRIX_SET
    assert descriptor.width == descriptor.height == 256 * 2**8


def test_gibs_tile_source_uses_cached_matrix_set():
    resolver = _resolver()
    layer = resolver.catalog.require_layer("earth", VIIRS)
    resolver.matrix_sets.store(layer.base_url, VIIRS, "GoogleMapsCompatible_Level8")

    descriptor = resolver.get_tile_source("earth", VIIRS, date(2025, 10, 2))

    assert "/GoogleMapsCompatible_Level8/" in descriptor.url


def test_trek_tile_source_uses_template_and_format_override():
    resolver = _resolver()
    layer_id = "LRO_WAC_Mosaic_Global_303ppd"

    descriptor = resolver.get_tile_source("moon", layer_id)
    swapped = resolver.get_tile_source("moon", layer_id, tile_format="png")

    assert descriptor.url.endswith("/default028mm/{z}/{y}/{x}.jpg")
    assert swapped.url.endswith("/{z}/{y}/{x}.png")
    assert descriptor.width == 256 * 2**9


def test_static_image_tile_source_reads_resolution():
    resolver = _resolver()
    descriptor = resolver.get_tile_source("andromeda", "Hubble_Andromeda")
    layer = resolver.catalog.require_layer("andromeda", "Hubble_Andromeda")

    source = resolver.build_viewer_source(descriptor, layer)

    assert (descriptor.width, descriptor.height) == (10552, 2468)
    assert source.kind == SourceKind.IMAGE
    assert source.to_config()["buildPyramid"] is True


def test_unknown_layer_raises():
    with pytest.raises(LayerNotFoundError):
        _resolver().get_tile_source("earth", "Missing")


def test_pyramid_source_config_for_gibs():
    resolver = _resolver()
    layer = resolver.catalog.require_layer("earth", VIIRS)
    descriptor = resolver.get_tile_source("earth", VIIRS, date(2025, 10, 2))

    config = resolver.build_viewer_source(descriptor, layer).to_config()

    assert config["type"] == "legacy-image-pyramid"
    assert config["wrapHorizontal"] is True
    assert config["maxLevel"] == 8
    assert config["tileWidth"] == 256


def test_extension_helpers():
    assert with_extension("https://t/{z}/{y}/{x}.jpg", "png") == "https://t/{z}/{y}/{x}.png"
    assert swapped_extension("https://t/{z}/{y}/{x}.png") == "https://t/{z}/{y}/{x}.jpg"
    assert swapped_extension("https://t/{z}/{y}/{x}.jpeg") == "https://t/{z}/{y}/{x}.png"
    assert swapped_extension("https://t/{z}/{y}/{x}") is None


def test_available_dates_most_recent_first():
    dates = available_dates(date(2025, 3, 2), days=3)

    assert dates == [date(2025, 3, 2), date(2025, 3, 1), date(2025, 2, 28)]


def test_discovery_picks_advertised_matrix_set(gibs_capabilities, bright_png):
    requests_made = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests_made.append(str(request.url))
        if request.url.path.endswith("WMTSCapabilities.xml"):
            return httpx.Response(200, text=gibs_capabilities)
        if DEFAULT_MATRIX_SET in request.url.path:
            return httpx.Response(404)
        return httpx.Response(200, content=bright_png, headers={"Content-Type": "image/png"})

    resolver = _resolver()
    layer = resolver.catalog.require_layer("earth", VIIRS)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            discovered = await resolver.discover_matrix_set(client, layer)
            descriptor = resolver.get_tile_source("earth", VIIRS, date(2025, 10, 2))
            valid = await resolver.validate_tile_source(client, descriptor)
            again = await resolver.discover_matrix_set(client, layer)
            return discovered, descriptor, valid, again

    discovered, descriptor, valid, again = asyncio.run(run())

    assert discovered == again == "GoogleMapsCompatible_Level8"
    assert "/GoogleMapsCompatible_Level8/" in descriptor.url
    assert valid is True
    assert sum(url.endswith("WMTSCapabilities.xml") for url in requests_made) == 1


def test_validation_goes_through_proxy(bright_png):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=bright_png, headers={"Content-Type": "image/png"})

    resolver = _resolver(proxy_base="http://relay.test")
    descriptor = resolver.get_tile_source("moon", "LRO_WAC_Mosaic_Global_303ppd")

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await resolver.validate_tile_source(client, descriptor)

    assert asyncio.run(run()) is True
    assert seen == [
        "http://relay.test/api/tiles/trek.nasa.gov/tiles/Moon/EQ/LRO_WAC_Mosaic_Global_303ppd_v02"
        "/1.0.0/default/default028mm/0/0/0.jpg"
    ]


def test_layer_availability_false_on_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    resolver = _resolver()

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return (
                await resolver.check_layer_availability(client, "earth", VIIRS),
                await resolver.check_layer_availability(client, "earth", "Missing"),
            )

    assert asyncio.run(run()) == (False, False)


def test_matrix_set_cache_keeps_first_value():
    cache = MatrixSetCache()

    assert cache.store("https://gibs.test/best/", VIIRS, "GoogleMapsCompatible_Level8") == (
        "GoogleMapsCompatible_Level8"
    )
    assert cache.store("https://gibs.test/best", VIIRS, "GoogleMapsCompatible_Level9") == (
        "GoogleMapsCompatible_Level8"
    )
    assert cache.load("https://gibs.test/best", VIIRS) == "GoogleMapsCompatible_Level8"
    assert len(cache) == 1

    cache.clear()

    assert cache.load("https://gibs.test/best", VIIRS) is None
