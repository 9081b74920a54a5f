import asyncio
from datetime import date

import httpx
import pytest

from explorer.services.catalog import LayerCatalog, LayerNotFoundError
from explorer.services.coordinates import ViewportPoint
from explorer.services.fallback import FallbackOrchestrator, LoadState
from explorer.services.prober import ContentProber
from explorer.services.resolver import DEFAULT_MATRIX_SET, TileSourceResolver
from explorer.services.viewer import LoadResult, SourceKind

VIIRS = "VIIRS_SNPP_CorrectedReflectance_TrueColor"
LRO = "LRO_WAC_Mosaic_Global_303ppd"
MOLA = "Mars_MGS_MOLA_ClrShade_merge_global_463m"
RELAY = "http://relay.test"


class RecordingViewer:
    def __init__(self, results=None):
        self.sources = []
        self.results = list(results or [])
        self.center = None

    async def load_source(self, source):
        self.sources.append(source)
        ok = self.results.pop(0) if self.results else True
        return LoadResult(ok=ok, error=None if ok else "tile failed to load")

    def pan_to_normalized(self, point):
        self.center = point

    def image_to_viewport(self, point):
        width = self.sources[-1].width
        return ViewportPoint(point.x / width, point.y / width)


def _orchestrator(viewer, client, **kwargs):
    proxy_base = kwargs.pop("proxy_base", None)
    resolver = TileSourceResolver(LayerCatalog(), proxy_base=proxy_base)
    kwargs.setdefault("backoff_seconds", 0)
    kwargs.setdefault("deadline_seconds", 5)
    return FallbackOrchestrator(resolver, viewer, client, proxy_base=proxy_base, **kwargs)


def _bright_handler(bright_png):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("WMTSCapabilities.xml"):
            return httpx.Response(404)
        return httpx.Response(200, content=bright_png, headers={"Content-Type": "image/png"})

    return handler


def test_dark_source_is_replaced_by_mosaic_before_loading(gibs_capabilities, dark_png, bright_png):
    mosaic_requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/wmts/capabilities":
            return httpx.Response(200, text=gibs_capabilities)
        if request.url.path == "/api/mosaic":
            mosaic_requests.append(request.read())
            return httpx.Response(200, content=bright_png, headers={"Content-Type": "image/png"})
        if request.url.path.endswith("/0/0/0.jpg"):
            return httpx.Response(200, content=bright_png, headers={"Content-Type": "image/png"})
        return httpx.Response(200, content=dark_png, headers={"Content-Type": "image/png"})

    viewer = RecordingViewer()

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            orchestrator = _orchestrator(
                viewer, client, proxy_base=RELAY, prober=ContentProber(proxy_base=RELAY)
            )
            return await orchestrator.load("earth", VIIRS, date(2025, 10, 2))

    outcome = asyncio.run(run())

    assert outcome.state == LoadState.DEGRADED
    assert outcome.substitution == "mosaic"
    assert len(mosaic_requests) == 1
    assert b"GoogleMapsCompatible_Level8" in mosaic_requests[0]
    assert b'"z":6' in mosaic_requests[0].replace(b" ", b"")
    first = viewer.sources[0]
    assert first.kind == SourceKind.IMAGE
    assert first.url.startswith("data:image/png;base64,")
    assert (first.width, first.height) == (768, 768)
    states = [step.state for step in outcome.steps]
    assert states.index(LoadState.PROBING) < states.index(LoadState.LOADING)


def test_gibs_failure_tries_previous_day_once(bright_png):
    viewer = RecordingViewer([False, True])

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(_bright_handler(bright_png))) as client:
            orchestrator = _orchestrator(viewer, client)
            outcome = await orchestrator.load("earth", VIIRS, date(2025, 10, 2))
            return outcome, orchestrator

    outcome, orchestrator = asyncio.run(run())

    assert outcome.state == LoadState.DEGRADED
    assert outcome.substitution == "previous-date"
    assert "/2025-10-02/" in viewer.sources[0].url
    assert "/2025-10-01/" in viewer.sources[1].url
    assert outcome.descriptor.date == "2025-10-01"
    assert orchestrator.state == LoadState.DEGRADED
    assert orchestrator.error is None


def test_trek_failure_swaps_extension(bright_png):
    viewer = RecordingViewer([False, True])

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(_bright_handler(bright_png))) as client:
            return await _orchestrator(viewer, client).load("moon", LRO)

    outcome = asyncio.run(run())

    assert outcome.state == LoadState.DEGRADED
    assert outcome.substitution == "extension-swap"
    assert viewer.sources[0].url.endswith("{x}.jpg")
    assert viewer.sources[1].url.endswith("{x}.png")


def test_repeated_failures_end_with_reloadable_error(bright_png):
    viewer = RecordingViewer([False] * 10)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(_bright_handler(bright_png))) as client:
            orchestrator = _orchestrator(viewer, client)
            outcome = await orchestrator.load("moon", LRO)
            return outcome, orchestrator

    outcome, orchestrator = asyncio.run(run())

    assert outcome.state == LoadState.FAILED
    assert outcome.message == "Failed to load NASA Trek imagery. Please try a different dataset."
    assert outcome.reload_available
    assert orchestrator.error == outcome.message
    assert len(viewer.sources) == 4
    assert [step.state for step in outcome.steps].count(LoadState.RETRYING) == 2


def test_success_clears_previous_error(bright_png):
    viewer = RecordingViewer([False] * 4)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(_bright_handler(bright_png))) as client:
            orchestrator = _orchestrator(viewer, client)
            await orchestrator.load("moon", LRO)
            failed_error = orchestrator.error
            outcome = await orchestrator.load("mars", MOLA)
            return failed_error, outcome, orchestrator

    failed_error, outcome, orchestrator = asyncio.run(run())

    assert failed_error
    assert outcome.state == LoadState.SUCCEEDED
    assert orchestrator.error is None


def test_newer_load_supersedes_older_one(bright_png):
    release = {}

    class BlockingViewer(RecordingViewer):
        async def load_source(self, source):
            self.sources.append(source)
            if len(self.sources) == 1:
                await release["event"].wait()
            return LoadResult(ok=True)

    viewer = BlockingViewer()

    async def run():
        release["event"] = asyncio.Event()
        async with httpx.AsyncClient(transport=httpx.MockTransport(_bright_handler(bright_png))) as client:
            orchestrator = _orchestrator(viewer, client)
            first = asyncio.create_task(orchestrator.load("moon", LRO))
            while not viewer.sources:
                await asyncio.sleep(0)
            second = await orchestrator.load("mars", MOLA)
            release["event"].set()
            return await first, second, orchestrator

    first, second, orchestrator = asyncio.run(run())

    assert first.state == LoadState.CANCELLED
    assert second.state == LoadState.SUCCEEDED
    assert orchestrator.outcome is second
    assert orchestrator.state == LoadState.SUCCEEDED


def test_cancel_wakes_pending_backoff(bright_png):
    viewer = RecordingViewer([False] * 10)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(_bright_handler(bright_png))) as client:
            orchestrator = _orchestrator(viewer, client, backoff_seconds=60, deadline_seconds=0)
            task = asyncio.create_task(orchestrator.load("moon", LRO))
            while orchestrator.state != LoadState.RETRYING:
                await asyncio.sleep(0)
            orchestrator.cancel()
            outcome = await asyncio.wait_for(task, timeout=5)
            return outcome, orchestrator

    outcome, orchestrator = asyncio.run(run())

    assert outcome.state == LoadState.CANCELLED
    assert orchestrator.state == LoadState.CANCELLED
    assert len(viewer.sources) == 2


def test_deadline_bounds_the_cascade(bright_png):
    class HangingViewer(RecordingViewer):
        async def load_source(self, source):
            await asyncio.sleep(30)
            return LoadResult(ok=True)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(_bright_handler(bright_png))) as client:
            orchestrator = _orchestrator(HangingViewer(), client, deadline_seconds=0.05)
            return await orchestrator.load("mars", MOLA)

    outcome = asyncio.run(run())

    assert outcome.state == LoadState.FAILED
    assert outcome.reload_available
    assert "NASA Trek" in outcome.message


def test_successful_load_pans_to_coordinates(bright_png):
    viewer = RecordingViewer()

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(_bright_handler(bright_png))) as client:
            return await _orchestrator(viewer, client).load(
                "earth", VIIRS, date(2025, 10, 2), lat=0.0, lon=0.0
            )

    outcome = asyncio.run(run())

    assert outcome.state == LoadState.SUCCEEDED
    assert outcome.panned
    assert viewer.center.x == pytest.approx(0.5)
    assert viewer.center.y == pytest.approx(0.5)


def test_unknown_layer_is_rejected_immediately():
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200))) as client:
            await _orchestrator(RecordingViewer(), client).load("earth", "Nope")

    with pytest.raises(LayerNotFoundError):
        asyncio.run(run())


def _matrix_set_handler(bright_png, capabilities=None, missing=()):
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("WMTSCapabilities.xml"):
            if capabilities is None:
                return httpx.Response(500)
            return httpx.Response(200, text=capabilities)
        requested.append(request.url.path)
        if any(f"/{matrix_set}/" in request.url.path for matrix_set in missing):
            return httpx.Response(404)
        return httpx.Response(200, content=bright_png, headers={"Content-Type": "image/png"})

    return handler, requested


def _load_viirs(handler, viewer):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await _orchestrator(viewer, client).load("earth", VIIRS, date(2025, 10, 2))

    return asyncio.run(run())


def test_static_matrix_sets_tried_in_order_when_discovery_fails(bright_png):
    handler, requested = _matrix_set_handler(
        bright_png, missing=("GoogleMapsCompatible_Level8", "GoogleMapsCompatible_Level9")
    )
    viewer = RecordingViewer()

    outcome = _load_viirs(handler, viewer)

    assert outcome.state == LoadState.SUCCEEDED
    assert outcome.descriptor.matrix_set == "GoogleMapsCompatible_Level10"
    assert "/GoogleMapsCompatible_Level10/" in viewer.sources[0].url
    assert [path.split("/")[-4] for path in requested] == [
        "GoogleMapsCompatible_Level8",
        "GoogleMapsCompatible_Level9",
        "GoogleMapsCompatible_Level10",
    ]


def test_discovered_matrix_set_skipped_when_it_does_not_validate(gibs_capabilities, bright_png):
    handler, requested = _matrix_set_handler(
        bright_png, capabilities=gibs_capabilities, missing=("GoogleMapsCompatible_Level8",)
    )
    viewer = RecordingViewer()

    outcome = _load_viirs(handler, viewer)

    assert outcome.state == LoadState.SUCCEEDED
    assert outcome.descriptor.matrix_set == "GoogleMapsCompatible_Level9"
    assert sum("/GoogleMapsCompatible_Level8/" in path for path in requested) == 1
    assert any("did not validate" in step.detail for step in outcome.steps)


def test_default_matrix_set_kept_when_nothing_validates(bright_png):
    handler, requested = _matrix_set_handler(
        bright_png,
        missing=tuple(f"GoogleMapsCompatible_Level{level}" for level in range(8, 12)),
    )
    viewer = RecordingViewer()

    outcome = _load_viirs(handler, viewer)

    assert len(requested) == 4
    assert outcome.state == LoadState.SUCCEEDED
    assert outcome.descriptor.matrix_set == DEFAULT_MATRIX_SET
    assert "/GoogleMapsCompatible_Level9/" in viewer.sources[0].url
    assert any("no matrix set validated" in step.detail for step in outcome.steps)
