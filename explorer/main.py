from __future__ import annotations

import asyncio
import logging
from datetime import date as dt_date
from typing import Dict, List

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field
from sqlmodel import Session

from . import config
from .database import get_session, init_db
from .services.annotations import AnnotationCreate, AnnotationStore, AnnotationUpdate
from .services.cache import MatrixSetCache
from .services.catalog import BodyNotFoundError, LayerCatalog, LayerNotFoundError
from .services.fallback import FallbackOrchestrator
from .services.mosaic import MosaicError, composite_neighborhood, encode_mosaic, mosaic_media_type
from .services.prober import ContentProber
from .services.proxy import fetch_upstream_tile, short_error_detail, upstream_tile_url
from .services.resolver import TileSourceResolver, available_dates
from .services.viewer import HeadlessViewer
from .services.wmts import import_wmts_layers

app = FastAPI(title="NASA Gigapixel Explorer", version="0.1.0")

logger = logging.getLogger(__name__)

catalog = LayerCatalog()
matrix_sets = MatrixSetCache()
resolver = TileSourceResolver(catalog, matrix_sets, proxy_base=config.proxy_base_url())


class MosaicRequest(BaseModel):
    templateUrl: str | None = None
    z: int | None = None
    x: int | None = None
    y: int | None = None
    format: str | None = "png"


class ImportLayersRequest(BaseModel):
    urls: List[str] = Field(default_factory=list)


class ViewRequest(BaseModel):
    view_id: str
    body: str
    layer: str
    date: dt_date | None = None
    lat: float | None = None
    lon: float | None = None


class CancelViewRequest(BaseModel):
    view_id: str


_active_views: Dict[str, FallbackOrchestrator] = {}
_view_lock = asyncio.Lock()


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=config.request_timeout(), follow_redirects=True)


async def _register_view(view_id: str, orchestrator: FallbackOrchestrator) -> None:
    async with _view_lock:
        previous = _active_views.get(view_id)
        if previous is not None:
            previous.cancel()
        _active_views[view_id] = orchestrator


async def _lookup_view(view_id: str) -> FallbackOrchestrator | None:
    async with _view_lock:
        return _active_views.get(view_id)


async def _unregister_view(view_id: str, orchestrator: FallbackOrchestrator) -> None:
    async with _view_lock:
        if _active_views.get(view_id) is orchestrator:
            _active_views.pop(view_id, None)


def _parse_date(value: str | None) -> dt_date | None:
    if not value:
        return None
    try:
        return dt_date.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid date: {value}") from exc


@app.on_event("startup")
def on_startup() -> None:
    init_db()


@app.get("/api/wmts/capabilities")
async def wmts_capabilities(url: str | None = Query(default=None)) -> Response:
    if not url:
        raise HTTPException(status_code=400, detail="Missing url parameter")

    try:
        async with _http_client() as client:
            response = await client.get(url)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Capabilities relay for %s failed: %s", url, exc)
        raise HTTPException(status_code=500, detail="Failed to fetch capabilities") from exc

    media_type = response.headers.get("Content-Type", "application/xml")
    return Response(content=response.content, media_type=media_type)


@app.get("/api/tiles/{tile_path:path}")
async def relay_tile(tile_path: str, request: Request) -> Response:
    if not tile_path.strip("/"):
        raise HTTPException(status_code=400, detail="Missing tile path")

    target = upstream_tile_url(tile_path)
    if request.url.query:
        target = f"{target}?{request.url.query}"

    try:
        async with _http_client() as client:
            tile = await fetch_upstream_tile(client, target)
    except httpx.HTTPError as exc:
        logger.warning("Tile relay for %s failed: %s", target, exc)
        raise HTTPException(status_code=500, detail="Failed to fetch tile") from exc

    return Response(content=tile.content, status_code=tile.status_code, media_type=tile.content_type)


@app.post("/api/mosaic")
async def build_mosaic(request: MosaicRequest) -> Response:
    if not request.templateUrl or request.z is None or request.x is None or request.y is None:
        raise HTTPException(status_code=400, detail="templateUrl, z, x, y are required")

    try:
        async with _http_client() as client:
            image = await composite_neighborhood(
                client, request.templateUrl, z=request.z, x=request.x, y=request.y
            )
        content = encode_mosaic(image, request.format)
    except MosaicError as exc:
        logger.warning("Mosaic request rejected: %s", exc)
        raise HTTPException(status_code=500, detail="Mosaic generation failed") from exc
    except Exception as exc:
        logger.exception("Mosaic generation failed: %s", exc)
        raise HTTPException(status_code=500, detail="Mosaic generation failed") from exc

    return Response(content=content, media_type=mosaic_media_type(request.format))


@app.get("/api/bodies")
def list_bodies() -> List[Dict[str, object]]:
    return [body.to_config() for body in catalog.bodies]


@app.get("/api/bodies/{body_id}/layers")
def list_layers(body_id: str) -> List[Dict[str, object]]:
    if catalog.get_body(body_id) is None:
        raise HTTPException(status_code=404, detail=f"Celestial body {body_id} not found")
    return [layer.to_config() for layer in catalog.get_layers_for_body(body_id)]


@app.post("/api/bodies/{body_id}/layers/import")
async def import_layers(body_id: str, request: ImportLayersRequest) -> Dict[str, object]:
    if catalog.get_body(body_id) is None:
        raise HTTPException(status_code=404, detail=f"Celestial body {body_id} not found")

    urls = [url.strip() for url in request.urls if url and url.strip()]
    if not urls:
        return {"imported": 0, "layers": []}

    async with _http_client() as client:
        layers = await import_wmts_layers(client, urls)

    try:
        added = catalog.add_layers_to_body(body_id, layers)
    except BodyNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"imported": len(added), "layers": [layer.to_config() for layer in added]}


@app.get("/api/tile-source")
def tile_source(
    body: str = Query(...),
    layer: str = Query(...),
    date: str | None = Query(default=None),
) -> Dict[str, object]:
    image_date = _parse_date(date)
    try:
        descriptor = resolver.get_tile_source(body, layer, image_date)
    except LayerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    layer_config = catalog.require_layer(body, layer)
    source = resolver.build_viewer_source(descriptor, layer_config)
    return {"descriptor": descriptor.to_dict(), "tile_source": source.to_config()}


@app.get("/api/bodies/{body_id}/layers/{layer_id}/dates")
def layer_dates(body_id: str, layer_id: str) -> Dict[str, object]:
    try:
        catalog.require_layer(body_id, layer_id)
    except LayerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"dates": [day.isoformat() for day in available_dates()]}


@app.post("/api/view")
async def load_view(request: ViewRequest) -> Dict[str, object]:
    view_id = request.view_id.strip()
    if not view_id:
        raise HTTPException(status_code=400, detail="view_id is required")
    try:
        catalog.require_layer(request.body, request.layer)
    except LayerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    proxy_base = config.proxy_base_url()
    async with _http_client() as client:
        orchestrator = FallbackOrchestrator(
            resolver,
            HeadlessViewer(client, proxy_base=proxy_base),
            client,
            prober=ContentProber(proxy_base=proxy_base),
            proxy_base=proxy_base,
        )
        await _register_view(view_id, orchestrator)
        try:
            outcome = await orchestrator.load(
                request.body, request.layer, request.date, lat=request.lat, lon=request.lon
            )
        finally:
            await _unregister_view(view_id, orchestrator)

    return outcome.to_dict()


@app.post("/api/view/cancel")
async def cancel_view(request: CancelViewRequest) -> Dict[str, object]:
    view_id = request.view_id.strip()
    if not view_id:
        raise HTTPException(status_code=400, detail="view_id is required")

    orchestrator = await _lookup_view(view_id)
    if orchestrator is None:
        return {"status": "not_found"}

    orchestrator.cancel()
    return {"status": "stopping"}


@app.get("/api/annotations")
def list_annotations(
    layer: str | None = Query(default=None),
    date: str = Query(default=""),
    session: Session = Depends(get_session),
) -> List[Dict[str, object]]:
    store = AnnotationStore(session)
    if layer is not None:
        annotations = store.get_annotations_for_layer(layer, date)
    else:
        annotations = store.load_annotations()
    return [annotation.to_json() for annotation in annotations]


@app.post("/api/annotations", status_code=201)
def create_annotation(
    draft: AnnotationCreate, session: Session = Depends(get_session)
) -> Dict[str, object]:
    return AnnotationStore(session).add_annotation(draft).to_json()


@app.get("/api/annotations/export")
def export_annotations(session: Session = Depends(get_session)) -> Response:
    return Response(
        content=AnnotationStore(session).export_annotations(),
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="annotations.json"'},
    )


@app.post("/api/annotations/import")
async def import_annotations(
    request: Request, session: Session = Depends(get_session)
) -> Dict[str, object]:
    raw_body = await request.body()
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="Annotations must be UTF-8 JSON") from exc

    if not AnnotationStore(session).import_annotations(payload):
        raise HTTPException(
            status_code=400, detail=f"Invalid annotations payload: {short_error_detail(payload)}"
        )
    return {"status": "ok", "imported": True}


@app.patch("/api/annotations/{annotation_id}")
def update_annotation(
    annotation_id: str, updates: AnnotationUpdate, session: Session = Depends(get_session)
) -> Dict[str, object]:
    annotation = AnnotationStore(session).update_annotation(annotation_id, updates)
    if annotation is None:
        raise HTTPException(status_code=404, detail=f"Annotation {annotation_id} not found")
    return annotation.to_json()


@app.delete("/api/annotations/{annotation_id}")
def delete_annotation(annotation_id: str, session: Session = Depends(get_session)) -> Dict[str, object]:
    if not AnnotationStore(session).delete_annotation(annotation_id):
        raise HTTPException(status_code=404, detail=f"Annotation {annotation_id} not found")
    return {"status": "deleted", "id": annotation_id}
