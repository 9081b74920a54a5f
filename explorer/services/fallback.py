"""Recovery cascade for loading one view into the deep-zoom viewer.

A view load walks ``RESOLVING -> PROBING -> LOADING`` and ends in
``SUCCEEDED``, ``DEGRADED`` (shown from a substitute source), ``FAILED`` or
``CANCELLED`` (superseded by a newer load). Recovery strategies run cheapest
first:

1. capability discovery of the GIBS tile matrix set, then the static
   ``GoogleMapsCompatible_Level8..11`` list;
2. a content probe that swaps a mostly black source for a 3x3 server-side
   mosaic;
3. one immediate alternate after the first viewer failure (previous day for
   GIBS, ``.jpg``/``.png`` swap for Trek);
4. retries of the primary source with linear backoff.

Every load owns a ``LoadToken``. Starting a new load cancels the previous
token, which wakes any pending backoff and keeps the stale load from touching
the orchestrator's visible state. The whole cascade is bounded by a deadline.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass, field, replace
from datetime import date as dt_date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Tuple

import httpx

from .. import config
from .catalog import DataSource, Layer
from .coordinates import TILE_SIZE
from .mosaic import MOSAIC_RADIUS, composite_neighborhood, encode_mosaic, mosaic_media_type
from .prober import ContentProber
from .proxy import MOSAIC_ROUTE
from .resolver import (
    DEFAULT_MATRIX_SET,
    FALLBACK_MATRIX_SETS,
    TileSourceDescriptor,
    TileSourceResolver,
    swapped_extension,
)
from .viewer import DeepZoomViewer, SourceKind, ViewerAdapter, ViewerSource

logger = logging.getLogger(__name__)

MAX_LOAD_ATTEMPTS = 3
MOSAIC_CENTER = (1, 1)
MOSAIC_FORMAT = "png"


class LoadState(str, Enum):
    RESOLVING = "resolving"
    PROBING = "probing"
    LOADING = "loading"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    DEGRADED = "degraded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class LoadCancelledError(Exception):
    """Raised inside a view load once a newer load has superseded it."""


class LoadToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise LoadCancelledError("View load superseded")

    async def sleep(self, delay: float) -> None:
        """Wait ``delay`` seconds unless the token is cancelled first."""

        if delay > 0:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        self.raise_if_cancelled()


@dataclass
class LoadStep:
    state: LoadState
    detail: str


@dataclass
class LoadOutcome:
    state: LoadState
    body_id: str
    layer_id: str
    descriptor: TileSourceDescriptor | None = None
    source: ViewerSource | None = None
    attempts: int = 0
    substitution: str | None = None
    message: str | None = None
    reload_available: bool = False
    panned: bool = False
    steps: List[LoadStep] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "body_id": self.body_id,
            "layer_id": self.layer_id,
            "descriptor": self.descriptor.to_dict() if self.descriptor else None,
            "tile_source": self.source.to_config() if self.source else None,
            "attempts": self.attempts,
            "substitution": self.substitution,
            "message": self.message,
            "reload_available": self.reload_available,
            "panned": self.panned,
            "steps": [{"state": step.state.value, "detail": step.detail} for step in self.steps],
        }


def failure_message(layer: Layer) -> str:
    return f"Failed to load {layer.data_source.value} imagery. Please try a different dataset."


class FallbackOrchestrator:
    """Runs the load cascade for one viewer; at most one load is current."""

    def __init__(
        self,
        resolver: TileSourceResolver,
        viewer: DeepZoomViewer,
        client: httpx.AsyncClient,
        *,
        prober: ContentProber | None = None,
        proxy_base: str | None = None,
        max_attempts: int = MAX_LOAD_ATTEMPTS,
        backoff_seconds: float | None = None,
        deadline_seconds: float | None = None,
    ) -> None:
        self.resolver = resolver
        self.adapter = ViewerAdapter(viewer)
        self.client = client
        self.prober = prober
        self.proxy_base = proxy_base
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = (
            config.retry_backoff_seconds() if backoff_seconds is None else backoff_seconds
        )
        self.deadline_seconds = (
            config.load_deadline_seconds() if deadline_seconds is None else deadline_seconds
        )
        self.state: LoadState | None = None
        self.error: str | None = None
        self.outcome: LoadOutcome | None = None
        self._token: LoadToken | None = None

    def cancel(self) -> None:
        if self._token is not None:
            self._token.cancel()

    async def load(
        self,
        body_id: str,
        layer_id: str,
        date: dt_date | datetime | None = None,
        *,
        lat: float | None = None,
        lon: float | None = None,
    ) -> LoadOutcome:
        """Load ``layer_id`` into the viewer, superseding any load in flight.

        Unknown layers raise ``LayerNotFoundError`` before anything is awaited.
        """

        layer = self.resolver.catalog.require_layer(body_id, layer_id)
        self.cancel()
        token = LoadToken()
        self._token = token
        outcome = LoadOutcome(state=LoadState.RESOLVING, body_id=body_id, layer_id=layer_id)

        try:
            if self.deadline_seconds > 0:
                await asyncio.wait_for(
                    self._run(token, layer, body_id, date, outcome),
                    timeout=self.deadline_seconds,
                )
            else:
                await self._run(token, layer, body_id, date, outcome)
        except LoadCancelledError:
            outcome.state = LoadState.CANCELLED
        except asyncio.TimeoutError:
            logger.warning(
                "Loading %s/%s exceeded the %.1fs deadline", body_id, layer_id, self.deadline_seconds
            )
            outcome.state = LoadState.FAILED
            outcome.message = failure_message(layer)
            outcome.reload_available = True

        if token is not self._token:
            outcome.state = LoadState.CANCELLED
            outcome.steps.append(LoadStep(LoadState.CANCELLED, "superseded by a newer selection"))
            return outcome
        if token.cancelled:
            outcome.state = LoadState.CANCELLED
            outcome.steps.append(LoadStep(LoadState.CANCELLED, "cancelled"))
            self._apply(outcome)
            return outcome

        if (
            outcome.state in {LoadState.SUCCEEDED, LoadState.DEGRADED}
            and lat is not None
            and lon is not None
            and outcome.source is not None
            and outcome.source.kind == SourceKind.PYRAMID
        ):
            outcome.panned = self.adapter.pan_to_lat_lon(
                lat, lon, layer, outcome.source.width, outcome.source.height
            )

        self._apply(outcome)
        return outcome

    def _apply(self, outcome: LoadOutcome) -> None:
        self.outcome = outcome
        self.state = outcome.state
        if outcome.state in {LoadState.SUCCEEDED, LoadState.DEGRADED}:
            self.error = None
        elif outcome.state == LoadState.FAILED:
            self.error = outcome.message

    def _enter(self, token: LoadToken, outcome: LoadOutcome, state: LoadState, detail: str) -> None:
        outcome.state = state
        outcome.steps.append(LoadStep(state, detail))
        if token is self._token:
            self.state = state
        logger.info("[%s/%s] %s: %s", outcome.body_id, outcome.layer_id, state.value, detail)

    async def _run(
        self,
        token: LoadToken,
        layer: Layer,
        body_id: str,
        date: dt_date | datetime | None,
        outcome: LoadOutcome,
    ) -> None:
        self._enter(token, outcome, LoadState.RESOLVING, f"resolving {layer.data_source.value} source")
        descriptor = await self._resolve(token, layer, body_id, date, outcome)
        source = self.resolver.build_viewer_source(descriptor, layer)
        substitution: str | None = None

        if self.prober is not None and source.kind == SourceKind.PYRAMID:
            self._enter(token, outcome, LoadState.PROBING, "sampling tiles for empty content")
            report = await self.prober.probe(self.client, source, layer)
            token.raise_if_cancelled()
            if report.likely_empty:
                self._enter(
                    token,
                    outcome,
                    LoadState.PROBING,
                    f"{report.empty} of {report.sampled} sampled tiles look empty; requesting mosaic",
                )
                mosaic = await self._request_mosaic(token, descriptor, report.zoom)
                if mosaic is not None:
                    descriptor = mosaic
                    source = self.resolver.build_viewer_source(descriptor, layer)
                    substitution = "mosaic"

        await self._load_with_retries(token, layer, body_id, descriptor, source, substitution, outcome)

    async def _resolve(
        self,
        token: LoadToken,
        layer: Layer,
        body_id: str,
        date: dt_date | datetime | None,
        outcome: LoadOutcome,
    ) -> TileSourceDescriptor:
        if layer.data_source != DataSource.GIBS or layer.is_static_image:
            return self.resolver.get_tile_source(body_id, layer.id, date)

        discovered = await self.resolver.discover_matrix_set(self.client, layer)
        token.raise_if_cancelled()
        if discovered:
            descriptor = self.resolver.get_tile_source(body_id, layer.id, date, matrix_set=discovered)
            if await self.resolver.validate_tile_source(self.client, descriptor):
                self._enter(token, outcome, LoadState.RESOLVING, f"using discovered matrix set {discovered}")
                return descriptor
            token.raise_if_cancelled()
            self._enter(token, outcome, LoadState.RESOLVING, f"discovered matrix set {discovered} did not validate")

        for matrix_set in FALLBACK_MATRIX_SETS:
            if matrix_set == discovered:
                continue
            descriptor = self.resolver.get_tile_source(body_id, layer.id, date, matrix_set=matrix_set)
            valid = await self.resolver.validate_tile_source(self.client, descriptor)
            token.raise_if_cancelled()
            if valid:
                self._enter(token, outcome, LoadState.RESOLVING, f"using fallback matrix set {matrix_set}")
                return descriptor

        self._enter(
            token, outcome, LoadState.RESOLVING, f"no matrix set validated; keeping {DEFAULT_MATRIX_SET}"
        )
        return self.resolver.get_tile_source(body_id, layer.id, date, matrix_set=DEFAULT_MATRIX_SET)

    async def _request_mosaic(
        self, token: LoadToken, descriptor: TileSourceDescriptor, zoom: int
    ) -> TileSourceDescriptor | None:
        x, y = MOSAIC_CENTER
        if self.proxy_base:
            payload = {"templateUrl": descriptor.url, "z": zoom, "x": x, "y": y, "format": MOSAIC_FORMAT}
            try:
                response = await self.client.post(f"{self.proxy_base}{MOSAIC_ROUTE}", json=payload)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.warning("Mosaic request for %s failed: %s", descriptor.layer_id, exc)
                return None
            content = response.content
        else:
            image = await composite_neighborhood(self.client, descriptor.url, z=zoom, x=x, y=y)
            content = encode_mosaic(image, MOSAIC_FORMAT)
        token.raise_if_cancelled()

        encoded = base64.b64encode(content).decode("ascii")
        side = (2 * MOSAIC_RADIUS + 1) * TILE_SIZE
        return replace(
            descriptor,
            url=f"data:{mosaic_media_type(MOSAIC_FORMAT)};base64,{encoded}",
            width=side,
            height=side,
            mosaic=True,
        )

    def _alternates(
        self, layer: Layer, body_id: str, descriptor: TileSourceDescriptor
    ) -> List[Tuple[str, TileSourceDescriptor]]:
        if descriptor.mosaic:
            return []
        if layer.data_source == DataSource.GIBS:
            previous_day = dt_date.fromisoformat(descriptor.date) - timedelta(days=1)
            alternate = self.resolver.get_tile_source(
                body_id, layer.id, previous_day, matrix_set=descriptor.matrix_set
            )
            return [("previous-date", alternate)]
        if layer.data_source == DataSource.TREK:
            swapped = swapped_extension(descriptor.url)
            if swapped:
                return [("extension-swap", replace(descriptor, url=swapped))]
        return []

    async def _load_with_retries(
        self,
        token: LoadToken,
        layer: Layer,
        body_id: str,
        descriptor: TileSourceDescriptor,
        source: ViewerSource,
        substitution: str | None,
        outcome: LoadOutcome,
    ) -> None:
        primary = (descriptor, source, substitution)
        alternates = self._alternates(layer, body_id, descriptor)
        attempt = 1

        while True:
            token.raise_if_cancelled()
            self._enter(token, outcome, LoadState.LOADING, f"attempt {attempt}: {descriptor.url[:120]}")
            result = await self.adapter.show(source)
            token.raise_if_cancelled()
            outcome.attempts += 1

            if result.ok:
                outcome.descriptor = descriptor
                outcome.source = source
                outcome.substitution = substitution
                final = LoadState.DEGRADED if substitution else LoadState.SUCCEEDED
                self._enter(token, outcome, final, "image loaded")
                return

            logger.warning(
                "Viewer failed to load %s (attempt %d): %s", layer.id, attempt, result.error
            )

            if alternates:
                label, alternate = alternates.pop(0)
                descriptor = alternate
                source = self.resolver.build_viewer_source(alternate, layer)
                substitution = label
                self._enter(token, outcome, LoadState.LOADING, f"trying {label} alternate")
                continue

            if attempt >= self.max_attempts:
                outcome.descriptor, outcome.source, _ = primary
                outcome.message = failure_message(layer)
                outcome.reload_available = True
                self._enter(token, outcome, LoadState.FAILED, f"gave up after {attempt} attempt(s)")
                return

            delay = self.backoff_seconds * attempt
            self._enter(token, outcome, LoadState.RETRYING, f"retrying in {delay:.1f}s")
            await token.sleep(delay)
            attempt += 1
            descriptor, source, substitution = primary
