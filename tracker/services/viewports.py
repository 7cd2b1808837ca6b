"""
Map viewports and their registry.

A Viewport is the server-side model of one map widget on the page: center,
zoom, the vehicle marker and (for the overview map) today's route. Every
mutation is published to the page as a full ``viewport`` patch, which the
browser applies to its map widget.

Map containers appear on the page on the client's schedule (layout, tab
switches, phone layouts), so the registry creates viewports lazily and only
once their container has been reported. Callers that find a viewport missing
trigger one bounded retry schedule instead of scattering timers:

    attempt at t = 0, 100, 500, 2000 ms after the trigger, then give up

and rely on the next real trigger (data arrival, layout report, tab switch)
to start a new schedule.
"""
import asyncio
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

import structlog

from tracker.services.display import BrowserPage, DisplayBoard

logger = structlog.get_logger("viewports")

LatLng = tuple[float, float]

MIN_ZOOM = 3
MAX_ZOOM = 19


@dataclass
class Marker:
    """Vehicle marker: last known valid position plus popup fields."""
    lat: float
    lng: float
    popup: dict

    @property
    def latlng(self) -> LatLng:
        return (self.lat, self.lng)

    def to_dict(self) -> dict:
        return {"lat": self.lat, "lng": self.lng, "popup": self.popup}


def zoom_for_span(lat_span: float, lng_span: float) -> int:
    """Largest zoom whose 256px tile still covers the given span."""
    span = max(lat_span, lng_span)
    if span <= 0:
        return MAX_ZOOM
    zoom = int(math.floor(math.log2(360.0 / span)))
    return max(MIN_ZOOM, min(MAX_ZOOM, zoom))


class Viewport:
    """One map display surface."""

    def __init__(self, name: str, center: LatLng, zoom: int, board: Optional[DisplayBoard] = None):
        self.name = name
        self.center: LatLng = tuple(center)
        self.zoom = zoom
        self.marker: Optional[Marker] = None
        self.path: list[LatLng] = []
        self._board = board

    def set_view(self, center: LatLng, zoom: Optional[int] = None) -> None:
        self.center = tuple(center)
        if zoom is not None:
            self.zoom = zoom
        self.publish()

    def set_path(self, points: Sequence[LatLng]) -> None:
        """Replace the drawn route."""
        self.path = [tuple(p) for p in points]
        self.publish()

    def fit_bounds(self, points: Sequence[LatLng]) -> None:
        if not points:
            return
        lats = [p[0] for p in points]
        lngs = [p[1] for p in points]
        center = ((min(lats) + max(lats)) / 2, (min(lngs) + max(lngs)) / 2)
        self.set_view(center, zoom_for_span(max(lats) - min(lats), max(lngs) - min(lngs)))

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "center": list(self.center),
            "zoom": self.zoom,
            "marker": self.marker.to_dict() if self.marker else None,
            "path": [list(p) for p in self.path],
        }

    def publish(self) -> None:
        if self._board is not None:
            self._board.emit("viewport", self.to_dict())


ViewportHook = Callable[[Viewport], None]


class ViewportRegistry:
    """Lazily creates named viewports once their container is on the page."""

    def __init__(
        self,
        page: BrowserPage,
        board: Optional[DisplayBoard] = None,
        retry_delays_ms: Sequence[int] = (0, 100, 500, 2000),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.page = page
        self.board = board
        self.retry_delays_ms = list(retry_delays_ms)
        self._sleep = sleep
        self._viewports: dict[str, Viewport] = {}
        self._wanted: dict[str, tuple[LatLng, int]] = {}
        self._created_hooks: list[ViewportHook] = []
        self._retry_task: Optional[asyncio.Task] = None

    def get(self, name: str) -> Optional[Viewport]:
        return self._viewports.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._viewports

    @property
    def viewports(self) -> list[Viewport]:
        return list(self._viewports.values())

    @property
    def missing(self) -> list[str]:
        return [name for name in self._wanted if name not in self._viewports]

    def want(self, name: str, initial_center: LatLng, initial_zoom: int) -> None:
        """Declare a viewport the retry schedule should create."""
        self._wanted[name] = (tuple(initial_center), initial_zoom)

    def on_created(self, hook: ViewportHook) -> None:
        self._created_hooks.append(hook)

    def ensure_viewport(self, name: str, initial_center: LatLng, initial_zoom: int) -> Optional[Viewport]:
        """
        Return the viewport for ``name``, creating it if its container exists.

        Returns None (without raising) when the container is not on the page
        yet; the caller retries later. Repeated calls never create a second
        viewport for the same name.
        """
        existing = self._viewports.get(name)
        if existing is not None:
            return existing

        if not self.page.has_container(name):
            logger.warning("Map container not found", viewport=name)
            return None

        viewport = Viewport(name, initial_center, initial_zoom, board=self.board)
        self._viewports[name] = viewport
        logger.info("Viewport created", viewport=name, center=viewport.center, zoom=initial_zoom)
        viewport.publish()
        for hook in self._created_hooks:
            hook(viewport)
        return viewport

    def ensure_all(self) -> bool:
        """One attempt at every wanted viewport. True when none are missing."""
        for name, (center, zoom) in self._wanted.items():
            self.ensure_viewport(name, center, zoom)
        return not self.missing

    async def retry_until_ready(self, trigger: str, delays_ms: Optional[Sequence[int]] = None) -> bool:
        """Attempt creation at each offset (ms after the trigger) until all exist."""
        delays = self.retry_delays_ms if delays_ms is None else list(delays_ms)
        elapsed = 0
        for offset in delays:
            wait = offset - elapsed
            if wait > 0:
                await self._sleep(wait / 1000)
            elapsed = max(elapsed, offset)
            if self.ensure_all():
                logger.info("Viewports ready", trigger=trigger, after_ms=offset)
                return True
        logger.warning("Viewports still missing after retry schedule", trigger=trigger, missing=self.missing)
        return False

    def schedule_retry(self, trigger: str) -> Optional[asyncio.Task]:
        """
        Run the retry schedule for ``trigger``.

        The t=0 attempt happens immediately; the remaining attempts run in a
        background task, replacing any schedule still in flight.
        """
        if self.ensure_all():
            return None
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No event loop for viewport retry", trigger=trigger)
            return None
        if self._retry_task is not None and not self._retry_task.done():
            self._retry_task.cancel()
        later = [d for d in self.retry_delays_ms if d > 0]
        self._retry_task = asyncio.create_task(self.retry_until_ready(trigger, later))
        return self._retry_task

    def cancel_retry(self) -> None:
        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None
