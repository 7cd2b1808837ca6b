"""
DeviceStateSync: keeps the dashboard consistent with the device record.

Each store stream (location, status, geofence, stats, events,
notifications) is validated and normalized here, then fanned out to the
display bindings and, for location, to the marker/viewport layer.

The store enforces no schema, so payloads are treated defensively:
missing or sentinel GPS puts the coordinate displays in an "acquiring"
state and leaves every marker where it was; missing status/geofence fields
fall back to defaults. Every handler fully replaces what it renders, so
re-delivering a snapshot produces the same display.

Streams are delivered independently and may interleave in any order; no
handler reads another stream's state.
"""
import time
from typing import Any, Iterable, Optional

import structlog
from pydantic import ValidationError

from tracker.config import Settings, get_settings
from tracker.schemas import DeviceLocation, DeviceStatus, GeofenceState, TimelineEntry, TripStats
from tracker.services.display import BrowserPage, DisplayBoard
from tracker.services.formatting import (
    INSIDE_COLOR,
    OUTSIDE_COLOR,
    connection_color,
    format_coordinate,
    format_timestamp,
    format_uptime,
    geofence_text,
    status_label,
)
from tracker.services.markers import MarkerController
from tracker.services.speed import SpeedLimit
from tracker.services.viewports import ViewportRegistry
from tracker.store_client import device_path

logger = structlog.get_logger("state_sync")

OVERVIEW_MAP = "map"
FULL_MAP = "map-full"

# Tab on which each viewport is the one the user is looking at
VIEWPORT_TABS = {OVERVIEW_MAP: "overview", FULL_MAP: "map"}

ACQUIRING_TEXT = "Acquiring..."
ACQUIRING_STATE = "acquiring"
GPS_WARNING_INTERVAL_S = 30

COORDINATE_ELEMENTS = ("latitude", "longitude", "latitude-map", "longitude-map")
GEOFENCE_ELEMENTS = ("geofence-status", "geofence-status-map")

EVENTS = "events"
NOTIFICATIONS = "notifications"
TIMELINE_KINDS = (EVENTS, NOTIFICATIONS)


def js_round(value: float) -> int:
    """Round half up, as the dashboard has always displayed speeds."""
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


class DeviceStateSync:
    """Bridges store pushes to display bindings and map markers."""

    def __init__(
        self,
        device_id: str,
        board: DisplayBoard,
        page: BrowserPage,
        registry: ViewportRegistry,
        markers: MarkerController,
        speed_limit: SpeedLimit,
        settings: Optional[Settings] = None,
        clock=time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.device_id = device_id
        self.board = board
        self.page = page
        self.registry = registry
        self.markers = markers
        self.speed_limit = speed_limit
        self.last_location: Optional[DeviceLocation] = None
        self.alarm_count = 0
        self._clock = clock
        self._gps_warned_at: Optional[float] = None

    # ============ Location ============

    def on_location(self, raw: Any) -> None:
        location = self.parse_location(raw)
        if location is None or not location.is_valid:
            self._mark_acquiring()
            return

        self._gps_warned_at = None
        self.last_location = location

        lat = format_coordinate(location.latitude)
        lng = format_coordinate(location.longitude)
        self.board.set_text("latitude", lat)
        self.board.set_text("longitude", lng)
        self.board.set_text("latitude-map", lat)
        self.board.set_text("longitude-map", lng)

        speed = location.speed_kmh
        self.board.set_text("speed-map", f"{speed:.1f}")
        self.board.set_text("satellites-mini", str(location.satellites))
        self.board.set_text("satellites-map", str(location.satellites))
        self.board.set_text("current-speed", str(js_round(speed)), self.speed_limit.gauge_state(speed))

        if self.speed_limit.is_violation(speed):
            self._raise_speed_alarm(speed)

        self._update_viewports(location)

    def parse_location(self, raw: Any) -> Optional[DeviceLocation]:
        if not isinstance(raw, dict):
            return None
        try:
            return DeviceLocation.model_validate(raw)
        except ValidationError:
            return None

    def _mark_acquiring(self) -> None:
        now = self._clock()
        if self._gps_warned_at is None or now - self._gps_warned_at > GPS_WARNING_INTERVAL_S:
            logger.warning("GPS fix not available, waiting for satellites", device_id=self.device_id)
            self._gps_warned_at = now
        for element_id in COORDINATE_ELEMENTS:
            self.board.set_text(element_id, ACQUIRING_TEXT, ACQUIRING_STATE)

    def _raise_speed_alarm(self, speed: float) -> None:
        # Fires on every violating update; repeated alarms are intended
        self.alarm_count += 1
        limit = self.speed_limit.value
        self.board.emit("alarm", {"kind": "speed", "speedKmh": speed, "limit": limit})
        self.alert(
            "Speed Alert!",
            f"Vehicle exceeding speed limit: {js_round(speed)} km/h (Limit: {limit} km/h)",
            tag="speed-alert",
        )

    def _update_viewports(self, location: DeviceLocation) -> None:
        if self.registry.missing:
            self.registry.schedule_retry("location")

        constrained = self.page.is_constrained
        for viewport in self.registry.viewports:
            is_active = self.page.active_tab == VIEWPORT_TABS.get(viewport.name)
            zoom = None
            force = False
            if constrained:
                force = viewport.name == OVERVIEW_MAP or is_active
                zoom = (
                    self.settings.constrained_overview_zoom
                    if viewport.name == OVERVIEW_MAP
                    else self.settings.constrained_full_zoom
                )
            self.markers.follow(viewport, location, is_active=is_active, zoom=zoom, force=force)

    # ============ Status ============

    def on_status(self, raw: Any) -> None:
        status = self._parse(DeviceStatus, raw) or DeviceStatus()

        self.board.set_text(
            "system-status",
            status_label(status.oper_state, status.connection_type),
            status.oper_state,
            connection_color(status.connection_type),
        )
        self.board.set_text(
            "engine-status",
            "Running" if status.engine_running else "Stopped",
            "running" if status.engine_running else "stopped",
        )
        self.board.set_text(
            "armed-status",
            "Armed" if status.system_armed else "Disarmed",
            "armed" if status.system_armed else "disarmed",
        )
        self.board.set_text("arm-label", "Disarm" if status.system_armed else "Arm")

        if status.last_update:
            last_update = status.last_update
        elif status.timestamp:
            last_update = format_timestamp(status.timestamp)
        else:
            last_update = "Unknown"
        self.board.set_text("last-update", last_update)

        if status.uptime_seconds:
            self.board.set_text("uptime", format_uptime(status.uptime_seconds))

    # ============ Geofence ============

    def on_geofence(self, raw: Any) -> None:
        geofence = self._parse(GeofenceState, raw) or GeofenceState()
        text = geofence_text(geofence.zone_name, geofence.distance_meters, geofence.inside)
        state = "inside" if geofence.inside else "outside"
        color = INSIDE_COLOR if geofence.inside else OUTSIDE_COLOR
        for element_id in GEOFENCE_ELEMENTS:
            self.board.set_text(element_id, text, state, color)

    # ============ Trip stats ============

    def on_stats(self, raw: Any) -> None:
        """Both fields are required; a record without them is rejected."""
        stats = TripStats.model_validate(raw)
        self.board.set_text("distance-today", f"{stats.distance_today_km:.2f} km")
        self.board.set_text("max-speed", f"{js_round(stats.max_speed_kmh)} km/h")

    # ============ Events / notifications ============

    def on_timeline_batch(self, kind: str, raw_list: Optional[Iterable[Any]]) -> None:
        """Render a last-N batch (oldest first from the store) newest first."""
        if kind not in TIMELINE_KINDS:
            raise ValueError(f"Unknown timeline kind: {kind}")

        entries = []
        for raw in raw_list or []:
            entry = self._parse(TimelineEntry, raw)
            if entry is not None:
                entries.append(entry)
        entries.reverse()

        items = [self._timeline_item(kind, entry) for entry in entries]
        self.board.replace_region(f"{kind}-log", items)

        if kind == NOTIFICATIONS and entries:
            newest = entries[0]
            self.alert(newest.title, newest.body or "")

    def _timeline_item(self, kind: str, entry: TimelineEntry) -> dict:
        item = {
            "title": entry.title,
            "time": format_timestamp(entry.timestamp),
            "style": "timeline-item",
        }
        if kind == EVENTS and "ALERT" in entry.title:
            item["style"] = "timeline-item alert"
        if kind == NOTIFICATIONS:
            item["body"] = entry.body or ""
        return item

    # ============ Alerts ============

    def alert(self, title: str, body: str, tag: Optional[str] = None) -> bool:
        """User-facing alert, only if the page was granted alert permission."""
        if not self.page.alerts_permitted:
            return False
        self.board.emit("alert", {"title": title, "body": body, "tag": tag})
        return True

    # ============ Subscriptions ============

    def subscribe(self, store) -> list:
        """Start the session-lifetime subscriptions for every stream."""
        limit = self.settings.timeline_limit
        return [
            store.subscribe(device_path(self.device_id, "location"), self.on_location),
            store.subscribe(device_path(self.device_id, "status"), self._skip_empty(self.on_status)),
            store.subscribe(device_path(self.device_id, "geofence"), self._skip_empty(self.on_geofence)),
            store.subscribe(device_path(self.device_id, "stats"), self._skip_empty(self.on_stats)),
            store.subscribe(
                device_path(self.device_id, EVENTS),
                lambda batch: self.on_timeline_batch(EVENTS, batch),
                limit_to_last=limit,
            ),
            store.subscribe(
                device_path(self.device_id, NOTIFICATIONS),
                lambda batch: self.on_timeline_batch(NOTIFICATIONS, batch),
                limit_to_last=limit,
            ),
        ]

    @staticmethod
    def _skip_empty(handler):
        def deliver(raw):
            if raw:
                handler(raw)
        return deliver

    @staticmethod
    def _parse(model, raw):
        if not isinstance(raw, dict):
            return None
        try:
            return model.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding malformed payload", model=model.__name__)
            return None
