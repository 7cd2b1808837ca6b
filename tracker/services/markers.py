"""
Vehicle marker lifecycle: one marker per viewport, following the last valid
GPS fix, plus the recentring policies that decide when a map follows it.

Markers are never removed; the vehicle is always somewhere. Position updates
are last-write-wins with no interpolation.
"""
import random
from typing import Optional

import structlog

from tracker.schemas import DeviceLocation
from tracker.services.formatting import format_coordinate
from tracker.services.viewports import LatLng, Marker, Viewport

logger = structlog.get_logger("markers")

POPUP_TITLE = "Vehicle Location"
WAITING_TEXT = "Waiting for GPS data..."


def location_popup(location: DeviceLocation) -> dict:
    """Popup fields for a fix: speed, satellites and coordinates."""
    return {
        "title": POPUP_TITLE,
        "speedKmh": round(location.speed_kmh, 1),
        "satellites": location.satellites,
        "latitude": location.latitude,
        "longitude": location.longitude,
        "text": (
            f"Speed: {location.speed_kmh:.1f} km/h · {location.satellites} satellites · "
            f"{format_coordinate(location.latitude)}, {format_coordinate(location.longitude)}"
        ),
    }


def waiting_popup() -> dict:
    return {"title": POPUP_TITLE, "text": WAITING_TEXT}


class RecentrePolicy:
    """Decides whether a viewport should recentre on the marker after a fix."""

    def should_recentre(self, viewport: Viewport, location: DeviceLocation, is_active: bool) -> bool:
        raise NotImplementedError


class StochasticRecentre(RecentrePolicy):
    """
    Recentre on a random subset of updates.

    Background maps follow the vehicle over time without jumping on every
    push.
    """

    def __init__(self, probability: float = 0.3, rng: Optional[random.Random] = None):
        self.probability = probability
        self.rng = rng or random.Random()

    def should_recentre(self, viewport: Viewport, location: DeviceLocation, is_active: bool) -> bool:
        return self.rng.random() < self.probability


class ActiveViewRecentre(RecentrePolicy):
    """Recentre on every update while the viewport is the one on screen."""

    def should_recentre(self, viewport: Viewport, location: DeviceLocation, is_active: bool) -> bool:
        return is_active


class MarkerController:
    """Owns the marker of every viewport."""

    def __init__(
        self,
        policies: Optional[dict[str, RecentrePolicy]] = None,
        default_policy: Optional[RecentrePolicy] = None,
        recentre_zooms: Optional[dict[str, int]] = None,
    ):
        self.policies = policies or {}
        self.default_policy = default_policy or ActiveViewRecentre()
        self.recentre_zooms = recentre_zooms or {}

    def policy_for(self, viewport: Viewport) -> RecentrePolicy:
        return self.policies.get(viewport.name, self.default_policy)

    def place_or_move(self, viewport: Viewport, location: DeviceLocation) -> Marker:
        """Create the marker at ``location`` or move the existing one there."""
        popup = location_popup(location)
        if viewport.marker is None:
            viewport.marker = Marker(location.latitude, location.longitude, popup)
            logger.info("Marker created", viewport=viewport.name, lat=location.latitude, lng=location.longitude)
        else:
            viewport.marker.lat = location.latitude
            viewport.marker.lng = location.longitude
            viewport.marker.popup = popup
        viewport.publish()
        return viewport.marker

    def ensure_marker(self, viewport: Viewport, position: Optional[LatLng] = None) -> Marker:
        """Marker for a freshly created viewport that has no fix yet."""
        if viewport.marker is None:
            lat, lng = position or viewport.center
            viewport.marker = Marker(lat, lng, waiting_popup())
            viewport.publish()
        return viewport.marker

    def follow(
        self,
        viewport: Viewport,
        location: DeviceLocation,
        is_active: bool,
        zoom: Optional[int] = None,
        force: bool = False,
    ) -> bool:
        """
        Move the marker and apply the viewport's recentring policy.

        ``force`` recentres regardless of policy (phone layouts keep the
        vehicle pinned to the middle of the map). Returns True if the view
        moved.
        """
        self.place_or_move(viewport, location)
        if not (force or self.policy_for(viewport).should_recentre(viewport, location, is_active)):
            return False
        viewport.set_view(location.latlng, zoom or viewport.zoom or self.recentre_zooms.get(viewport.name))
        return True

    def recentre(self, viewport: Viewport, location: DeviceLocation, zoom: Optional[int] = None) -> None:
        """Unconditional recentre (center-map button, tab switch)."""
        self.place_or_move(viewport, location)
        viewport.set_view(location.latlng, zoom or self.recentre_zooms.get(viewport.name))
