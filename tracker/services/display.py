"""
Display bindings for the browser page.

DisplayBoard holds what every element of the dashboard should show and fans
each change out to connected SSE listeners. Updates always replace the
bound element or region wholesale, so re-applying an identical snapshot
leaves the board unchanged.

BrowserPage records what the client has told us about its layout: which map
containers exist, how wide the viewport is, which tab is active and whether
the user granted alert (notification) permission.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

logger = structlog.get_logger("display")

LISTENER_QUEUE_SIZE = 500


@dataclass
class DisplayValue:
    """Text plus optional visual state (css class) and colour."""
    text: str
    state: Optional[str] = None
    color: Optional[str] = None

    def to_dict(self) -> dict:
        return {"text": self.text, "state": self.state, "color": self.color}


class DisplayBoard:
    """Element-id keyed display state with patch fan-out."""

    def __init__(self):
        self.values: dict[str, DisplayValue] = {}
        self.regions: dict[str, list[dict]] = {}
        self._listeners: list[asyncio.Queue] = []

    # ---- element bindings ----

    def set_text(
        self,
        element_id: str,
        text: str,
        state: Optional[str] = None,
        color: Optional[str] = None,
    ) -> None:
        value = DisplayValue(text, state, color)
        self.values[element_id] = value
        self.emit("display", {"id": element_id, **value.to_dict()})

    def set_state(self, element_id: str, state: str) -> None:
        """Change only the visual state, keeping the current text."""
        current = self.values.get(element_id)
        self.set_text(element_id, current.text if current else "", state, current.color if current else None)

    def text(self, element_id: str) -> Optional[str]:
        value = self.values.get(element_id)
        return value.text if value else None

    def state(self, element_id: str) -> Optional[str]:
        value = self.values.get(element_id)
        return value.state if value else None

    # ---- list regions (timelines) ----

    def replace_region(self, region_id: str, items: list[dict]) -> None:
        self.regions[region_id] = list(items)
        self.emit("region", {"id": region_id, "items": self.regions[region_id]})

    def region(self, region_id: str) -> list[dict]:
        return self.regions.get(region_id, [])

    # ---- fan-out ----

    def emit(self, event_type: str, data: dict[str, Any]) -> None:
        """Queue a patch for every listener. Slow listeners drop patches."""
        message = {"type": event_type, "data": data}
        for queue in self._listeners:
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Listener queue full, dropping patch", type=event_type)

    def attach(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=LISTENER_QUEUE_SIZE)
        self._listeners.append(queue)
        return queue

    def detach(self, queue: asyncio.Queue) -> None:
        if queue in self._listeners:
            self._listeners.remove(queue)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def snapshot(self) -> dict:
        return {
            "values": {k: v.to_dict() for k, v in self.values.items()},
            "regions": {k: list(v) for k, v in self.regions.items()},
        }


@dataclass
class BrowserPage:
    """Client-reported page layout."""
    containers: set[str] = field(default_factory=set)
    width_px: Optional[int] = None
    active_tab: str = "overview"
    alerts_permitted: bool = False
    constrained_width_px: int = 768

    def has_container(self, container_id: str) -> bool:
        return container_id in self.containers

    @property
    def is_constrained(self) -> bool:
        """Phone-sized layout."""
        return self.width_px is not None and self.width_px <= self.constrained_width_px

    def update(
        self,
        containers: Optional[list[str]] = None,
        width_px: Optional[int] = None,
        active_tab: Optional[str] = None,
        alerts_permitted: Optional[bool] = None,
    ) -> None:
        if containers is not None:
            self.containers = set(containers)
        if width_px is not None:
            self.width_px = width_px
        if active_tab:
            self.active_tab = active_tab
        if alerts_permitted is not None:
            self.alerts_permitted = alerts_permitted
