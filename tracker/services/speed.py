"""
Speed limit setting and speed classification.

The limit is loaded once when a dashboard session starts, read on every
location update and changed only by an explicit user action.
"""
import structlog

from tracker.config import Settings, get_settings
from tracker.store_client import device_path

logger = structlog.get_logger("speed")

GAUGE_NORMAL = "normal"
GAUGE_WARNING = "warning"
GAUGE_OVER_LIMIT = "over-limit"


class SpeedLimit:
    """Session speed limit in km/h."""

    def __init__(self, store, device_id: str, settings: Settings = None):
        self.settings = settings or get_settings()
        self.store = store
        self.device_id = device_id
        self.value: int = self.settings.default_speed_limit

    @property
    def path(self) -> str:
        return device_path(self.device_id, "settings", "speedLimit")

    def validate(self, limit: int) -> int:
        if not self.settings.speed_limit_min <= limit <= self.settings.speed_limit_max:
            raise ValueError(
                f"Please enter a speed limit between {self.settings.speed_limit_min} "
                f"and {self.settings.speed_limit_max} km/h"
            )
        return limit

    async def load(self) -> int:
        """Read the persisted limit; keep the default when none is stored or it is out of range."""
        stored = await self.store.get(self.path)
        if stored:
            try:
                self.value = self.validate(int(stored))
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid stored speed limit", value=stored, default=self.value)
        logger.info("Speed limit loaded", limit=self.value)
        return self.value

    async def update(self, limit: int) -> int:
        """Validate, persist, then adopt a new limit. Raises StoreWriteError on write failure."""
        limit = self.validate(int(limit))
        await self.store.set(self.path, limit)
        self.value = limit
        logger.info("Speed limit updated", limit=limit)
        return limit

    def is_violation(self, speed_kmh: float) -> bool:
        """Over the limit, ignoring crawling speeds where GPS noise dominates."""
        return speed_kmh > self.value and speed_kmh > self.settings.speed_alarm_floor_kmh

    def gauge_state(self, speed_kmh: float) -> str:
        if speed_kmh > self.value:
            return GAUGE_OVER_LIMIT
        if speed_kmh > self.value * self.settings.speed_warning_ratio:
            return GAUGE_WARNING
        return GAUGE_NORMAL
