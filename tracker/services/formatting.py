"""
Display formatting: timestamps, uptime, coordinates, status labels.
"""
import math
from datetime import datetime, timezone
from typing import Optional, Union

# Epoch magnitude thresholds. Firmware builds disagree on seconds vs
# milliseconds, so the unit is inferred from the size of the number.
EPOCH_MS_THRESHOLD = 1_000_000_000_000
EPOCH_S_THRESHOLD = 1_000_000_000

DISPLAY_TIME_FORMAT = "%m/%d/%Y, %I:%M:%S %p"

GSM_COLOR = "#f59e0b"
WIFI_COLOR = "#10b981"
INSIDE_COLOR = "#10b981"
OUTSIDE_COLOR = "#ef4444"


def epoch_to_datetime(value: float, now: Optional[datetime] = None) -> datetime:
    """
    Interpret an epoch number of unknown unit.

    > 1e12 is milliseconds, > 1e9 is seconds, anything smaller is not a
    usable wall-clock time and maps to ``now``.
    """
    if value > EPOCH_MS_THRESHOLD:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if value > EPOCH_S_THRESHOLD:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return now or datetime.now(timezone.utc)


def format_timestamp(value: Union[int, float, str, None], now: Optional[datetime] = None) -> str:
    """Render a store timestamp in local time. Strings pass through unchanged."""
    if value is None or value == "" or value == 0:
        return "Unknown"
    if isinstance(value, str):
        return value
    return epoch_to_datetime(value, now).astimezone().strftime(DISPLAY_TIME_FORMAT)


def format_uptime(seconds: int) -> str:
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    return f"{hours}h {minutes}m"


def format_coordinate(value: float) -> str:
    return f"{value:.6f}"


def status_label(oper_state: str, connection_type: str) -> str:
    """'online', 'GSM' -> 'Online (GSM)'."""
    return f"{oper_state[:1].upper()}{oper_state[1:]} ({connection_type})"


def connection_color(connection_type: str) -> str:
    return GSM_COLOR if connection_type == "GSM" else WIFI_COLOR


def geofence_text(zone_name: str, distance_m: float, inside: bool) -> str:
    if inside:
        return f"Inside {zone_name} ✓"
    return f"Outside {zone_name} ({math.floor(distance_m + 0.5)}m)"
