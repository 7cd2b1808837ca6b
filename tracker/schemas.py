"""
Pydantic schemas for store payloads and request/response validation.

Store payloads come from the tracker firmware, which writes camelCase (and
a few legacy short) field names with no schema enforcement. Each payload
model accepts both spellings and fills the defaults the dashboard relies on.
"""
import math
from enum import Enum
from typing import Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator


EpochOrText = Union[int, float, str]


# ============ Device payloads ============

class DeviceLocation(BaseModel):
    """GPS fix written to /devices/D/location."""
    model_config = ConfigDict(populate_by_name=True)

    latitude: float
    longitude: float
    speed_kmh: float = Field(0.0, validation_alias=AliasChoices("speed", "speedKmh", "speed_kmh"))
    satellites: int = 0
    altitude: Optional[float] = None
    timestamp: Optional[EpochOrText] = None

    @field_validator("speed_kmh", "satellites", mode="before")
    @classmethod
    def none_is_zero(cls, v):
        return 0 if v is None else v

    @property
    def is_valid(self) -> bool:
        """0 in either coordinate is the firmware's "no fix yet" sentinel."""
        return self.latitude != 0 and self.longitude != 0

    @property
    def latlng(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)


class DeviceStatus(BaseModel):
    """Device status record written to /devices/D/status."""
    model_config = ConfigDict(populate_by_name=True)

    oper_state: str = Field("unknown", validation_alias=AliasChoices("status", "operState", "oper_state"))
    connection_type: str = Field("WiFi", validation_alias=AliasChoices("connection", "connectionType", "connection_type"))
    engine_running: bool = Field(False, validation_alias=AliasChoices("engineRunning", "engine_running"))
    system_armed: bool = Field(False, validation_alias=AliasChoices("systemArmed", "system_armed"))
    last_update: Optional[str] = Field(None, validation_alias=AliasChoices("lastUpdate", "last_update"))
    timestamp: Optional[float] = None
    uptime_seconds: Optional[int] = Field(None, validation_alias=AliasChoices("uptime", "uptimeSeconds", "uptime_seconds"))

    @field_validator("oper_state", "connection_type", "engine_running", "system_armed", mode="before")
    @classmethod
    def none_uses_default(cls, v, info):
        if v is None or v == "":
            return cls.model_fields[info.field_name].default
        return v


class GeofenceState(BaseModel):
    """Geofence evaluation written by the device to /devices/D/geofence."""
    model_config = ConfigDict(populate_by_name=True)

    zone_name: str = Field("Home Zone", validation_alias=AliasChoices("fence", "name", "zoneName", "zone_name"))
    distance_meters: float = Field(0.0, validation_alias=AliasChoices("distance", "distanceMeters", "distance_meters"))
    inside: bool = False

    @field_validator("zone_name", mode="before")
    @classmethod
    def blank_name_is_home(cls, v):
        return v or "Home Zone"

    @field_validator("distance_meters", mode="before")
    @classmethod
    def unusable_distance_is_zero(cls, v):
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        if math.isnan(value) or value < 0:
            return 0.0
        return value

    @field_validator("inside", mode="before")
    @classmethod
    def none_is_outside(cls, v):
        return bool(v)


class TripStats(BaseModel):
    """Daily trip statistics written to /devices/D/stats."""
    model_config = ConfigDict(populate_by_name=True)

    distance_today_km: float = Field(..., validation_alias=AliasChoices("distanceToday", "distanceTodayKm", "distance_today_km"))
    max_speed_kmh: float = Field(..., validation_alias=AliasChoices("maxSpeed", "maxSpeedKmh", "max_speed_kmh"))


class TimelineEntry(BaseModel):
    """Entry of the events or notifications log."""
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field("", validation_alias=AliasChoices("title", "event"))
    body: Optional[str] = None
    timestamp: Optional[EpochOrText] = None


class HistoryRecord(BaseModel):
    """Breadcrumb appended to /devices/D/history. ``timestamp`` is epoch ms."""
    model_config = ConfigDict(populate_by_name=True)

    timestamp: float
    latitude: float
    longitude: float
    speed: Optional[float] = None
    altitude: Optional[float] = None
    satellites: Optional[int] = None


class GeofenceConfig(BaseModel):
    """Geofence configuration written to /devices/D/geofence/config."""
    model_config = ConfigDict(populate_by_name=True)

    center_lat: float = Field(..., ge=-90, le=90, alias="centerLat")
    center_lng: float = Field(..., ge=-180, le=180, alias="centerLng")
    radius_meters: float = Field(..., gt=0, alias="radiusMeters")
    name: str = Field(..., min_length=1, max_length=100)
    enabled: bool = True


# ============ Commands ============

class DeviceCommand(str, Enum):
    """Values the device polls from /devices/D/commands/pending."""
    ARM = "ARM"
    DISARM = "DISARM"
    REBOOT = "REBOOT"


COMMAND_LABELS = {
    DeviceCommand.ARM: "arm the system",
    DeviceCommand.DISARM: "disarm the system",
    DeviceCommand.REBOOT: "reboot the device",
}


# ============ Requests ============

class LoginRequest(BaseModel):
    """Email/password sign-in."""
    email: str = ""
    password: str = ""


class RegisterRequest(BaseModel):
    """Email/password account creation."""
    email: str = ""
    password: str = ""
    confirm_password: str = ""


class SessionResponse(BaseModel):
    """Signed-in user session."""
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    email: EmailStr
    uid: str


class CommandRequest(BaseModel):
    """Command dispatch; the user must have confirmed the prompt."""
    confirmed: bool = False


class CommandResponse(BaseModel):
    """Accepted command write (not an acknowledgement from the device)."""
    command: DeviceCommand
    status: str = "sent"


class SpeedLimitRequest(BaseModel):
    limit: int


class LayoutReport(BaseModel):
    """What the browser page currently shows."""
    containers: list[str] = []
    width_px: Optional[int] = Field(None, ge=0)
    active_tab: Optional[str] = None
    alerts_permitted: bool = False


class RouteResponse(BaseModel):
    points: int
    message: str
