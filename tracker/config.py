"""
Application configuration using pydantic-settings.
Loads from environment variables with sensible defaults.

Map and speed defaults match the values the tracker firmware ships with;
override them per deployment through the environment or a .env file.
"""
from functools import lru_cache
from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with production-safe defaults."""

    # Application
    app_name: str = "Vehicle Live Tracker"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"

    # Real-time store
    redis_url: str = "redis://localhost:6379"

    # Security
    secret_key: str = "CHANGE-ME-IN-PRODUCTION-USE-SECRETS-MANAGER"
    session_expiry_hours: int = 24
    min_password_length: int = 6
    rate_limit_auth: int = 20  # login/register attempts per minute
    rate_limit_public: int = 120
    rate_limit_storage_uri: str = "memory://"
    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Device (single tracked vehicle)
    device_id: str = "vehicle_001"

    # Map viewports
    default_center_lat: float = 14.5995
    default_center_lng: float = 120.9842
    overview_zoom: int = 13
    full_zoom: int = 15
    overview_recentre_zoom: int = 15
    full_recentre_zoom: int = 16
    recentre_probability: float = 0.3  # overview map follows the vehicle loosely
    viewport_retry_delays_ms: list[int] = [0, 100, 500, 2000]

    # Constrained (phone-sized) layouts
    constrained_width_px: int = 768
    constrained_overview_zoom: int = 16
    constrained_full_zoom: int = 17
    constrained_switch_zoom: int = 18

    # Speed monitoring (km/h)
    default_speed_limit: int = 80
    speed_limit_min: int = 10
    speed_limit_max: int = 200
    speed_alarm_floor_kmh: float = 10.0
    speed_warning_ratio: float = 0.8

    # Commands
    command_busy_window_s: float = 2.0

    # Timelines (events / notifications)
    timeline_limit: int = 10

    # SSE
    sse_keepalive_s: int = 15

    @model_validator(mode='after')
    def check_production_security(self):
        """Ensure secret key is changed outside of debug mode."""
        if not self.debug and "CHANGE-ME" in self.secret_key:
            raise ValueError(
                "SECURITY ERROR: Must set SECRET_KEY environment variable for production! "
                "Generate a secure key with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )
        return self

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
