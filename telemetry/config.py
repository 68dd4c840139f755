"""Configuration management for the driver telemetry tracker.

Every tunable threshold of the tracker lives here, grouped into one nested
Pydantic model per component.

Values load from the environment or a .env file, e.g.
``VIOLATION__GRACE_PERIOD_MS=8000``.
"""

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class ConfigurationError(Exception):
    """Raised when settings cannot be loaded or fail validation."""

    pass


class SpeedSettings(BaseModel):
    """Speed estimation settings."""

    correction_factor: float = Field(
        default=1.12, gt=0.5, le=2.0, description="Calibration multiplier for device-reported speed"
    )
    max_plausible_kmh: float = Field(
        default=200.0, gt=0.0, le=500.0, description="Candidate speeds at or above this are glitches"
    )
    stationary_snap_kmh: float = Field(
        default=2.0, ge=0.0, le=10.0, description="Speeds below this snap to zero"
    )
    min_elapsed_seconds: float = Field(
        default=1.0, gt=0.0, le=10.0, description="Floor for elapsed time between fixes"
    )


class GeofenceSettings(BaseModel):
    """Zone geometry and speed-limit fallback settings."""

    default_radius_m: float = Field(default=15.0, gt=0.0, le=5000.0, description="Zone radius when unset")
    global_speed_limit_kmh: int = Field(
        default=60, ge=5, le=200, description="Limit applied outside zones and as last fallback"
    )
    category_speed_limits: dict[str, int] = Field(
        default={
            "Crosswalk": 15,
            "School": 20,
            "Church": 30,
            "Curve": 40,
            "Slowdown": 40,
        },
        description="Per-category default limits in km/h",
    )


class ViolationSettings(BaseModel):
    """Overspeed detection settings."""

    grace_period_ms: int = Field(
        default=10_000, ge=0, le=120_000, description="Sustained overspeed required before confirming"
    )
    cooldown_ms: int = Field(
        default=60_000, ge=0, le=3_600_000, description="Same-zone suppression window after a write"
    )
    min_speed_kmh: float = Field(
        default=5.0, ge=0.0, le=50.0, description="No violations are tracked below this speed"
    )
    alert_busy_seconds: float = Field(
        default=3.0, ge=0.0, le=30.0, description="Guard window after a spoken violation alert"
    )


class MetricsSettings(BaseModel):
    """Trip metrics accumulation settings."""

    min_step_km: float = Field(default=0.001, ge=0.0, le=0.1, description="Steps at or below are noise")
    max_step_km: float = Field(default=0.5, gt=0.0, le=10.0, description="Steps at or above are GPS jumps")
    persist_debounce_seconds: float = Field(
        default=1.0, ge=0.0, le=60.0, description="Delay before mirroring the snapshot locally"
    )


class AnnouncerSettings(BaseModel):
    """Spoken zone transition settings."""

    enter_busy_seconds: float = Field(default=4.0, ge=0.0, le=30.0, description="Guard after entering")
    exit_busy_seconds: float = Field(default=2.5, ge=0.0, le=30.0, description="Guard after leaving")


class TrackingSettings(BaseModel):
    """Position stream and write-back settings."""

    min_interval_ms: int = Field(default=3000, ge=100, le=60_000, description="Position stream interval")
    min_distance_m: float = Field(default=5.0, ge=0.0, le=1000.0, description="Position stream distance filter")
    remote_write_interval_seconds: float = Field(
        default=2.0, ge=0.0, le=60.0, description="Minimum interval between location write-backs"
    )
    blocked_routes: list[str] = Field(
        default=["/Login", "/"], description="Screens on which tracking is not permitted"
    )
    track_in_background: bool = Field(
        default=True, description="Keep the position stream alive while the app is backgrounded"
    )


class ServerSettings(BaseModel):
    """Tracking API server settings."""

    host: str = Field(default="0.0.0.0", description="Server bind address")
    port: int = Field(default=8000, ge=1024, le=65535, description="Server port")
    websocket_max_connections: int = Field(
        default=10, ge=1, le=100, description="Max WebSocket connections"
    )
    event_queue_size: int = Field(default=100, ge=1, le=10_000, description="Pending event queue size")


class LoggingSettings(BaseModel):
    """Log level and optional rotating log file."""

    level: str = Field(default="INFO", description="Log level")
    file_path: str | None = Field(default=None, description="Log file path (None for console)")
    max_file_size_mb: int = Field(default=10, ge=1, le=100, description="Max log file size in MB")


class Settings(BaseSettings):
    """Root settings object; one nested section per component."""

    # Sub-settings
    speed: SpeedSettings = Field(default_factory=SpeedSettings)
    geofence: GeofenceSettings = Field(default_factory=GeofenceSettings)
    violation: ViolationSettings = Field(default_factory=ViolationSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    announcer: AnnouncerSettings = Field(default_factory=AnnouncerSettings)
    tracking: TrackingSettings = Field(default_factory=TrackingSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    # Global settings
    debug: bool = Field(default=False, description="Enable debug mode")

    class Config:
        """Pydantic configuration."""

        env_file = ".env"
        env_file_encoding = "utf-8"
        env_nested_delimiter = "__"
        case_sensitive = False


def load_config() -> Settings:
    """Build Settings from the environment.

    Returns:
        Configured Settings instance

    Raises:
        ConfigurationError: If configuration cannot be loaded
    """
    try:
        return Settings()

    except Exception as e:
        raise ConfigurationError(f"Failed to load configuration: {e}") from e


# Process-wide settings, loaded on first get_config()
_config: Settings | None = None


def get_config() -> Settings:
    """Return the process-wide Settings, loading them on first use.

    Returns:
        Global Settings instance
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Reset global configuration instance (for testing purposes only).

    Clears the global configuration singleton, forcing get_config() to reload
    configuration on next call.
    """
    global _config
    _config = None
