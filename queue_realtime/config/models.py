"""
Pydantic-based configuration models for the queue realtime core.

Every tunable constant of the pipeline (reconnection backoff, channel join
delay, dedupe window, timer tick) lives here so deployments can adjust it
through environment variables instead of code changes.
"""

from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)

API_PATH_SUFFIX = "/api/v1"


def derive_socket_url(api_base_url: str) -> str:
    """
    Derive the event server URL from the REST API base URL.

    The event server is mounted at the API host root, so the versioned
    API path is stripped.
    """
    url = api_base_url.rstrip("/")
    if url.endswith(API_PATH_SUFFIX):
        url = url[: -len(API_PATH_SUFFIX)]
    return url


class ApiConfig(BaseSettings):
    """REST API collaborator configuration (patient lookup, push registration)."""

    base_url: str = Field(default="http://localhost:3000/api/v1", description="REST API base URL")
    timeout: float = Field(default=10.0, description="HTTP request timeout in seconds")

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout is positive."""
        if v <= 0:
            raise ValueError("API timeout must be positive")
        return v

    model_config = {"env_prefix": "API_", "case_sensitive": False, "extra": "ignore"}


class ConnectionConfig(BaseSettings):
    """Event server connection and reconnection configuration."""

    server_url: str | None = Field(default=None, description="Event server URL (derived from API base when unset)")
    reconnection_attempts: int = Field(default=5, description="Maximum automatic reconnection attempts")
    reconnection_delay: float = Field(default=1.0, description="Base reconnection delay in seconds")
    reconnection_delay_max: float = Field(default=5.0, description="Maximum reconnection delay in seconds")
    reconnection_jitter: float = Field(default=0.25, description="Relative jitter applied to each delay")
    connect_timeout: float = Field(default=20.0, description="Handshake timeout in seconds")
    join_delay: float = Field(default=0.15, description="Delay before re-asserting channel membership")

    @field_validator("reconnection_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        """Validate attempt count is not negative."""
        if v < 0:
            raise ValueError("reconnection_attempts must be >= 0")
        return v

    @field_validator("reconnection_delay", "reconnection_delay_max", "connect_timeout", "join_delay")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        """Validate delays are not negative."""
        if v < 0:
            raise ValueError("Delays and timeouts must be >= 0")
        return v

    @field_validator("reconnection_jitter")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        """Validate jitter ratio."""
        if not 0 <= v < 1:
            raise ValueError("reconnection_jitter must be in [0, 1)")
        return v

    @model_validator(mode="after")
    def validate_delay_window(self) -> "ConnectionConfig":
        """Validate the backoff window is ordered."""
        if self.reconnection_delay_max < self.reconnection_delay:
            logger.error(
                "Invalid reconnection delay window",
                reconnection_delay=self.reconnection_delay,
                reconnection_delay_max=self.reconnection_delay_max,
            )
            raise ValueError("reconnection_delay_max must be >= reconnection_delay")
        return self

    model_config = {"env_prefix": "QUEUE_SOCKET_", "case_sensitive": False, "extra": "ignore"}


class NotificationConfig(BaseSettings):
    """Notification dispatch configuration."""

    dedupe_window_seconds: float = Field(default=3.0, description="Coalescing window for duplicate alerts")
    placeholder_name: str = Field(default="A patient", description="Display name when no patient data exists")
    haptics_enabled: bool = Field(default=True, description="Trigger haptic feedback for success alerts")
    alert_timeout_seconds: float = Field(default=5.0, description="Upper bound for one alert sink or haptics call")

    @field_validator("dedupe_window_seconds")
    @classmethod
    def validate_window(cls, v: float) -> float:
        """Validate dedupe window is positive."""
        if v <= 0:
            raise ValueError("dedupe_window_seconds must be positive")
        return v

    @field_validator("alert_timeout_seconds")
    @classmethod
    def validate_alert_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("alert_timeout_seconds must be positive")
        return v

    @field_validator("placeholder_name")
    @classmethod
    def validate_placeholder(cls, v: str) -> str:
        """Display names must never be empty."""
        if not v.strip():
            raise ValueError("placeholder_name cannot be empty")
        return v.strip()

    model_config = {"env_prefix": "NOTIFY_", "case_sensitive": False, "extra": "ignore"}


class TimerConfig(BaseSettings):
    """Countdown timer configuration."""

    tick_interval: float = Field(default=1.0, description="Seconds between display ticks")
    default_duration_minutes: int = Field(default=10, description="Default dilation wait in minutes")
    refetch_interval_seconds: float = Field(default=30.0, description="Backup refetch interval of the eye-drop queue")

    @field_validator("tick_interval")
    @classmethod
    def validate_tick(cls, v: float) -> float:
        """Validate tick interval is positive."""
        if v <= 0:
            raise ValueError("tick_interval must be positive")
        return v

    @field_validator("refetch_interval_seconds")
    @classmethod
    def validate_refetch_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("refetch_interval_seconds must be positive")
        return v

    @field_validator("default_duration_minutes")
    @classmethod
    def validate_duration(cls, v: int) -> int:
        """Validate default duration is at least one minute."""
        if v < 1:
            raise ValueError("default_duration_minutes must be at least 1")
        return v

    model_config = {"env_prefix": "TIMER_", "case_sensitive": False, "extra": "ignore"}


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    environment: str | None = Field(default=None, description="Logging environment (auto-detected when unset)")
    level: str = Field(default="INFO", description="Log level")
    log_base: str = Field(default="logs", description="Base directory for log files")
    disable_logging: bool = Field(default=False, description="Disable file logging")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level name."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid:
            raise ValueError(f"Log level must be one of {sorted(valid)}")
        return upper

    def to_legacy_dict(self) -> dict[str, Any]:
        """Convert to the dictionary shape expected by setup_enhanced_logging."""
        return {
            "environment": self.environment,
            "level": self.level,
            "log_base": self.log_base,
            "disable_logging": self.disable_logging,
        }

    model_config = {"env_prefix": "LOGGING_", "case_sensitive": False, "extra": "ignore"}


class AppConfig(BaseSettings):
    """
    Root configuration composed of the per-concern sections.

    Each section reads its own environment prefix.
    """

    api: ApiConfig = Field(default_factory=ApiConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    timers: TimerConfig = Field(default_factory=TimerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def socket_url(self) -> str:
        """Event server URL, explicit or derived from the API base URL."""
        return self.connection.server_url or derive_socket_url(self.api.base_url)

    def to_legacy_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary for logging setup."""
        return {"logging": self.logging.to_legacy_dict()}

    model_config = {"case_sensitive": False, "extra": "ignore"}
