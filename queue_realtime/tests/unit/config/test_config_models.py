"""
Unit tests for configuration models.

Tests defaults, environment overrides and validation.
"""

import pytest
from pydantic import ValidationError

from queue_realtime.config import get_config, reset_config
from queue_realtime.config.models import (
    ApiConfig,
    AppConfig,
    ConnectionConfig,
    LoggingConfig,
    NotificationConfig,
    TimerConfig,
    derive_socket_url,
)


def test_defaults_match_client_constants():
    config = AppConfig()
    assert config.connection.reconnection_attempts == 5
    assert config.connection.reconnection_delay == 1.0
    assert config.connection.reconnection_delay_max == 5.0
    assert config.connection.connect_timeout == 20.0
    assert config.notifications.dedupe_window_seconds == 3.0
    assert config.notifications.placeholder_name == "A patient"
    assert config.timers.tick_interval == 1.0
    assert config.timers.default_duration_minutes == 10
    assert config.timers.refetch_interval_seconds == 30.0
    assert config.notifications.alert_timeout_seconds == 5.0


@pytest.mark.parametrize(
    ("api_base", "expected"),
    [
        ("http://localhost:3000/api/v1", "http://localhost:3000"),
        ("https://clinic.example/api/v1/", "https://clinic.example"),
        ("https://clinic.example", "https://clinic.example"),
    ],
)
def test_derive_socket_url(api_base, expected):
    assert derive_socket_url(api_base) == expected


def test_socket_url_prefers_explicit_server_url(monkeypatch):
    monkeypatch.setenv("QUEUE_SOCKET_SERVER_URL", "https://events.example")
    assert AppConfig().socket_url == "https://events.example"


def test_socket_url_derived_from_api_base(monkeypatch):
    monkeypatch.delenv("QUEUE_SOCKET_SERVER_URL", raising=False)
    monkeypatch.setenv("API_BASE_URL", "https://clinic.example/api/v1")
    assert AppConfig().socket_url == "https://clinic.example"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("NOTIFY_DEDUPE_WINDOW_SECONDS", "5")
    monkeypatch.setenv("QUEUE_SOCKET_RECONNECTION_ATTEMPTS", "8")
    monkeypatch.setenv("TIMER_TICK_INTERVAL", "0.5")

    config = AppConfig()

    assert config.notifications.dedupe_window_seconds == 5.0
    assert config.connection.reconnection_attempts == 8
    assert config.timers.tick_interval == 0.5


def test_invalid_delay_window_rejected():
    with pytest.raises(ValidationError):
        ConnectionConfig(reconnection_delay=10.0, reconnection_delay_max=5.0)


def test_negative_attempts_rejected():
    with pytest.raises(ValidationError):
        ConnectionConfig(reconnection_attempts=-1)


def test_jitter_range_validated():
    with pytest.raises(ValidationError):
        ConnectionConfig(reconnection_jitter=1.5)


def test_dedupe_window_must_be_positive():
    with pytest.raises(ValidationError):
        NotificationConfig(dedupe_window_seconds=0)


def test_placeholder_name_cannot_be_blank():
    with pytest.raises(ValidationError):
        NotificationConfig(placeholder_name="   ")


def test_timer_tick_must_be_positive():
    with pytest.raises(ValidationError):
        TimerConfig(tick_interval=0)


@pytest.mark.parametrize("value", [0, -30])
def test_refetch_interval_must_be_positive(value):
    with pytest.raises(ValidationError):
        TimerConfig(refetch_interval_seconds=value)


def test_alert_timeout_must_be_positive():
    with pytest.raises(ValidationError):
        NotificationConfig(alert_timeout_seconds=0)


def test_api_timeout_must_be_positive():
    with pytest.raises(ValidationError):
        ApiConfig(timeout=0)


def test_logging_level_normalized():
    assert LoggingConfig(level="debug").level == "DEBUG"
    with pytest.raises(ValidationError):
        LoggingConfig(level="verbose")


def test_get_config_is_fresh_under_pytest(monkeypatch):
    """Under pytest every call reloads the environment."""
    monkeypatch.setenv("NOTIFY_PLACEHOLDER_NAME", "Someone")
    reset_config()
    assert get_config().notifications.placeholder_name == "Someone"
    assert get_config() is not get_config()


def test_to_legacy_dict_has_logging_section():
    legacy = AppConfig().to_legacy_dict()
    assert "logging" in legacy
    assert "level" in legacy["logging"]
