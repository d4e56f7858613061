"""
Shared fixtures for the queue realtime test suite.
"""

import os

import pytest

# Set before any queue_realtime import so logging and config see the test environment
os.environ.setdefault("LOGGING_ENVIRONMENT", "unit_test")

from queue_realtime.config import reset_config  # noqa: E402
from queue_realtime.realtime.connection_manager import ConnectionManager  # noqa: E402
from queue_realtime.realtime.reconnect_policy import ReconnectPolicy  # noqa: E402

from .fakes import FakeClock, FakeServer, RecordingAlertSink, RecordingHaptics, RecordingSleep  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_config():
    """Every test sees configuration loaded from the current environment."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def fake_server():
    return FakeServer()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def connection(fake_server, recording_sleep):
    """ConnectionManager against the fake server with instant backoff and no jitter."""
    return ConnectionManager(
        transport_factory=fake_server.factory,
        policy=ReconnectPolicy(max_attempts=5, base_delay=1.0, max_delay=5.0, jitter=0.0),
        connect_timeout=1.0,
        sleep=recording_sleep,
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def alert_sink():
    return RecordingAlertSink()


@pytest.fixture
def haptics():
    return RecordingHaptics()
