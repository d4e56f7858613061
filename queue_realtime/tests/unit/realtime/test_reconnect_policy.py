"""Unit tests for the reconnection policy."""

from unittest.mock import patch

from queue_realtime.config.models import ConnectionConfig
from queue_realtime.realtime.reconnect_policy import ReconnectPolicy


def test_delay_grows_exponentially_without_jitter():
    policy = ReconnectPolicy(base_delay=1.0, max_delay=5.0, jitter=0.0)
    assert [policy.calculate_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_delay_never_exceeds_cap_with_jitter():
    policy = ReconnectPolicy(base_delay=1.0, max_delay=5.0, jitter=0.25)
    for attempt in range(10):
        assert 0.0 <= policy.calculate_delay(attempt) <= 5.0


def test_jitter_spreads_around_base_delay():
    """Jitter is +/- the configured fraction of the delay."""
    policy = ReconnectPolicy(base_delay=2.0, max_delay=30.0, jitter=0.25)
    with patch("queue_realtime.realtime.reconnect_policy.random.uniform", return_value=-0.5) as uniform:
        assert policy.calculate_delay(0) == 1.5
    uniform.assert_called_once_with(-0.5, 0.5)


def test_should_retry_is_bounded():
    policy = ReconnectPolicy(max_attempts=3)
    assert [policy.should_retry(n) for n in range(5)] == [True, True, True, False, False]


def test_from_config():
    config = ConnectionConfig(
        reconnection_attempts=7,
        reconnection_delay=0.5,
        reconnection_delay_max=8.0,
        reconnection_jitter=0.1,
    )
    policy = ReconnectPolicy.from_config(config)
    assert policy == ReconnectPolicy(max_attempts=7, base_delay=0.5, max_delay=8.0, jitter=0.1)
