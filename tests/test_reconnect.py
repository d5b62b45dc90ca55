import pytest

from avatarchat.core.config import ReconnectConfig
from avatarchat.transport.reconnect import ReconnectionPolicy


def test_delays_double_from_base():
    policy = ReconnectionPolicy(base_delay=1.0, max_delay=10.0, max_attempts=5)
    assert [policy.record_failure() for _ in range(4)] == [1.0, 2.0, 4.0, 8.0]


def test_delay_is_capped():
    policy = ReconnectionPolicy(base_delay=1.0, max_delay=5.0, max_attempts=10)
    assert policy.delay_for(3) == 4.0
    assert policy.delay_for(4) == 5.0
    assert policy.delay_for(9) == 5.0


def test_exhausted_at_max_attempts():
    policy = ReconnectionPolicy(max_attempts=3)
    assert policy.record_failure() == 1.0
    assert policy.record_failure() == 2.0
    assert policy.record_failure() is None
    assert policy.exhausted
    assert policy.attempts == 3


def test_success_resets_counter():
    policy = ReconnectionPolicy()
    policy.record_failure()
    policy.record_failure()
    policy.record_success()
    assert policy.attempts == 0
    assert policy.record_failure() == 1.0


def test_reset():
    policy = ReconnectionPolicy(max_attempts=1)
    assert policy.record_failure() is None
    policy.reset()
    assert not policy.exhausted


def test_from_config_converts_milliseconds():
    policy = ReconnectionPolicy.from_config(
        ReconnectConfig(base_delay_ms=500, max_delay_ms=2000, max_attempts=7)
    )
    assert policy.base_delay == 0.5
    assert policy.max_delay == 2.0
    assert policy.max_attempts == 7


@pytest.mark.parametrize("kwargs", [
    {"base_delay": 0},
    {"base_delay": 5.0, "max_delay": 1.0},
    {"max_attempts": 0},
])
def test_rejects_invalid_bounds(kwargs):
    with pytest.raises(ValueError):
        ReconnectionPolicy(**kwargs)
