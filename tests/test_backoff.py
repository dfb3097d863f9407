from __future__ import annotations

import random
from unittest.mock import Mock

import pytest

from pv_upgrader.backoff import (
    BackoffConfig,
    ExponentialBackoff,
    PermanentError,
    RetryTimeoutError,
    retry_notify,
)


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _backoff(clock: _FakeClock, *, max_elapsed_time: float = 30.0, **overrides: float) -> ExponentialBackoff:
    return ExponentialBackoff(
        BackoffConfig(**overrides),
        max_elapsed_time,
        clock=clock,
        rng=random.Random(7),
    )


def test_next_backoff_with_default_config_stays_within_randomization_bounds_and_caps_at_max_interval() -> None:
    backoff = _backoff(_FakeClock())

    intervals = [backoff.next_backoff() for _ in range(10)]

    expected_current = 1.0
    for interval in intervals:
        assert interval is not None
        assert expected_current * 0.9 <= interval <= expected_current * 1.1
        expected_current = min(expected_current * 1.414, 5.0)
    assert max(intervals) <= 5.0 * 1.1


def test_next_backoff_after_max_elapsed_time_returns_none() -> None:
    clock = _FakeClock()
    backoff = _backoff(clock, max_elapsed_time=10.0)

    clock.now = 10.5

    assert backoff.next_backoff() is None


def test_reset_restarts_elapsed_time_and_interval() -> None:
    clock = _FakeClock()
    backoff = _backoff(clock, randomization_factor=0.0)
    backoff.next_backoff()
    backoff.next_backoff()
    clock.now = 50.0

    backoff.reset()

    assert backoff.elapsed() == 0.0
    assert backoff.next_backoff() == 1.0


def test_backoff_config_with_invalid_values_raises_value_error() -> None:
    with pytest.raises(ValueError, match="initial_interval"):
        BackoffConfig(initial_interval=0)
    with pytest.raises(ValueError, match="randomization_factor"):
        BackoffConfig(randomization_factor=1.5)
    with pytest.raises(ValueError, match="multiplier"):
        BackoffConfig(multiplier=0.5)
    with pytest.raises(ValueError, match="max_interval"):
        BackoffConfig(initial_interval=10.0, max_interval=5.0)


def test_retry_notify_with_eventual_success_returns_value_and_notifies_each_retry() -> None:
    clock = _FakeClock()
    operation = Mock(side_effect=[RuntimeError("not yet"), RuntimeError("still not"), "ready"])
    notify = Mock()

    result = retry_notify(operation, _backoff(clock), notify, sleep=clock.sleep)

    assert result == "ready"
    assert operation.call_count == 3
    assert notify.call_count == 2
    assert [call.args[1] for call in notify.call_args_list] == clock.sleeps


def test_retry_notify_with_permanent_error_stops_immediately() -> None:
    clock = _FakeClock()
    operation = Mock(side_effect=PermanentError("cache corrupted"))
    notify = Mock()

    with pytest.raises(PermanentError, match="cache corrupted"):
        retry_notify(operation, _backoff(clock), notify, sleep=clock.sleep)

    operation.assert_called_once_with()
    notify.assert_not_called()
    assert clock.sleeps == []


def test_retry_notify_with_condition_never_met_raises_timeout_with_elapsed_seconds() -> None:
    clock = _FakeClock()
    operation = Mock(side_effect=RuntimeError("PVC ns/pvc1 not yet Lost"))

    with pytest.raises(RetryTimeoutError) as exc_info:
        retry_notify(operation, _backoff(clock, max_elapsed_time=12.0), sleep=clock.sleep)

    error = exc_info.value
    assert error.elapsed_seconds > 12.0
    assert isinstance(error.last_error, RuntimeError)
    assert "seconds" in str(error)
    assert "PVC ns/pvc1 not yet Lost" in str(error)
    assert isinstance(error, TimeoutError)
