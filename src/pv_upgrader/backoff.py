from __future__ import annotations

from dataclasses import dataclass
import random
import time
from typing import Callable, TypeVar

T = TypeVar("T")

DEFAULT_INITIAL_INTERVAL_SECONDS = 1.0
DEFAULT_RANDOMIZATION_FACTOR = 0.1
DEFAULT_MULTIPLIER = 1.414
DEFAULT_MAX_INTERVAL_SECONDS = 5.0


@dataclass(frozen=True)
class BackoffConfig:
    initial_interval: float = DEFAULT_INITIAL_INTERVAL_SECONDS
    randomization_factor: float = DEFAULT_RANDOMIZATION_FACTOR
    multiplier: float = DEFAULT_MULTIPLIER
    max_interval: float = DEFAULT_MAX_INTERVAL_SECONDS

    def __post_init__(self) -> None:
        if self.initial_interval <= 0:
            raise ValueError("initial_interval must be positive")
        if not 0 <= self.randomization_factor < 1:
            raise ValueError("randomization_factor must be in [0, 1)")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.max_interval < self.initial_interval:
            raise ValueError("max_interval must be >= initial_interval")


class PermanentError(Exception):
    """Raised by a polled condition to stop retrying immediately."""


class RetryTimeoutError(TimeoutError):
    def __init__(self, *, elapsed_seconds: float, last_error: Exception | None) -> None:
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"condition not met after {elapsed_seconds:3.2f} seconds{detail}")
        self.elapsed_seconds = elapsed_seconds
        self.last_error = last_error


class ExponentialBackoff:
    """Randomized exponential interval generator bounded by a total elapsed time.

    Each call to ``next_backoff`` returns a value drawn uniformly from
    ``[current * (1 - randomization_factor), current * (1 + randomization_factor)]``
    and then grows ``current`` by ``multiplier`` up to ``max_interval``. Once more
    than ``max_elapsed_time`` seconds have passed since ``reset`` it returns None.
    """

    def __init__(
        self,
        config: BackoffConfig,
        max_elapsed_time: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        if max_elapsed_time <= 0:
            raise ValueError("max_elapsed_time must be positive")
        self.config = config
        self.max_elapsed_time = max_elapsed_time
        self._clock = clock
        self._rng = rng or random.Random()
        self._current_interval = config.initial_interval
        self._start_time = clock()

    def reset(self) -> None:
        self._current_interval = self.config.initial_interval
        self._start_time = self._clock()

    def elapsed(self) -> float:
        return self._clock() - self._start_time

    def next_backoff(self) -> float | None:
        if self.elapsed() > self.max_elapsed_time:
            return None

        delta = self.config.randomization_factor * self._current_interval
        interval = self._rng.uniform(self._current_interval - delta, self._current_interval + delta)
        self._current_interval = min(self._current_interval * self.config.multiplier, self.config.max_interval)
        return interval


def retry_notify(
    operation: Callable[[], T],
    backoff: ExponentialBackoff,
    notify: Callable[[Exception, float], None] | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``operation`` until it returns, raises PermanentError, or the backoff stops.

    Any other exception counts as "not yet": ``notify`` receives it together with
    the upcoming sleep increment before the next attempt.
    """
    backoff.reset()
    while True:
        try:
            return operation()
        except PermanentError:
            raise
        except Exception as error:  # pylint: disable=broad-except
            interval = backoff.next_backoff()
            if interval is None:
                raise RetryTimeoutError(elapsed_seconds=backoff.elapsed(), last_error=error) from error
            if notify is not None:
                notify(error, interval)
            sleep(interval)
