from __future__ import annotations

import math
import threading
import time
from collections import deque
from typing import TYPE_CHECKING, Callable, Deque, Optional

from .errors import ConfigError, RunCancelled
from .models import RateLimiterStats

if TYPE_CHECKING:
    from .config import RateLimitConfig

BURST_WINDOW_MS = 1_000
MINUTE_WINDOW_MS = 60_000


class RateLimiter:
    """Thread-safe sliding-window limiter for the outbound requests of one source.

    A request may be issued when the trailing second holds fewer than
    ``burst_limit`` requests, the trailing minute fewer than
    ``requests_per_minute``, and at least ``ceil(60000 / requests_per_minute)``
    ms have passed since the previous request. wait_for_slot() blocks the
    calling thread until all three hold."""

    def __init__(
        self,
        requests_per_minute: int,
        burst_limit: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._validate(requests_per_minute, burst_limit)
        self._rpm = requests_per_minute
        self._burst = burst_limit
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._history: Deque[float] = deque()
        self._last_request_ms: Optional[float] = None
        self._total_requests = 0

    @classmethod
    def from_config(cls, config: "RateLimitConfig", **kwargs) -> "RateLimiter":
        return cls(config.requests_per_minute, config.burst_limit, **kwargs)

    @staticmethod
    def _validate(requests_per_minute: int, burst_limit: int) -> None:
        if requests_per_minute <= 0:
            raise ConfigError("requests_per_minute must be greater than 0")
        if burst_limit <= 0:
            raise ConfigError("burst_limit must be greater than 0")
        if burst_limit > requests_per_minute:
            raise ConfigError("burst_limit cannot be greater than requests_per_minute")

    @property
    def requests_per_minute(self) -> int:
        return self._rpm

    @property
    def burst_limit(self) -> int:
        return self._burst

    @property
    def min_interval_ms(self) -> int:
        return math.ceil(MINUTE_WINDOW_MS / self._rpm)

    def configure(self, requests_per_minute: int, burst_limit: int) -> None:
        self._validate(requests_per_minute, burst_limit)
        with self._lock:
            self._rpm = requests_per_minute
            self._burst = burst_limit

    def update_config(
        self,
        requests_per_minute: Optional[int] = None,
        burst_limit: Optional[int] = None,
    ) -> None:
        """Apply a partial update; nothing changes if the result is invalid."""
        rpm = self._rpm if requests_per_minute is None else requests_per_minute
        burst = self._burst if burst_limit is None else burst_limit
        self.configure(rpm, burst)

    def wait_for_slot(self, cancel: Optional[threading.Event] = None) -> float:
        """Block until a request may be issued, record it, and return the ms waited.

        Raises RunCancelled if ``cancel`` is set while waiting."""
        waited = 0.0
        while True:
            with self._lock:
                now = self._now_ms()
                self._prune(now)
                delay = self._compute_delay(now)
                if delay <= 0:
                    self._record(now)
                    return waited
            if cancel is not None:
                if cancel.wait(delay / 1000.0):
                    raise RunCancelled("rate limiter wait cancelled")
            else:
                self._sleep(delay / 1000.0)
            waited += delay

    def get_stats(self) -> RateLimiterStats:
        with self._lock:
            now = self._now_ms()
            self._prune(now)
            delay = self._compute_delay(now)
            return RateLimiterStats(
                total_requests=self._total_requests,
                requests_in_last_minute=self._count_since(now - MINUTE_WINDOW_MS),
                requests_in_last_second=self._count_since(now - BURST_WINDOW_MS),
                can_make_request=delay <= 0,
                next_available_slot_ms=max(0, math.ceil(delay)),
            )

    def reset(self) -> None:
        with self._lock:
            self._history.clear()
            self._last_request_ms = None
            self._total_requests = 0

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _prune(self, now: float) -> None:
        cutoff = now - MINUTE_WINDOW_MS
        while self._history and self._history[0] <= cutoff:
            self._history.popleft()

    def _count_since(self, cutoff: float) -> int:
        return sum(1 for ts in self._history if ts > cutoff)

    def _compute_delay(self, now: float) -> float:
        delays = [0.0]

        in_burst = [ts for ts in self._history if ts > now - BURST_WINDOW_MS]
        if len(in_burst) >= self._burst:
            # The entry that must age out for the window to drop below the limit.
            pivot = in_burst[len(in_burst) - self._burst]
            delays.append(BURST_WINDOW_MS - (now - pivot))

        in_minute = [ts for ts in self._history if ts > now - MINUTE_WINDOW_MS]
        if len(in_minute) >= self._rpm:
            pivot = in_minute[len(in_minute) - self._rpm]
            delays.append(MINUTE_WINDOW_MS - (now - pivot))

        if self._last_request_ms is not None:
            since_last = now - self._last_request_ms
            if since_last < self.min_interval_ms:
                delays.append(self.min_interval_ms - since_last)

        # Whole milliseconds, so a positive wait always advances the clock.
        return math.ceil(max(delays))

    def _record(self, now: float) -> None:
        self._history.append(now)
        self._last_request_ms = now
        self._total_requests += 1
