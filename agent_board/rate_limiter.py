"""Throttle for calls to the tracker and board services.

Mutations are spaced at least ``mutation_delay_ms`` apart and capped per
rolling minute and hour. Every call, read or write, also honours the primary
quota buffer and any back-off the provider asked for. Waiters queue in ticket
order, so two concurrent callers can never both take the same free slot.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_BACKOFF = 60.0
_MINUTE = 60.0
_HOUR = 3600.0


class RateLimiter:
    def __init__(
        self,
        mutation_delay_ms: int = 1000,
        max_mutations_per_minute: int = 60,
        max_mutations_per_hour: int = 500,
        quota_buffer: int = 100,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.mutation_delay = mutation_delay_ms / 1000.0
        self.max_per_minute = max_mutations_per_minute
        self.max_per_hour = max_mutations_per_hour
        self.quota_buffer = quota_buffer
        self._clock = clock
        self._sleep = sleep
        self._wall_clock = wall_clock

        self._cond = threading.Condition()
        self._next_ticket = 0
        self._serving = 0

        self._mutations: deque[float] = deque()
        self._last_mutation: float | None = None
        self._blocked_until = 0.0
        self._quota_remaining: int | None = None
        self._quota_reset_at = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def wait_for_slot(self, is_mutation: bool = True) -> float:
        """Block until a call may proceed. Returns the seconds spent waiting."""
        if not is_mutation:
            return self._wait(is_mutation=False)

        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._serving:
                self._cond.wait()
        try:
            return self._wait(is_mutation=True)
        finally:
            with self._cond:
                self._serving += 1
                self._cond.notify_all()

    def handle_rate_limit_error(
        self, status_code: int, headers: Mapping[str, str] | None = None
    ) -> float:
        """Feed a provider rate-limit response back into the limiter.

        Returns the number of seconds the next ``wait_for_slot`` will block,
        or 0.0 when *status_code* is not a rate-limit status.
        """
        if status_code not in (403, 429):
            return 0.0
        lowered = {k.lower(): v for k, v in (headers or {}).items()}

        wait = DEFAULT_RATE_LIMIT_BACKOFF
        retry_after = lowered.get("retry-after")
        reset = lowered.get("x-ratelimit-reset")
        if retry_after is not None and str(retry_after).strip().isdigit():
            wait = float(retry_after)
        elif lowered.get("x-ratelimit-remaining") == "0" and reset is not None:
            try:
                wait = max(float(reset) - self._wall_clock(), 1.0)
            except ValueError:
                pass

        with self._cond:
            now = self._clock()
            self._blocked_until = max(self._blocked_until, now + wait)
        logger.warning(
            "Rate limit signal (HTTP %d), pausing tracker calls for %.0fs",
            status_code,
            wait,
        )
        return wait

    def update_quota(self, remaining: int, reset_epoch: float) -> None:
        """Record the provider's primary quota headroom and its reset time."""
        with self._cond:
            self._quota_remaining = remaining
            self._quota_reset_at = self._clock() + max(reset_epoch - self._wall_clock(), 0.0)
        if remaining <= self.quota_buffer:
            logger.warning(
                "Primary API quota nearly exhausted (%d remaining, buffer %d)",
                remaining,
                self.quota_buffer,
            )

    def stats(self) -> dict:
        with self._cond:
            now = self._clock()
            return {
                "last_minute": sum(1 for t in self._mutations if t > now - _MINUTE),
                "last_hour": sum(1 for t in self._mutations if t > now - _HOUR),
                "quota_remaining": self._quota_remaining,
                "blocked_for": max(self._blocked_until - now, 0.0),
            }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _wait(self, is_mutation: bool) -> float:
        waited = 0.0
        while True:
            with self._cond:
                delay = self._required_delay(is_mutation)
                if delay <= 0:
                    self._record_call(is_mutation)
                    return waited
            logger.debug("Rate limiter waiting %.2fs (mutation=%s)", delay, is_mutation)
            self._sleep(delay)
            waited += delay

    def _required_delay(self, is_mutation: bool) -> float:
        now = self._clock()
        delays = [self._blocked_until - now]

        if self._quota_remaining is not None:
            if now >= self._quota_reset_at:
                self._quota_remaining = None
            elif self._quota_remaining <= self.quota_buffer:
                delays.append(self._quota_reset_at - now)

        if is_mutation:
            while self._mutations and self._mutations[0] <= now - _HOUR:
                self._mutations.popleft()
            if self._last_mutation is not None:
                delays.append(self._last_mutation + self.mutation_delay - now)
            in_minute = [t for t in self._mutations if t > now - _MINUTE]
            if len(in_minute) >= self.max_per_minute:
                delays.append(in_minute[len(in_minute) - self.max_per_minute] + _MINUTE - now)
            if len(self._mutations) >= self.max_per_hour:
                delays.append(
                    self._mutations[len(self._mutations) - self.max_per_hour] + _HOUR - now
                )

        return max(delays)

    def _record_call(self, is_mutation: bool) -> None:
        if self._quota_remaining is not None:
            self._quota_remaining -= 1
        if is_mutation:
            now = self._clock()
            self._mutations.append(now)
            self._last_mutation = now
