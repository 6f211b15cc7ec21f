"""Tests for the mutation rate limiter."""

import threading

import pytest

from agent_board.rate_limiter import DEFAULT_RATE_LIMIT_BACKOFF, RateLimiter


class SteppingClock:
    """Monotonic clock that only moves when the limiter sleeps."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def make_limiter(clock: SteppingClock, wall: float = 10_000.0, **kwargs) -> RateLimiter:
    return RateLimiter(clock=clock, sleep=clock.sleep, wall_clock=lambda: wall + clock.now, **kwargs)


# ---------------------------------------------------------------------------
# Spacing and windows
# ---------------------------------------------------------------------------


def test_consecutive_mutations_are_spaced() -> None:
    clock = SteppingClock()
    limiter = make_limiter(clock, mutation_delay_ms=1000)
    assert limiter.wait_for_slot() == 0.0
    first = clock.now
    waited = limiter.wait_for_slot()
    assert waited == pytest.approx(1.0)
    assert clock.now - first >= 1.0


def test_reads_skip_mutation_spacing() -> None:
    clock = SteppingClock()
    limiter = make_limiter(clock, mutation_delay_ms=1000)
    limiter.wait_for_slot()
    assert limiter.wait_for_slot(is_mutation=False) == 0.0
    assert clock.now == 0.0


def test_61st_mutation_waits_for_minute_window() -> None:
    clock = SteppingClock()
    limiter = make_limiter(clock, mutation_delay_ms=100, max_mutations_per_minute=60)
    for _ in range(60):
        limiter.wait_for_slot()
    assert clock.now == pytest.approx(5.9)

    limiter.wait_for_slot()
    # The first of the 60 happened at t=0, so the window frees up at t=60.
    assert clock.now == pytest.approx(60.0)
    assert limiter.stats()["last_minute"] == 60


def test_hourly_cap() -> None:
    clock = SteppingClock()
    limiter = make_limiter(clock, mutation_delay_ms=0, max_mutations_per_minute=1000, max_mutations_per_hour=5)
    for _ in range(5):
        limiter.wait_for_slot()
    limiter.wait_for_slot()
    assert clock.now == pytest.approx(3600.0)


# ---------------------------------------------------------------------------
# Provider signals
# ---------------------------------------------------------------------------


def test_retry_after_blocks_next_call() -> None:
    clock = SteppingClock()
    limiter = make_limiter(clock, mutation_delay_ms=0)
    assert limiter.handle_rate_limit_error(429, {"Retry-After": "30"}) == 30.0
    limiter.wait_for_slot(is_mutation=False)
    assert clock.now == pytest.approx(30.0)


def test_reset_header_used_when_quota_exhausted() -> None:
    clock = SteppingClock()
    limiter = make_limiter(clock, wall=10_000.0, mutation_delay_ms=0)
    wait = limiter.handle_rate_limit_error(
        403, {"x-ratelimit-remaining": "0", "x-ratelimit-reset": "10045"}
    )
    assert wait == pytest.approx(45.0)


def test_rate_limit_without_headers_uses_default_backoff() -> None:
    clock = SteppingClock()
    limiter = make_limiter(clock)
    assert limiter.handle_rate_limit_error(403) == DEFAULT_RATE_LIMIT_BACKOFF


def test_other_statuses_are_ignored() -> None:
    clock = SteppingClock()
    limiter = make_limiter(clock, mutation_delay_ms=0)
    assert limiter.handle_rate_limit_error(500, {"retry-after": "30"}) == 0.0
    limiter.wait_for_slot()
    assert clock.now == 0.0


def test_quota_buffer_holds_reads_until_reset() -> None:
    clock = SteppingClock()
    limiter = make_limiter(clock, wall=10_000.0, quota_buffer=100)
    limiter.update_quota(remaining=50, reset_epoch=10_120.0)
    limiter.wait_for_slot(is_mutation=False)
    assert clock.now == pytest.approx(120.0)


def test_quota_above_buffer_does_not_wait() -> None:
    clock = SteppingClock()
    limiter = make_limiter(clock, quota_buffer=100)
    limiter.update_quota(remaining=4000, reset_epoch=20_000.0)
    limiter.wait_for_slot(is_mutation=False)
    assert clock.now == 0.0


# ---------------------------------------------------------------------------
# Concurrent waiters
# ---------------------------------------------------------------------------


def test_concurrent_waiters_never_share_a_slot() -> None:
    limiter = RateLimiter(mutation_delay_ms=50, max_mutations_per_minute=1000)

    def worker() -> None:
        limiter.wait_for_slot()

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    stamps = sorted(limiter._mutations)
    assert len(stamps) == 5
    gaps = [b - a for a, b in zip(stamps, stamps[1:])]
    assert all(gap >= 0.05 - 1e-6 for gap in gaps)
