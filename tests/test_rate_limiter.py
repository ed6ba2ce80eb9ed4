"""Tests for the per-phone SMS rate limiter."""

from __future__ import annotations

import threading

import pytest

from sms_concierge.services.rate_limiter import SmsRateLimiter


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ── Admission ────────────────────────────────────────────────────────


class TestAdmission:
    def test_admits_up_to_limit_then_rejects(self):
        limiter = SmsRateLimiter(limit=3, window_seconds=60, clock=FakeClock())
        assert [limiter.admit("+15550001") for _ in range(4)] == [True, True, True, False]

    def test_rejections_do_not_extend_the_window(self):
        clock = FakeClock()
        limiter = SmsRateLimiter(limit=1, window_seconds=60, clock=clock)
        assert limiter.admit("+15550001") is True
        clock.advance(30)
        assert limiter.admit("+15550001") is False
        clock.advance(30)
        assert limiter.admit("+15550001") is True

    def test_new_window_after_expiry(self):
        clock = FakeClock()
        limiter = SmsRateLimiter(limit=2, window_seconds=3600, clock=clock)
        limiter.admit("+15550001")
        limiter.admit("+15550001")
        assert limiter.admit("+15550001") is False

        clock.advance(3600)
        assert limiter.admit("+15550001") is True
        assert limiter.remaining("+15550001") == 1

    def test_numbers_are_counted_independently(self):
        limiter = SmsRateLimiter(limit=1, window_seconds=60, clock=FakeClock())
        assert limiter.admit("+15550001") is True
        assert limiter.admit("+15550002") is True
        assert limiter.admit("+15550001") is False

    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            SmsRateLimiter(limit=0)


# ── Housekeeping ─────────────────────────────────────────────────────


class TestHousekeeping:
    def test_remaining_for_unknown_number_is_full_limit(self):
        limiter = SmsRateLimiter(limit=20, window_seconds=60, clock=FakeClock())
        assert limiter.remaining("+15550001") == 20

    def test_reset_single_number(self):
        limiter = SmsRateLimiter(limit=1, window_seconds=60, clock=FakeClock())
        limiter.admit("+15550001")
        limiter.admit("+15550002")
        limiter.reset("+15550001")
        assert limiter.admit("+15550001") is True
        assert limiter.admit("+15550002") is False

    def test_reset_all(self):
        limiter = SmsRateLimiter(limit=1, window_seconds=60, clock=FakeClock())
        limiter.admit("+15550001")
        limiter.admit("+15550002")
        limiter.reset()
        assert limiter.bucket_count == 0

    def test_least_recently_seen_bucket_is_dropped(self):
        limiter = SmsRateLimiter(limit=1, window_seconds=60, clock=FakeClock(), max_buckets=2)
        limiter.admit("+15550001")
        limiter.admit("+15550002")
        limiter.admit("+15550003")
        assert limiter.bucket_count == 2
        # The first number was evicted, so it starts over.
        assert limiter.admit("+15550001") is True


# ── Thread safety ────────────────────────────────────────────────────


class TestConcurrency:
    def test_concurrent_admits_never_exceed_limit(self):
        limiter = SmsRateLimiter(limit=50, window_seconds=60, clock=FakeClock())
        admitted: list[bool] = []
        lock = threading.Lock()

        def worker():
            for _ in range(20):
                result = limiter.admit("+15550001")
                with lock:
                    admitted.append(result)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert admitted.count(True) == 50
        assert len(admitted) == 200
