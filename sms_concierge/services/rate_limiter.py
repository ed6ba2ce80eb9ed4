"""Thread-safe in-memory abuse throttle keyed by phone number.

Design decisions
────────────────
• **Fixed window per number**: the first message opens a bucket that
  lives for ``window_seconds``; up to ``limit`` messages are admitted in it.
• **OrderedDict** so the least-recently-seen buckets can be dropped once
  ``max_buckets`` is reached, keeping memory bounded under number spraying.
• **threading.Lock** for thread safety (FastAPI can serve concurrent
  webhooks on the same process).
• **Injectable clock** so tests can move time without sleeping.
• Purely ephemeral — buckets are lost on process restart and are not shared
  between instances.  This is coarse abuse mitigation, not a security
  boundary.

Usage
─────
>>> limiter = SmsRateLimiter(limit=20, window_seconds=3600)
>>> limiter.admit("+13035550100")
True
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
DEFAULT_WINDOW_SECONDS = 60 * 60
DEFAULT_MAX_BUCKETS = 50_000


@dataclass
class _Bucket:
    count: int
    reset_at: float


class SmsRateLimiter:
    """Per-phone-number fixed-window admission control."""

    def __init__(
        self,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_buckets: int = DEFAULT_MAX_BUCKETS,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._max_buckets = max_buckets
        # phone → bucket, least-recently-seen first
        self._buckets: OrderedDict[str, _Bucket] = OrderedDict()
        self._lock = threading.Lock()

    def admit(self, phone_number: str) -> bool:
        """Count one message for *phone_number*; ``False`` means throttle it."""
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(phone_number)

            if bucket is None or now >= bucket.reset_at:
                self._buckets[phone_number] = _Bucket(count=1, reset_at=now + self._window)
                self._buckets.move_to_end(phone_number)
                self._evict_overflow()
                return True

            self._buckets.move_to_end(phone_number)
            if bucket.count >= self._limit:
                logger.debug(
                    "Rate limit: %s at cap (%d) until %.0f", phone_number, self._limit, bucket.reset_at,
                )
                return False

            bucket.count += 1
            return True

    def _evict_overflow(self) -> None:
        while len(self._buckets) > self._max_buckets:
            evicted, _ = self._buckets.popitem(last=False)
            logger.debug("Rate limit: dropped bucket for %s", evicted)

    def reset(self, phone_number: str | None = None) -> None:
        """Forget one number's bucket, or every bucket when *phone_number* is None."""
        with self._lock:
            if phone_number is None:
                self._buckets.clear()
            else:
                self._buckets.pop(phone_number, None)

    # ── Introspection ────────────────────────────────────────────────

    def remaining(self, phone_number: str) -> int:
        """Messages still admitted for *phone_number* in its current window."""
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(phone_number)
            if bucket is None or now >= bucket.reset_at:
                return self._limit
            return max(self._limit - bucket.count, 0)

    @property
    def bucket_count(self) -> int:
        return len(self._buckets)
