"""
core/ratelimit.py — Failed-Verification Throttle
==================================================
In-memory fixed-window counter keyed by (umid_id, accessor_id).
Only FAILED verifications count; a success clears the key.

modules/access.py goes through attempt(), which holds the lock across the
throttle check, the code check and the count, so concurrent failures for
one key can never push it past max_failures. Swap for a Redis-backed
counter when running more than one worker.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from config import settings
from core.totp import CodeCheck

logger = logging.getLogger("umid.ratelimit")

ThrottleKey = Tuple[str, str]

# Full sweeps of expired windows only once the table is this big
SWEEP_THRESHOLD = 1024


class FailureThrottle:

    def __init__(
        self,
        max_failures: Optional[int] = None,
        window_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_failures = max_failures or settings.RATE_LIMIT_MAX_FAILURES
        self.window_seconds = window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS
        self._clock = clock
        self._failures: Dict[ThrottleKey, Tuple[int, float]] = {}   # key → (count, reset_at)
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._failures)

    # ── Unlocked helpers (callers hold self._lock) ─────────────────────────
    def _current(self, key: ThrottleKey, now: float) -> Tuple[int, float]:
        entry = self._failures.get(key)
        if entry is None:
            return 0, now + self.window_seconds
        if now > entry[1]:
            del self._failures[key]             # window over, forget the key
            return 0, now + self.window_seconds
        return entry

    def _sweep(self, now: float):
        expired = [key for key, (_, reset_at) in self._failures.items() if now > reset_at]
        for key in expired:
            del self._failures[key]

    def _throttled(self, key: ThrottleKey, now: float) -> bool:
        count, _ = self._current(key, now)
        return count >= self.max_failures

    def _fail(self, key: ThrottleKey, now: float) -> int:
        if len(self._failures) >= SWEEP_THRESHOLD:
            self._sweep(now)
        count, reset_at = self._current(key, now)
        count = min(count + 1, self.max_failures)
        self._failures[key] = (count, reset_at)
        if count >= self.max_failures:
            logger.warning(f"Throttling {key[1]} on UMID {key[0]} after {count} failed attempts")
        return count

    # ── Public API ─────────────────────────────────────────────────────────
    async def attempt(self, key: ThrottleKey, verify: Callable[[], CodeCheck]) -> Optional[CodeCheck]:
        """
        Run `verify` unless `key` is throttled, then count a failure or clear
        the key, all under one lock. Returns None when throttled.
        """
        async with self._lock:
            now = self._clock()
            if self._throttled(key, now):
                return None
            result = verify()
            if result is CodeCheck.valid:
                self._failures.pop(key, None)
            else:
                self._fail(key, now)
            return result

    async def is_throttled(self, key: ThrottleKey) -> bool:
        async with self._lock:
            return self._throttled(key, self._clock())

    async def record_failure(self, key: ThrottleKey) -> int:
        async with self._lock:
            return self._fail(key, self._clock())

    async def reset(self, key: ThrottleKey):
        async with self._lock:
            self._failures.pop(key, None)

    async def clear(self):
        async with self._lock:
            self._failures.clear()


# Singleton — import this everywhere:  from core.ratelimit import failure_throttle
failure_throttle = FailureThrottle()
