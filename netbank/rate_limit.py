"""
Rate Limiting Module

Token-bucket admission control keyed by identity id or client address. A
denied request does not consume a token. Admission fails closed: if the bucket
table cannot be locked in time the request is denied.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from .logging_config import get_logger


@dataclass
class TokenBucket:
    """Bucket state for one key"""
    tokens: float
    updated_at: float


class RateLimiter:
    """Per-key token bucket"""

    def __init__(self, refill_per_second: float, burst: int,
                 clock: Callable[[], float] = time.monotonic,
                 lock_timeout_seconds: float = 0.5,
                 max_keys: int = 100_000):
        if refill_per_second <= 0 or burst < 1:
            raise ValueError("refill_per_second and burst must be positive")
        self.refill_per_second = refill_per_second
        self.burst = burst
        self._clock = clock
        self._lock = threading.Lock()
        self._lock_timeout = lock_timeout_seconds
        self._max_keys = max_keys
        self._buckets: Dict[str, TokenBucket] = {}
        self.logger = get_logger("netbank.rate_limit")

    def _refill(self, bucket: TokenBucket, now: float) -> None:
        elapsed = max(now - bucket.updated_at, 0.0)
        bucket.tokens = min(float(self.burst), bucket.tokens + elapsed * self.refill_per_second)
        bucket.updated_at = now

    def _evict_full_buckets(self, now: float) -> None:
        # A bucket that has refilled to burst carries no state worth keeping
        for key in list(self._buckets):
            bucket = self._buckets[key]
            self._refill(bucket, now)
            if bucket.tokens >= self.burst:
                del self._buckets[key]

    def admit(self, key: str) -> bool:
        """
        Take one token from the bucket for ``key``.

        Returns:
            True if the request is admitted, False if the bucket is empty
        """
        if not self._lock.acquire(timeout=self._lock_timeout):
            self.logger.warning(f"Rate limiter lock wait exceeded, denying {key}")
            return False
        try:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) >= self._max_keys:
                    self._evict_full_buckets(now)
                bucket = TokenBucket(tokens=float(self.burst), updated_at=now)
                self._buckets[key] = bucket
            else:
                self._refill(bucket, now)

            if bucket.tokens < 1.0:
                return False
            bucket.tokens -= 1.0
            return True
        finally:
            self._lock.release()

    def available_tokens(self, key: str) -> float:
        """Current token count for ``key`` (burst if the key is unknown)"""
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return float(self.burst)
            self._refill(bucket, self._clock())
            return bucket.tokens
