"""
Revocation Cache Module

Fast shared lookup of revoked sessions and access-token ids. Entries expire with
the access-token TTL, so no sweep is needed beyond natural expiry. Every lookup
is bounded in time: a cache that cannot answer raises CacheUnavailable and the
caller fails closed.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict

from .errors import CacheUnavailable
from .logging_config import get_logger


class RevocationCache(ABC):
    """Abstract revocation set"""

    @abstractmethod
    def revoke(self, key: str, ttl_seconds: int) -> None:
        """Mark a key revoked for ``ttl_seconds``"""
        pass

    @abstractmethod
    def is_revoked(self, key: str) -> bool:
        """Check whether a key is currently revoked"""
        pass

    def close(self) -> None:
        """Release cache resources (default no-op)"""
        pass


class InMemoryRevocationCache(RevocationCache):
    """Process-local revocation set, for tests and single-instance deployments"""

    def __init__(self, timeout_seconds: float = 0.5,
                 clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._timeout = timeout_seconds
        self._clock = clock

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self._timeout):
            raise CacheUnavailable("Revocation cache lock wait exceeded")

    def revoke(self, key: str, ttl_seconds: int) -> None:
        self._acquire()
        try:
            expires_at = self._clock() + ttl_seconds
            # Never shorten an existing revocation
            self._entries[key] = max(expires_at, self._entries.get(key, 0.0))
        finally:
            self._lock.release()

    def is_revoked(self, key: str) -> bool:
        self._acquire()
        try:
            expires_at = self._entries.get(key)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._entries[key]
                return False
            return True
        finally:
            self._lock.release()


class RedisRevocationCache(RevocationCache):
    """Redis-backed revocation set shared by every server instance"""

    def __init__(self, url: str, timeout_seconds: float = 0.5, prefix: str = "netbank:revoked:"):
        try:
            import redis
        except ImportError:
            raise ImportError("redis is required for the shared revocation cache. Install with: pip install redis")

        self._redis_error = redis.RedisError
        self._client = redis.Redis.from_url(
            url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        self._prefix = prefix
        self.logger = get_logger("netbank.revocation")

    def revoke(self, key: str, ttl_seconds: int) -> None:
        try:
            self._client.set(self._prefix + key, "1", ex=max(int(ttl_seconds), 1))
        except self._redis_error as e:
            self.logger.error(f"Revocation write failed for {key}: {e}")
            raise CacheUnavailable(f"Revocation cache unavailable: {e}")

    def is_revoked(self, key: str) -> bool:
        try:
            return bool(self._client.exists(self._prefix + key))
        except self._redis_error as e:
            self.logger.warning(f"Revocation lookup failed for {key}: {e}")
            raise CacheUnavailable(f"Revocation cache unavailable: {e}")

    def close(self) -> None:
        self._client.close()


def create_revocation_cache(url: str, timeout_seconds: float) -> RevocationCache:
    """Pick the revocation cache from configuration; empty URL means in-process"""
    if not url:
        return InMemoryRevocationCache(timeout_seconds=timeout_seconds)
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisRevocationCache(url, timeout_seconds=timeout_seconds)
    raise ValueError(f"Unsupported revocation cache URL: {url}")
