"""
Test suite for the revocation cache
"""

import pytest

from netbank.errors import CacheUnavailable
from netbank.revocation import InMemoryRevocationCache, create_revocation_cache


class ManualClock:
    def __init__(self):
        self.now = 50.0

    def __call__(self):
        return self.now


class TestInMemoryRevocationCache:
    """Test the process-local cache"""

    def test_revoke_and_expire(self):
        """Test an entry is revoked until its TTL passes"""
        clock = ManualClock()
        cache = InMemoryRevocationCache(clock=clock)

        assert not cache.is_revoked("session:s1")
        cache.revoke("session:s1", ttl_seconds=60)
        assert cache.is_revoked("session:s1")

        clock.now += 61
        assert not cache.is_revoked("session:s1")

    def test_revocation_never_shortened(self):
        """Test a shorter second revocation keeps the longer expiry"""
        clock = ManualClock()
        cache = InMemoryRevocationCache(clock=clock)
        cache.revoke("session:s1", ttl_seconds=600)
        cache.revoke("session:s1", ttl_seconds=1)

        clock.now += 10
        assert cache.is_revoked("session:s1")

    def test_lock_timeout_raises_unavailable(self):
        """Test a cache that cannot answer in time raises instead of blocking"""
        cache = InMemoryRevocationCache(timeout_seconds=0.01)
        cache._lock.acquire()
        try:
            with pytest.raises(CacheUnavailable):
                cache.is_revoked("session:s1")
            with pytest.raises(CacheUnavailable):
                cache.revoke("session:s1", 10)
        finally:
            cache._lock.release()


class TestCreateRevocationCache:
    """Test cache selection"""

    def test_empty_url_is_in_memory(self):
        """Test the default is the in-process cache"""
        assert isinstance(create_revocation_cache("", 0.5), InMemoryRevocationCache)

    def test_unknown_scheme(self):
        """Test unsupported URLs are rejected"""
        with pytest.raises(ValueError):
            create_revocation_cache("memcached://localhost", 0.5)
