"""
Tests for the billing view cache.

Tests cover:
- In-process fallback when REDIS_URL is unset or Redis is down
- Per-shop invalidation
- TTL expiry
- Redis read path
- Invalidation across workers sharing Redis
"""

import fnmatch
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import redis

from seo_billing.services.billing_cache import (
    VIEW_BALANCE,
    VIEW_INFO,
    BillingCache,
    INVALIDATION_CHANNEL,
    InMemoryCache,
    RedisClient,
    get_billing_cache,
)


class SharedRedis:
    """Dict-backed stand-in for one Redis server reached by several workers."""

    def __init__(self):
        self.store = {}
        self.published = []

    def ping(self):
        return True

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl_seconds, value):
        self.store[key] = value

    def scan_iter(self, pattern):
        return [key for key in self.store if fnmatch.fnmatch(key, pattern)]

    def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 0


class TestBillingCacheMemory:

    def test_miss_then_hit(self):
        cache = BillingCache(ttl_seconds=60)

        assert cache.get("a.myshopify.com", VIEW_INFO) is None
        cache.set("a.myshopify.com", VIEW_INFO, {"plan": "growth"})

        assert cache.get("a.myshopify.com", VIEW_INFO) == {"plan": "growth"}

    def test_invalidate_only_drops_one_shop(self):
        cache = BillingCache(ttl_seconds=60)
        cache.set("a.myshopify.com", VIEW_INFO, {"plan": "growth"})
        cache.set("a.myshopify.com", VIEW_BALANCE, {"balance": 5})
        cache.set("b.myshopify.com", VIEW_INFO, {"plan": "starter"})

        removed = cache.invalidate_shop("a.myshopify.com", reason="test")

        assert removed == 2
        assert cache.get("a.myshopify.com", VIEW_INFO) is None
        assert cache.get("a.myshopify.com", VIEW_BALANCE) is None
        assert cache.get("b.myshopify.com", VIEW_INFO) == {"plan": "starter"}

    def test_values_serialized_with_str_fallback(self):
        cache = BillingCache(ttl_seconds=60)
        moment = datetime(2026, 1, 1, tzinfo=timezone.utc)

        cache.set("a.myshopify.com", VIEW_INFO, {"trial_ends_at": moment})

        assert cache.get("a.myshopify.com", VIEW_INFO) == {"trial_ends_at": str(moment)}

    def test_singleton(self):
        assert get_billing_cache() is get_billing_cache()

    def test_ttl_from_env(self, monkeypatch):
        monkeypatch.setenv("BILLING_CACHE_TTL", "42")

        assert BillingCache()._ttl_seconds == 42


class TestInMemoryCache:

    def test_expired_entry_dropped(self):
        cache = InMemoryCache()
        cache.set("k", "v")
        value, _ = cache._cache["k"]
        cache._cache["k"] = (value, datetime.now(timezone.utc) - timedelta(seconds=120))

        assert cache.get("k", ttl_seconds=60) is None
        assert "k" not in cache._cache

    def test_evicts_oldest_when_full(self):
        cache = InMemoryCache(max_size=2)
        cache.set("first", "1")
        cache.set("second", "2")
        cache.set("third", "3")

        assert cache.get("first", ttl_seconds=60) is None
        assert cache.get("third", ttl_seconds=60) == "3"


class TestRedisClient:

    def test_unavailable_without_url(self):
        client = RedisClient()

        assert client.available is False
        assert client.get("anything") is None
        assert client.set("anything", "v", 10) is False
        assert client.delete_pattern("billing:*") == 0
        assert client.publish("billing:invalidations", "{}") == 0

    def test_unavailable_when_ping_fails(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
        broken = MagicMock()
        broken.ping.side_effect = redis.ConnectionError("connection refused")

        with patch("seo_billing.services.billing_cache.redis.from_url", return_value=broken):
            client = RedisClient()

        assert client.available is False

    def test_reads_through_redis(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
        backend = MagicMock()
        backend.get.return_value = json.dumps({"plan": "enterprise"})

        with patch("seo_billing.services.billing_cache.redis.from_url", return_value=backend):
            cache = BillingCache(ttl_seconds=30)

        assert cache.get("a.myshopify.com", VIEW_INFO) == {"plan": "enterprise"}
        backend.get.assert_called_once_with("billing:a.myshopify.com:info")

        cache.set("a.myshopify.com", VIEW_INFO, {"plan": "growth"})
        backend.setex.assert_called_once_with("billing:a.myshopify.com:info", 30, json.dumps({"plan": "growth"}))

    def test_redis_errors_degrade_to_miss(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
        backend = MagicMock()
        backend.get.side_effect = redis.TimeoutError("slow")

        with patch("seo_billing.services.billing_cache.redis.from_url", return_value=backend):
            client = RedisClient()

        assert client.get("k") is None


@pytest.mark.parametrize("payload", ["not json", "{"])
def test_corrupt_entry_is_a_miss(payload):
    cache = BillingCache(ttl_seconds=60)
    cache._memory_cache.set("billing:a.myshopify.com:info", payload)

    assert cache.get("a.myshopify.com", VIEW_INFO) is None


class TestSharedRedisWorkers:

    @pytest.fixture
    def worker_caches(self, monkeypatch):
        """Two workers, each with its own RedisClient, against one Redis server."""
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
        server = SharedRedis()

        workers = []
        with patch("seo_billing.services.billing_cache.redis.from_url", return_value=server):
            for _ in range(2):
                RedisClient._instance = None
                workers.append(BillingCache(ttl_seconds=300))

        return server, workers[0], workers[1]

    def test_invalidation_by_another_worker_is_seen(self, worker_caches):
        _, worker_a, worker_b = worker_caches
        worker_a.set("a.myshopify.com", VIEW_BALANCE, {"balance": 100})
        assert worker_b.get("a.myshopify.com", VIEW_BALANCE) == {"balance": 100}

        worker_b.invalidate_shop("a.myshopify.com", reason="purchase")

        assert worker_a.get("a.myshopify.com", VIEW_BALANCE) is None

    def test_no_in_process_copy_while_redis_is_up(self, worker_caches):
        server, worker_a, _ = worker_caches

        worker_a.set("a.myshopify.com", VIEW_INFO, {"plan": "growth"})

        assert worker_a._memory_cache._cache == {}
        assert "billing:a.myshopify.com:info" in server.store

    def test_invalidation_published(self, worker_caches):
        server, worker_a, _ = worker_caches
        worker_a.set("a.myshopify.com", VIEW_INFO, {"plan": "growth"})

        worker_a.invalidate_shop("a.myshopify.com", reason="cancel")

        channel, event = server.published[0]
        assert channel == INVALIDATION_CHANNEL
        assert event["shop_domain"] == "a.myshopify.com"
        assert event["reason"] == "cancel"
