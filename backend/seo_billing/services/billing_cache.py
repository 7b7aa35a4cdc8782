"""
Billing cache - Redis-backed read-through cache of per-shop billing views.

Keys are namespaced per shop (billing:{shop_domain}:{view}) so every view
of one shop can be dropped with a single pattern delete.

CRITICAL: invalidate_shop() MUST be called after every billing mutation
commits, never before.
"""

import fnmatch
import json
import logging
import os
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300  # 5 minutes
CACHE_KEY_PREFIX = "billing:"
INVALIDATION_CHANNEL = "billing:invalidations"

VIEW_INFO = "info"
VIEW_BALANCE = "balance"


class RedisClient:
    """
    Redis client wrapper with graceful degradation when Redis is unavailable.
    """

    _instance: Optional["RedisClient"] = None
    _lock = Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._redis = None
        self._available = False
        self._connect()
        self._initialized = True

    def _connect(self) -> None:
        redis_url = os.getenv("REDIS_URL")
        if not redis_url:
            logger.info("REDIS_URL not configured - using in-process billing cache")
            return

        try:
            self._redis = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
            )
            self._redis.ping()
            self._available = True
            logger.info("Redis connection established for billing cache")
        except redis.RedisError as e:
            logger.warning("Redis connection failed: %s - using in-process billing cache", e)

    @property
    def available(self) -> bool:
        return self._available and self._redis is not None

    def get(self, key: str) -> Optional[str]:
        if not self.available:
            return None
        try:
            return self._redis.get(key)
        except redis.RedisError as e:
            logger.warning("Redis GET failed: %s", e)
            return None

    def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        if not self.available:
            return False
        try:
            self._redis.setex(key, ttl_seconds, value)
            return True
        except redis.RedisError as e:
            logger.warning("Redis SET failed: %s", e)
            return False

    def delete_pattern(self, pattern: str) -> int:
        if not self.available:
            return 0
        try:
            keys = list(self._redis.scan_iter(pattern))
            if keys:
                return self._redis.delete(*keys)
            return 0
        except redis.RedisError as e:
            logger.warning("Redis DELETE pattern failed: %s", e)
            return 0

    def publish(self, channel: str, message: str) -> int:
        if not self.available:
            return 0
        try:
            return self._redis.publish(channel, message)
        except redis.RedisError as e:
            logger.warning("Redis PUBLISH failed: %s", e)
            return 0


class InMemoryCache:
    """
    In-process fallback cache. Thread-safe with TTL expiry.
    """

    def __init__(self, max_size: int = 10000):
        self._cache: Dict[str, Tuple[str, datetime]] = {}
        self._lock = Lock()
        self._max_size = max_size

    def get(self, key: str, ttl_seconds: int) -> Optional[str]:
        with self._lock:
            if key not in self._cache:
                return None
            value, cached_at = self._cache[key]
            if (datetime.now(timezone.utc) - cached_at).total_seconds() > ttl_seconds:
                del self._cache[key]
                return None
            return value

    def set(self, key: str, value: str) -> None:
        with self._lock:
            if len(self._cache) >= self._max_size:
                oldest_key = min(self._cache.keys(), key=lambda k: self._cache[k][1])
                del self._cache[oldest_key]
            self._cache[key] = (value, datetime.now(timezone.utc))

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            keys_to_delete = [k for k in self._cache.keys() if fnmatch.fnmatch(k, pattern)]
            for key in keys_to_delete:
                del self._cache[key]
            return len(keys_to_delete)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


class BillingCache:
    """
    Read-through cache for billing views.

    Usage:
        cache = get_billing_cache()

        view = cache.get(shop_domain, VIEW_INFO)
        if view is None:
            view = build_view()
            cache.set(shop_domain, VIEW_INFO, view)

        # after every billing mutation
        cache.invalidate_shop(shop_domain)
    """

    def __init__(self, ttl_seconds: Optional[int] = None):
        self._redis = RedisClient()
        self._memory_cache = InMemoryCache()
        self._ttl_seconds = ttl_seconds or int(os.getenv("BILLING_CACHE_TTL", DEFAULT_CACHE_TTL_SECONDS))

    @staticmethod
    def _cache_key(shop_domain: str, view: str) -> str:
        return f"{CACHE_KEY_PREFIX}{shop_domain}:{view}"

    def get(self, shop_domain: str, view: str) -> Optional[Dict[str, Any]]:
        key = self._cache_key(shop_domain, view)

        # In-process copy only while Redis is down; it never sees other workers' invalidations
        if self._redis.available:
            data = self._redis.get(key)
        else:
            data = self._memory_cache.get(key, self._ttl_seconds)
        if data is None:
            return None

        try:
            return json.loads(data)
        except ValueError as e:
            logger.warning("Failed to deserialize cached billing view: %s", e)
            return None

    def set(self, shop_domain: str, view: str, value: Dict[str, Any]) -> None:
        key = self._cache_key(shop_domain, view)
        data = json.dumps(value, default=str)

        if self._redis.available:
            self._redis.set(key, data, self._ttl_seconds)
        else:
            self._memory_cache.set(key, data)

    def invalidate_shop(self, shop_domain: str, reason: Optional[str] = None) -> int:
        """Drop every cached view of a shop."""
        pattern = f"{CACHE_KEY_PREFIX}{shop_domain}:*"
        count = self._redis.delete_pattern(pattern) + self._memory_cache.delete_pattern(pattern)
        if self._redis.available:
            self._redis.publish(
                INVALIDATION_CHANNEL,
                json.dumps({
                    "shop_domain": shop_domain,
                    "reason": reason,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                })
            )

        logger.debug(
            "Invalidated billing cache",
            extra={"shop_domain": shop_domain, "reason": reason, "keys": count}
        )
        return count

    def clear(self) -> None:
        self._memory_cache.clear()


_billing_cache: Optional[BillingCache] = None


def get_billing_cache() -> BillingCache:
    """Return the process-wide BillingCache."""
    global _billing_cache
    if _billing_cache is None:
        _billing_cache = BillingCache()
    return _billing_cache


def reset_billing_cache() -> None:
    """Reset singletons (for tests only)."""
    global _billing_cache
    _billing_cache = None
    RedisClient._instance = None
