"""
Redis cache layer for catalog reads (single products and product lists).

Redis is ONLY a cache, never the source of truth.
The replica store is always authoritative for reads, the upstream catalog for writes.

Cache keys follow a clear naming pattern (see cache_policy.py):
- product:{id}                    single product payloads (TTL 1 hour)
- products:v{version}:{hash}      product list pages (TTL 15 min)
- catalog_version                 monotonic token, bumped on every write

Every backend call is fail-soft: errors are logged and counted, and the
caller falls through to computing the value from the replica.
"""

import hashlib
import json
from typing import Any, Callable, Dict, Optional

import redis

from storefront import cache_policy
from storefront.config import StorefrontConfig
from storefront.logger import get_logger
from storefront.metrics import MetricsCollector

logger = get_logger("cache")


class CacheClient:
    """
    Namespaced Redis client with JSON values and TTL management.

    The redis connection is injected so tests can pass a fakeredis instance;
    ``from_config`` builds a real one from REDIS_URL.
    """

    def __init__(
        self,
        client: "redis.Redis",
        namespace: str = "storefront",
        metrics: Optional[MetricsCollector] = None,
    ):
        self.client = client
        self.namespace = namespace
        self.metrics = metrics

    @classmethod
    def from_config(cls, config: StorefrontConfig, metrics: Optional[MetricsCollector] = None) -> "CacheClient":
        client = redis.from_url(
            config.redis_url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        return cls(client, namespace=config.cache_namespace, metrics=metrics)

    def _key(self, key: str) -> str:
        """Prefix key with namespace."""
        return f"{self.namespace}:{key}"

    def _error(self, action: str, key: str, exc: Exception) -> None:
        logger.warning("Cache %s error for %s: %s", action, key, exc)
        if self.metrics is not None:
            self.metrics.record_cache_error()

    def ping(self) -> bool:
        """Check if Redis is reachable."""
        try:
            return bool(self.client.ping())
        except Exception:
            return False

    def close(self) -> None:
        try:
            self.client.close()
        except Exception as e:
            logger.debug("Cache close error: %s", e)

    #
    # JSON values
    #

    def get_json(self, key: str) -> Optional[Any]:
        """Get a cached JSON value. Returns None on miss or error."""
        full_key = self._key(key)
        try:
            cached = self.client.get(full_key)
            if cached is None:
                return None
            return json.loads(cached)
        except Exception as e:
            self._error("read", full_key, e)
            return None

    def set_json(self, key: str, value: Any, ttl: int) -> bool:
        full_key = self._key(key)
        try:
            self.client.setex(full_key, ttl, json.dumps(value))
            return True
        except Exception as e:
            self._error("write", full_key, e)
            return False

    def delete(self, key: str) -> bool:
        full_key = self._key(key)
        try:
            self.client.delete(full_key)
            return True
        except Exception as e:
            self._error("delete", full_key, e)
            return False

    #
    # Counters
    #

    def get_int(self, key: str) -> Optional[int]:
        """Integer counter value; 0 when unset, None on error."""
        full_key = self._key(key)
        try:
            raw = self.client.get(full_key)
            return int(raw) if raw is not None else 0
        except Exception as e:
            self._error("read", full_key, e)
            return None

    def incr(self, key: str) -> Optional[int]:
        full_key = self._key(key)
        try:
            return int(self.client.incr(full_key))
        except Exception as e:
            self._error("incr", full_key, e)
            return None

    #
    # Key generation
    #

    @staticmethod
    def make_list_key(signature: Dict[str, Any], version: int) -> str:
        """
        Deterministic cache key for a list query under a catalog version.

        The signature is sorted by key so identical queries produce identical
        keys regardless of dict ordering. Keys starting with "_" and None
        values don't affect the key.
        """
        stable = {
            k: v for k, v in sorted(signature.items())
            if not k.startswith("_") and v is not None
        }
        raw = json.dumps(stable, sort_keys=True, default=str)
        digest = hashlib.sha256(raw.encode()).hexdigest()[:cache_policy.LIST_KEY_DIGEST_LENGTH]
        return cache_policy.LIST_KEY.format(version=version, digest=digest)

    @staticmethod
    def make_product_key(item_id: int) -> str:
        return cache_policy.PRODUCT_KEY.format(item_id=item_id)


class CacheCoordinator:
    """
    Read-through caching with a catalog version token for list results.

    ``cache`` may be None (cache disabled or Redis not configured), in which
    case every call computes directly.
    """

    def __init__(
        self,
        cache: Optional[CacheClient] = None,
        metrics: Optional[MetricsCollector] = None,
        ttl_product: int = cache_policy.DEFAULT_TTL_PRODUCT,
        ttl_list: int = cache_policy.DEFAULT_TTL_LIST,
    ):
        self.cache = cache
        self.metrics = metrics
        self.ttl_product = ttl_product
        self.ttl_list = ttl_list

    @property
    def enabled(self) -> bool:
        return self.cache is not None

    def get_or_compute(self, key: str, ttl: int, compute: Callable[[], Any]) -> Any:
        """
        Return the cached value for ``key`` or compute, store and return it.

        None results are returned but not stored.
        """
        if self.cache is None:
            return compute()

        cached = self.cache.get_json(key)
        if cached is not None:
            self._hit()
            return cached

        self._miss()
        value = compute()
        if value is not None:
            self.cache.set_json(key, value, ttl)
        return value

    def get_or_compute_list(self, signature: Dict[str, Any], ttl: int, compute: Callable[[], Any]) -> Any:
        """
        Version-keyed read-through for list queries.

        When the version token can't be read the list is computed uncached.
        """
        if self.cache is None:
            return compute()

        version = self.catalog_version()
        if version is None:
            return compute()
        key = CacheClient.make_list_key(signature, version)
        return self.get_or_compute(key, ttl, compute)

    def get_product(self, item_id: int, compute: Callable[[], Any]) -> Any:
        return self.get_or_compute(CacheClient.make_product_key(item_id), self.ttl_product, compute)

    def list_products(self, signature: Dict[str, Any], compute: Callable[[], Any]) -> Any:
        return self.get_or_compute_list(signature, self.ttl_list, compute)

    def catalog_version(self) -> Optional[int]:
        if self.cache is None:
            return None
        return self.cache.get_int(cache_policy.VERSION_KEY)

    def invalidate_all(self) -> Optional[int]:
        """Bump the catalog version; every list key computed before is orphaned."""
        if self.cache is None:
            return None
        version = self.cache.incr(cache_policy.VERSION_KEY)
        if version is not None:
            logger.debug("Catalog version bumped to %s", version)
        return version

    def invalidate_item(self, item_id: int) -> bool:
        if self.cache is None:
            return False
        return self.cache.delete(CacheClient.make_product_key(item_id))

    def _hit(self) -> None:
        if self.metrics is not None:
            self.metrics.record_cache_hit()

    def _miss(self) -> None:
        if self.metrics is not None:
            self.metrics.record_cache_miss()
