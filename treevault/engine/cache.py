"""
TreeVault Redis Cache Layer — Decision cache for grant-based authorization tiers.

Only the global and resource-specific tiers are cached. Ownership and resource
existence are always read from the store, so a deleted resource can never be
served from a stale entry.

All Redis data is ephemeral and reconstructible from the database.
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Set

import redis

logger = logging.getLogger("treevault.engine.cache")


class RedisCache:
    """
    Redis cache wrapper with a circuit breaker.

    Falls back to store-only mode on Redis failure: reads miss, writes are
    dropped, and the circuit re-closes after the failure window.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "treevault:",
        default_ttl: int = 300,
        db: int = 2,
    ):
        self._redis_url = redis_url
        self._prefix = prefix
        self._default_ttl = default_ttl
        self._db = db
        self._client: Optional[redis.Redis] = None
        self._available = False

        # Circuit breaker state
        self._failure_count = 0
        self._failure_threshold = 5
        self._failure_window = 30  # seconds
        self._first_failure_time = 0.0
        self._circuit_open = False

    def connect(self) -> bool:
        """Initialize the Redis connection. Returns False when Redis is unreachable."""
        try:
            self._client = redis.Redis.from_url(
                self._redis_url,
                db=self._db,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
            )
            self._client.ping()
            self._available = True
            self._circuit_open = False
            self._failure_count = 0
            logger.info(f"Redis connected: DB {self._db} ({self._prefix})")
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed (DB {self._db}): {e}")
            self._available = False
            return False

    def _check_circuit(self) -> bool:
        if self._circuit_open:
            if time.time() - self._first_failure_time > self._failure_window:
                self._circuit_open = False
                self._failure_count = 0
                return self.connect()
            return False
        return self._available

    def _record_failure(self) -> None:
        now = time.time()
        if self._failure_count == 0:
            self._first_failure_time = now

        self._failure_count += 1

        if self._failure_count >= self._failure_threshold:
            elapsed = now - self._first_failure_time
            if elapsed <= self._failure_window:
                self._circuit_open = True
                logger.error(
                    f"Redis circuit breaker OPEN: {self._failure_count} failures in {elapsed:.1f}s"
                )

    def _make_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> Optional[str]:
        """Get a value. Returns None on miss or failure."""
        if not self._check_circuit():
            return None
        try:
            return self._client.get(self._make_key(key))
        except redis.RedisError as e:
            self._record_failure()
            logger.debug(f"Redis GET failed: {e}")
            return None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set a value with optional TTL. Returns False on failure."""
        if not self._check_circuit():
            return False
        try:
            self._client.set(self._make_key(key), value, ex=ttl or self._default_ttl)
            return True
        except redis.RedisError as e:
            self._record_failure()
            logger.debug(f"Redis SET failed: {e}")
            return False

    def delete_pattern(self, pattern: str) -> Optional[int]:
        """Delete all keys matching a pattern. Returns count deleted, None on failure."""
        if not self._check_circuit():
            return None
        try:
            keys = list(self._client.scan_iter(match=self._make_key(pattern), count=1000))
            if keys:
                return self._client.delete(*keys)
            return 0
        except redis.RedisError as e:
            self._record_failure()
            logger.debug(f"Redis pattern delete failed: {e}")
            return None

    def incr(self, key: str, amount: int = 1) -> Optional[int]:
        """Increment a counter (amount=0 reads it). Returns the new value, None on failure."""
        if not self._check_circuit():
            return None
        try:
            return int(self._client.incr(self._make_key(key), amount))
        except redis.RedisError as e:
            self._record_failure()
            logger.debug(f"Redis INCR failed: {e}")
            return None

    # KEYS[1] guard counter, KEYS[2] target; ARGV expected, value, ttl
    _SET_IF_EQUAL = (
        "if (redis.call('GET', KEYS[1]) or '0') == ARGV[1] then "
        "redis.call('SET', KEYS[2], ARGV[2], 'EX', ARGV[3]) return 1 end return 0"
    )

    def set_if_equal(
        self,
        guard_key: str,
        expected: str,
        key: str,
        value: str,
        ttl: Optional[int] = None,
    ) -> bool:
        """Atomically set key only while guard_key still holds expected."""
        if not self._check_circuit():
            return False
        try:
            written = self._client.eval(
                self._SET_IF_EQUAL,
                2,
                self._make_key(guard_key),
                self._make_key(key),
                expected,
                value,
                ttl or self._default_ttl,
            )
            return bool(written)
        except redis.RedisError as e:
            self._record_failure()
            logger.debug(f"Redis guarded SET failed: {e}")
            return False

    def ping(self) -> bool:
        if not self._client:
            return False
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        """Close the Redis connection and release resources."""
        if self._client is not None:
            self._client.close()
            self._client = None
        self._available = False
        self._circuit_open = False
        self._failure_count = 0

    @property
    def is_available(self) -> bool:
        return self._available and not self._circuit_open

    @property
    def is_circuit_open(self) -> bool:
        return self._circuit_open


class DecisionCache:
    """
    Grant-tier decision cache, versioned per user.

    Key format: treevault:decisions:{user_id}:{generation}:{resource_type}:{resource_id}:{action}
    Value: "global" | "specific" (allowed, and by which tier) | "0" (no grant)

    Every grant mutation bumps treevault:generations:{user_id}, so entries
    written under an older generation are never read again. store() only
    writes while the generation read before the grant lookup is current.

    If a bump fails the cache suspends itself: reads miss and writes are
    dropped until the unbumped users are bumped and every decision is flushed.
    """

    def __init__(self, cache: RedisCache):
        self._cache = cache
        self._stale_users: Set[str] = set()
        self._flush_pending = False

    @staticmethod
    def _generation_key(user_id: str) -> str:
        return f"generations:{user_id}"

    @staticmethod
    def _make_key(user_id: str, generation: int, resource_type: str, resource_id: str, action: str) -> str:
        return f"decisions:{user_id}:{generation}:{resource_type}:{resource_id}:{action}"

    @property
    def is_suspended(self) -> bool:
        return self._flush_pending

    def _recover(self) -> bool:
        for user_id in sorted(self._stale_users):
            if self._cache.incr(self._generation_key(user_id)) is None:
                return False
            self._stale_users.discard(user_id)
        if self._cache.delete_pattern("decisions:*") is None:
            return False
        self._flush_pending = False
        logger.info("Decision cache flushed after failed invalidation; reads resumed")
        return True

    def generation(self, user_id: str) -> Optional[int]:
        """
        Current generation for user_id, read before the grant lookup.
        None means the cache must be bypassed for this decision.
        """
        if self._flush_pending and not self._recover():
            return None
        return self._cache.incr(self._generation_key(user_id), 0)

    def check(
        self,
        user_id: str,
        resource_type: str,
        resource_id: str,
        action: str,
        generation: int,
    ) -> Optional[str]:
        """
        Return the cached tier ("global"/"specific"), "" for a cached miss,
        or None when nothing is cached.
        """
        raw = self._cache.get(self._make_key(user_id, generation, resource_type, resource_id, action))
        if raw is None:
            return None
        return "" if raw == "0" else raw

    def store(
        self,
        user_id: str,
        resource_type: str,
        resource_id: str,
        action: str,
        tier: Optional[str],
        generation: int,
    ) -> bool:
        """Write the decision unless the user's grants changed since generation was read."""
        return self._cache.set_if_equal(
            self._generation_key(user_id),
            str(generation),
            self._make_key(user_id, generation, resource_type, resource_id, action),
            tier or "0",
        )

    def invalidate_user(self, user_id: str) -> bool:
        """
        Retire every cached decision for one grantee (grant, revoke, purge).
        Returns False when the bump failed and the cache is now suspended.
        """
        if self._cache.incr(self._generation_key(user_id)) is None:
            self._stale_users.add(user_id)
            self._flush_pending = True
            logger.error(f"Decision cache invalidation failed for {user_id}; cache suspended")
            return False
        self._cache.delete_pattern(f"decisions:{user_id}:*")
        return True

    def invalidate_resource(self, resource_type: str, resource_id: str) -> Optional[int]:
        """Drop every cached decision about one resource (resource deleted)."""
        return self._cache.delete_pattern(f"decisions:*:{resource_type}:{resource_id}:*")

    def invalidate_all(self) -> Optional[int]:
        return self._cache.delete_pattern("decisions:*")


def create_decision_cache(redis_url: str, ttl: int = 300, db: int = 2) -> DecisionCache:
    """Create and connect the decision cache."""
    cache = RedisCache(redis_url=redis_url, prefix="treevault:", default_ttl=ttl, db=db)
    cache.connect()
    return DecisionCache(cache)
