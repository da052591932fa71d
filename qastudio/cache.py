"""Redis cache for frequently read records.

Cache misses and Redis errors are treated the same: callers fall through
to the database.
"""

import json
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, TypeVar

import redis
from redis.exceptions import RedisError

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CacheKeys:
    """Key builders per cached record type."""

    @staticmethod
    def project(project_id: str) -> str:
        return f"project:{project_id}"

    @staticmethod
    def projects(user_id: str) -> str:
        return f"projects:user:{user_id}"

    @staticmethod
    def test_run(run_id: str) -> str:
        return f"run:{run_id}"

    @staticmethod
    def test_result(result_id: str) -> str:
        return f"result:{result_id}"

    @staticmethod
    def test_results(run_id: str) -> str:
        return f"results:run:{run_id}"

    @staticmethod
    def test_case(case_id: str) -> str:
        return f"case:{case_id}"

    @staticmethod
    def test_suite(suite_id: str) -> str:
        return f"suite:{suite_id}"

    @staticmethod
    def api_key(key: str) -> str:
        return f"apikey:{key}"


class CacheTTL:
    """TTL values in seconds."""

    PROJECT = 300
    TEST_RUN = 180
    TEST_RESULT = 300
    TEST_CASE = 600
    API_KEY = 300


def create_redis_client(settings: "Settings") -> Optional[redis.Redis]:
    """Build a Redis client from REDIS_URL, or None when it isn't configured.

    The client connects lazily; construct it once at startup and pass it on.
    """
    if not settings.redis_url:
        logger.info("REDIS_URL not set, Redis-backed features use in-process fallbacks")
        return None
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


class RedisCache:
    """JSON cache over Redis.

    Usage:
        cache = RedisCache(create_redis_client(settings))
        project = await cache.get_or_fetch(CacheKeys.project(pid), load_project, CacheTTL.PROJECT)
    """

    def __init__(self, client: Optional[redis.Redis]):
        self.client = client

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def get(self, key: str) -> Optional[Any]:
        """Get cached data, or None on a miss or error."""
        if self.client is None:
            return None
        try:
            raw = self.client.get(key)
        except RedisError as e:
            logger.error(f"Redis GET error: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding non-JSON cache entry: {key}")
            return None

    def set(self, key: str, data: Any, ttl: Optional[int] = None) -> bool:
        """Cache data as JSON, with an optional TTL in seconds."""
        if self.client is None:
            return False
        payload = json.dumps(data)
        try:
            if ttl:
                self.client.setex(key, ttl, payload)
            else:
                self.client.set(key, payload)
        except RedisError as e:
            logger.error(f"Redis SET error: {e}")
            return False
        return True

    def delete(self, *keys: str) -> bool:
        """Delete one or more keys."""
        if self.client is None or not keys:
            return False
        try:
            self.client.delete(*keys)
        except RedisError as e:
            logger.error(f"Redis DEL error: {e}")
            return False
        return True

    def delete_pattern(self, pattern: str) -> bool:
        """Delete every key matching a glob pattern (e.g. "results:run:*")."""
        if self.client is None:
            return False
        try:
            keys = list(self.client.scan_iter(match=pattern))
            if keys:
                self.client.delete(*keys)
        except RedisError as e:
            logger.error(f"Redis pattern delete error: {e}")
            return False
        return True

    def exists(self, key: str) -> bool:
        if self.client is None:
            return False
        try:
            return self.client.exists(key) == 1
        except RedisError as e:
            logger.error(f"Redis EXISTS error: {e}")
            return False

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[T]],
        ttl: Optional[int] = None,
    ) -> T:
        """Return the cached value, or fetch it and cache the result."""
        cached = self.get(key)
        if cached is not None:
            return cached

        data = await fetch()
        self.set(key, data, ttl)
        return data
