"""Tests for the Redis cache."""

import json
from unittest.mock import AsyncMock, Mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from qastudio.cache import CacheKeys, CacheTTL, RedisCache, create_redis_client
from qastudio.config import Settings


@pytest.fixture
def client():
    return Mock()


@pytest.fixture
def cache(client):
    return RedisCache(client)


class TestCacheKeys:
    """Test key builders."""

    def test_keys(self):
        """Test key formats."""
        assert CacheKeys.project("p1") == "project:p1"
        assert CacheKeys.projects("u1") == "projects:user:u1"
        assert CacheKeys.test_run("r1") == "run:r1"
        assert CacheKeys.test_results("r1") == "results:run:r1"
        assert CacheKeys.test_case("c1") == "case:c1"
        assert CacheKeys.test_suite("s1") == "suite:s1"
        assert CacheKeys.api_key("k") == "apikey:k"

    def test_ttls(self):
        """Test TTL values."""
        assert CacheTTL.PROJECT == 300
        assert CacheTTL.TEST_RUN == 180
        assert CacheTTL.TEST_CASE == 600


class TestRedisCache:
    """Test RedisCache."""

    def test_get_hit(self, cache, client):
        """Test cached JSON is decoded."""
        client.get.return_value = json.dumps({"id": "p1"})
        assert cache.get("project:p1") == {"id": "p1"}

    def test_get_miss(self, cache, client):
        """Test a miss returns None."""
        client.get.return_value = None
        assert cache.get("project:p1") is None

    def test_get_error_is_miss(self, cache, client):
        """Test Redis errors read as a miss."""
        client.get.side_effect = RedisConnectionError("down")
        assert cache.get("project:p1") is None

    def test_get_non_json_is_miss(self, cache, client):
        """Test corrupt entries read as a miss."""
        client.get.return_value = "not json{"
        assert cache.get("project:p1") is None

    def test_set_with_ttl(self, cache, client):
        """Test TTL uses SETEX."""
        assert cache.set("project:p1", {"id": "p1"}, ttl=300) is True
        client.setex.assert_called_once_with("project:p1", 300, '{"id": "p1"}')

    def test_set_without_ttl(self, cache, client):
        """Test no TTL uses SET."""
        cache.set("k", [1, 2])
        client.set.assert_called_once_with("k", "[1, 2]")

    def test_set_error(self, cache, client):
        """Test write errors return False."""
        client.set.side_effect = RedisConnectionError("down")
        assert cache.set("k", 1) is False

    def test_delete(self, cache, client):
        """Test deleting keys."""
        assert cache.delete("a", "b") is True
        client.delete.assert_called_once_with("a", "b")

    def test_delete_pattern(self, cache, client):
        """Test deleting by pattern."""
        client.scan_iter.return_value = iter(["results:run:1", "results:run:2"])
        assert cache.delete_pattern("results:run:*") is True
        client.delete.assert_called_once_with("results:run:1", "results:run:2")

    def test_exists(self, cache, client):
        """Test key existence."""
        client.exists.return_value = 1
        assert cache.exists("k") is True

    def test_disabled_cache(self):
        """Test a cache without a client always misses."""
        cache = RedisCache(None)
        assert cache.enabled is False
        assert cache.get("k") is None
        assert cache.set("k", 1) is False
        assert cache.exists("k") is False

    @pytest.mark.asyncio
    async def test_get_or_fetch_miss(self, cache, client):
        """Test a miss fetches and caches."""
        client.get.return_value = None
        fetch = AsyncMock(return_value={"id": "c1"})

        result = await cache.get_or_fetch("case:c1", fetch, ttl=600)

        assert result == {"id": "c1"}
        fetch.assert_awaited_once()
        client.setex.assert_called_once_with("case:c1", 600, '{"id": "c1"}')

    @pytest.mark.asyncio
    async def test_get_or_fetch_hit(self, cache, client):
        """Test a hit skips the fetch."""
        client.get.return_value = '{"id": "c1"}'
        fetch = AsyncMock()

        assert await cache.get_or_fetch("case:c1", fetch) == {"id": "c1"}
        fetch.assert_not_awaited()


class TestCreateRedisClient:
    """Test client construction."""

    def test_no_url(self):
        """Test no REDIS_URL gives no client."""
        assert create_redis_client(Settings(_env_file=None)) is None

    def test_with_url(self):
        """Test a client is built lazily from the URL."""
        client = create_redis_client(Settings(_env_file=None, redis_url="redis://localhost:6379/0"))
        assert client is not None
        assert client.connection_pool.connection_kwargs["host"] == "localhost"
