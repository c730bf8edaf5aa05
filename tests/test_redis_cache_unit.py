import json
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from gatehouse.storage.errors import StoreUnavailable
from gatehouse.storage.redis_cache import SyncRedisCache, rate_key


def _cache():
    cache: SyncRedisCache = SyncRedisCache.__new__(SyncRedisCache)
    cache.redis_url = "redis://unused"
    cache._sync_client = MagicMock()
    cache._sliding_window = MagicMock()
    return cache


def test_rate_key_hashes_subject():
    key = rate_key("auth", "ip:10.0.0.1")
    assert key.startswith("rate:auth:")
    assert "10.0.0.1" not in key
    assert rate_key("auth", "ip:10.0.0.1") == key
    assert rate_key("search", "ip:10.0.0.1") != key


async def test_get_json_decodes_and_tolerates_garbage():
    cache = _cache()
    cache._sync_client.get.return_value = json.dumps({"id": "1"})
    assert await cache.get_json("app:user:1") == {"id": "1"}

    cache._sync_client.get.return_value = "{not json"
    assert await cache.get_json("app:user:1") is None


async def test_set_json_uses_ttl():
    cache = _cache()
    await cache.set_json("app:user:1", {"id": "1"}, 300)
    cache._sync_client.set.assert_called_once_with("app:user:1", '{"id": "1"}', ex=300)


async def test_delete_pattern_scans():
    cache = _cache()
    cache._sync_client.scan_iter.return_value = iter(["app:users:list:a", "app:users:list:b"])
    cache._sync_client.delete.return_value = 2
    assert await cache.delete_pattern("app:users:*") == 2
    cache._sync_client.delete.assert_called_once_with("app:users:list:a", "app:users:list:b")


async def test_delete_pattern_without_matches():
    cache = _cache()
    cache._sync_client.scan_iter.return_value = iter([])
    assert await cache.delete_pattern("app:users:*") == 0
    cache._sync_client.delete.assert_not_called()


async def test_sliding_window_result_parsing():
    cache = _cache()
    cache._sliding_window.return_value = [0, 5, "12.5"]
    allowed, count, retry_after = await cache.sliding_window_admit(
        "auth", "ip:1", 5, 60, 1000.0
    )
    assert (allowed, count, retry_after) == (False, 5, 12.5)
    kwargs = cache._sliding_window.call_args.kwargs
    assert kwargs["keys"] == [rate_key("auth", "ip:1")]
    assert kwargs["args"][:3] == [1000.0, 60, 5]

    cache._sliding_window.return_value = [1, 1, "0"]
    assert await cache.sliding_window_admit("auth", "ip:1", 5, 60, 1001.0) == (True, 1, 0.0)


async def test_redis_errors_become_store_unavailable():
    cache = _cache()
    cache._sync_client.get.side_effect = RedisConnectionError("refused")
    cache._sliding_window.side_effect = RedisConnectionError("refused")

    with pytest.raises(StoreUnavailable) as excinfo:
        await cache.get_json("app:user:1")
    assert excinfo.value.backend == "redis"
    with pytest.raises(StoreUnavailable):
        await cache.sliding_window_admit("auth", "ip:1", 5, 60, 1000.0)
