"""RedisCache key layout and pipelines against an in-memory fake client."""

from datetime import datetime, timedelta, timezone

import pytest

from tonotes.storage.models import Session
from tonotes.storage.redis_cache import RedisCache


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    def set(self, key, value, ex=None):
        self.ops.append(("set", key, value, ex))

    def sadd(self, key, member):
        self.ops.append(("sadd", key, member))

    def srem(self, key, member):
        self.ops.append(("srem", key, member))

    def expire(self, key, ttl):
        self.ops.append(("expire", key, ttl))

    def delete(self, key):
        self.ops.append(("delete", key))

    async def execute(self):
        for op in self.ops:
            name, key = op[0], op[1]
            if name == "set":
                self.client.values[key] = op[2]
                self.client.ttls[key] = op[3]
            elif name == "sadd":
                self.client.sets.setdefault(key, set()).add(op[2])
            elif name == "srem":
                self.client.sets.get(key, set()).discard(op[2])
            elif name == "expire":
                self.client.ttls[key] = op[2]
            elif name == "delete":
                self.client.values.pop(key, None)
                self.client.sets.pop(key, None)
        return [True] * len(self.ops)


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.sets = {}
        self.ttls = {}

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.ttls[key] = ex

    async def get(self, key):
        return self.values.get(key)

    async def exists(self, *keys):
        return sum(1 for key in keys if key in self.values)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    def pipeline(self):
        return FakePipeline(self)


@pytest.fixture
def cache():
    instance = RedisCache.__new__(RedisCache)
    instance.redis_url = "redis://unused"
    instance.client = FakeRedis()
    return instance


def _session(user_id="u1"):
    return Session.new(user_id, 24, display_name="Chrome on macOS (Local Network)")


async def test_blacklist_keys_and_ttl(cache):
    await cache.blacklist_token("refresh", "tok", 120)
    assert cache.client.values == {"blacklist:refresh:tok": "true"}
    assert cache.client.ttls["blacklist:refresh:tok"] == 120
    assert await cache.is_blacklisted("tok")
    assert not await cache.is_blacklisted("other")


async def test_zero_ttl_is_not_written(cache):
    await cache.blacklist_token("access", "tok", 0)
    assert cache.client.values == {}


async def test_session_round_trip(cache):
    session = _session()
    await cache.cache_session(session)
    assert cache.client.sets["user_sessions:u1"] == {session.id}
    loaded = await cache.get_cached_session(session.id)
    assert loaded == session


async def test_evict_user_sessions(cache):
    first, second = _session(), _session()
    await cache.cache_session(first)
    await cache.cache_session(second)
    assert await cache.evict_user_sessions("u1") == 2
    assert await cache.get_cached_session(first.id) is None
    assert "user_sessions:u1" not in cache.client.sets
    assert await cache.evict_user_sessions("u1") == 0


async def test_evict_single_session(cache):
    session = _session()
    await cache.cache_session(session)
    await cache.evict_session(session.id, "u1")
    assert await cache.get_cached_session(session.id) is None
    assert cache.client.sets["user_sessions:u1"] == set()


def test_ttl_is_clamped_to_one_second():
    past = datetime.now(timezone.utc) - timedelta(minutes=5)
    assert RedisCache._ttl_seconds(past) == 1
