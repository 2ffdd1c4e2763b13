import fnmatch
from types import SimpleNamespace

import pytest
import redis

from passkey_server.errors import StoreUnavailable
from passkey_server.kv import (
    MemoryKeyValueStore,
    RedisKeyValueStore,
    create_kv_store,
)


class StubRedis:
    """The slice of redis.Redis the backend uses, with decode_responses=True semantics."""

    def __init__(self):
        self.values = {}
        self.ttls = {}

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value, ex=None):
        self.values[key] = value
        self.ttls[key] = ex
        return True

    def delete(self, key):
        self.values.pop(key, None)
        self.ttls.pop(key, None)

    def scan_iter(self, match=None, count=None):
        for key in list(self.values):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def mget(self, keys):
        return [self.values.get(k) for k in keys]


class DownRedis:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis.ConnectionError("Connection refused")

        return fail


def test_memory_put_get_delete():
    store = MemoryKeyValueStore()
    store.put("/a", "1", ttl=10)
    assert store.get("/a") == "1"
    store.delete("/a")
    assert store.get("/a") is None
    store.delete("/a")


def test_memory_entries_expire(clock):
    store = MemoryKeyValueStore(clock=clock)
    store.put("/a", "1", ttl=10)
    clock.advance(9.5)
    assert store.get("/a") == "1"
    clock.advance(0.5)
    assert store.get("/a") is None
    assert store.list("/") == []


def test_memory_put_replaces_value_and_ttl(clock):
    store = MemoryKeyValueStore(clock=clock)
    store.put("/a", "1", ttl=10)
    clock.advance(8)
    store.put("/a", "2", ttl=10)
    clock.advance(8)
    assert store.get("/a") == "2"


def test_memory_list_by_prefix_with_limit():
    store = MemoryKeyValueStore()
    for i in range(5):
        store.put(f"/user/u/credential/{i}", "", ttl=60)
    store.put("/user/v/credential/0", "", ttl=60)
    store.put("/user/u", "{}", ttl=60)

    keys = store.list("/user/u/credential/")
    assert keys == [f"/user/u/credential/{i}" for i in range(5)]
    assert len(store.list("/user/u/credential/", limit=2)) == 2


def test_memory_get_many_keeps_positions():
    store = MemoryKeyValueStore()
    store.put("/a", "1", ttl=60)
    store.put("/c", "3", ttl=60)
    assert store.get_many(["/a", "/b", "/c"]) == ["1", None, "3"]


def test_redis_backend_maps_operations():
    client = StubRedis()
    store = RedisKeyValueStore(client)

    store.put("/session/s1", '{"user_id": "x"}', ttl=86400)
    assert client.ttls["/session/s1"] == 86400
    assert store.get("/session/s1") == '{"user_id": "x"}'

    store.put("/user/u/credential/a", "", ttl=60)
    store.put("/user/u/credential/b", "", ttl=60)
    assert sorted(store.list("/user/u/credential/")) == [
        "/user/u/credential/a",
        "/user/u/credential/b",
    ]
    assert len(store.list("/user/u/credential/", limit=1)) == 1
    assert store.get_many(["/session/s1", "/missing"]) == ['{"user_id": "x"}', None]
    assert store.get_many([]) == []

    store.delete("/session/s1")
    assert store.get("/session/s1") is None


@pytest.mark.parametrize("op", [
    lambda s: s.get("/a"),
    lambda s: s.put("/a", "1", ttl=1),
    lambda s: s.delete("/a"),
    lambda s: s.list("/"),
    lambda s: s.get_many(["/a"]),
])
def test_redis_outage_raises_store_unavailable(op):
    with pytest.raises(StoreUnavailable):
        op(RedisKeyValueStore(DownRedis()))


def test_create_kv_store_selects_backend():
    memory = create_kv_store(SimpleNamespace(STORE_BACKEND="memory", REDIS_URL=""))
    assert isinstance(memory, MemoryKeyValueStore)

    # from_url does not connect until the first command
    remote = create_kv_store(SimpleNamespace(STORE_BACKEND="redis", REDIS_URL="redis://127.0.0.1:6390/0"))
    assert isinstance(remote, RedisKeyValueStore)
