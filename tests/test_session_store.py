"""
Tests for the BGG login session cache and its store backends.
"""
import json

import pytest

from playsync.services.bgg.auth_session import BGGAuthSessionManager
from playsync.services.bgg.session_store import InMemorySessionStore, RedisSessionStore, build_session_store


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.expiries = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.expiries[key] = ex

    async def delete(self, key):
        self.values.pop(key, None)


class LoginCounter:
    def __init__(self):
        self.logins = []

    async def login(self, username, password):
        self.logins.append(username)
        return {"bggusername": username, "SessionID": f"session-{len(self.logins)}"}


@pytest.mark.asyncio
async def test_in_memory_store_expires_entries():
    store = InMemorySessionStore()

    await store.set("alice", {"SessionID": "1"}, ttl_seconds=60)
    await store.set("bob", {"SessionID": "2"}, ttl_seconds=0)

    assert await store.get("alice") == {"SessionID": "1"}
    assert await store.get("bob") is None
    await store.delete("alice")
    assert await store.get("alice") is None


@pytest.mark.asyncio
async def test_redis_store_serializes_with_prefix_and_ttl():
    redis_client = FakeRedis()
    store = RedisSessionStore(redis_client)

    await store.set("alice", {"SessionID": "1"}, ttl_seconds=120)

    assert json.loads(redis_client.values["bgg:session:alice"]) == {"SessionID": "1"}
    assert redis_client.expiries["bgg:session:alice"] == 120
    assert await store.get("alice") == {"SessionID": "1"}


@pytest.mark.asyncio
async def test_redis_store_drops_unreadable_entries():
    redis_client = FakeRedis()
    redis_client.values["bgg:session:alice"] = "{not json"

    assert await RedisSessionStore(redis_client).get("alice") is None
    assert "bgg:session:alice" not in redis_client.values


@pytest.mark.asyncio
async def test_without_redis_url_the_store_is_in_memory():
    assert isinstance(await build_session_store(""), InMemorySessionStore)


@pytest.mark.asyncio
async def test_unreachable_redis_falls_back_to_memory():
    assert isinstance(await build_session_store("redis://127.0.0.1:1/0"), InMemorySessionStore)


@pytest.mark.asyncio
async def test_session_is_cached_per_username():
    client = LoginCounter()
    manager = BGGAuthSessionManager(client, store=InMemorySessionStore())

    first = await manager.ensure_session("Alice", "pw")
    second = await manager.ensure_session(" alice ", "pw")

    assert first == second
    assert client.logins == ["Alice"]


@pytest.mark.asyncio
async def test_invalidate_forces_a_new_login():
    client = LoginCounter()
    manager = BGGAuthSessionManager(client, store=InMemorySessionStore())

    await manager.ensure_session("alice", "pw")
    await manager.invalidate("ALICE")
    cookies = await manager.ensure_session("alice", "pw")

    assert cookies["SessionID"] == "session-2"
    assert len(client.logins) == 2
