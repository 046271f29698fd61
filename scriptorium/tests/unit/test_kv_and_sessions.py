from __future__ import annotations

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from scriptorium.core.errors import UpstreamError
from scriptorium.runtime.clock import ManualClock
from scriptorium.runtime.kv import MemoryKV, RedisKV, put_json
from scriptorium.runtime.sessions import SessionStore


class _FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("connection refused")

    async def get(self, key: str):  # noqa: ANN001
        self._check()
        value = self.values.get(key)
        return value.encode("utf-8") if value is not None else None

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._check()
        self.values[key] = value
        if ex is not None:
            self.expiry[key] = ex
        return True

    async def delete(self, key: str) -> int:
        self._check()
        return 1 if self.values.pop(key, None) is not None else 0

    async def ping(self) -> bool:
        self._check()
        return True


@pytest.mark.asyncio
async def test_memory_kv_expires_on_clock() -> None:
    clock = ManualClock()
    kv = MemoryKV(clock=clock)
    await kv.put("a", "1", expiration_ttl=10)
    await put_json(kv, "b", {"x": [1, 2]})

    assert await kv.get("a") == "1"
    assert await kv.get("b", as_json=True) == {"x": [1, 2]}
    clock.advance(10)
    assert await kv.get("a") is None
    assert await kv.get("b", as_json=True) == {"x": [1, 2]}


@pytest.mark.asyncio
async def test_memory_kv_rejects_non_strings_and_tolerates_bad_json() -> None:
    kv = MemoryKV(clock=ManualClock())
    with pytest.raises(TypeError):
        await kv.put("a", {"x": 1})  # type: ignore[arg-type]
    await kv.put("a", "not json")
    assert await kv.get("a", as_json=True) is None
    assert await kv.get("a") == "not json"


@pytest.mark.asyncio
async def test_redis_kv_prefixes_keys_and_sets_expiry() -> None:
    redis = _FakeRedis()
    kv = RedisKV(redis, prefix="scr:")  # type: ignore[arg-type]
    await kv.put("session:1", '{"a": 1}', expiration_ttl=60)

    assert redis.values == {"scr:session:1": '{"a": 1}'}
    assert redis.expiry == {"scr:session:1": 60}
    assert await kv.get("session:1", as_json=True) == {"a": 1}
    await kv.delete("session:1")
    assert await kv.get("session:1") is None


@pytest.mark.asyncio
async def test_redis_kv_outage_is_upstream_error() -> None:
    redis = _FakeRedis()
    redis.down = True
    kv = RedisKV(redis)  # type: ignore[arg-type]
    with pytest.raises(UpstreamError):
        await kv.get("x")
    with pytest.raises(UpstreamError):
        await kv.put("x", "1")
    assert await kv.ping() is False


@pytest.mark.asyncio
async def test_session_tokens_are_opaque_and_digested() -> None:
    clock = ManualClock()
    kv = MemoryKV(clock=clock)
    sessions = SessionStore(kv, secret="s3cret", clock=clock)

    token = await sessions.create("user-1", 3600, ip="10.0.0.1")
    assert len(token) >= 43
    # The raw token never appears in storage.
    assert all(token not in key for key in kv.keys())

    record = await sessions.read(token)
    assert record is not None
    assert record.principal_id == "user-1"
    assert record.ip == "10.0.0.1"
    assert await sessions.read("forged-token") is None


@pytest.mark.asyncio
async def test_session_slides_after_half_lifetime_then_expires() -> None:
    clock = ManualClock()
    sessions = SessionStore(MemoryKV(clock=clock), secret="s3cret", clock=clock)
    token = await sessions.create("user-1", 100)

    clock.advance(60)
    refreshed = await sessions.read(token)
    assert refreshed is not None
    assert refreshed.expires_at == clock() + 100

    clock.advance(99)
    assert await sessions.read(token) is not None
    clock.advance(101)
    assert await sessions.read(token) is None


@pytest.mark.asyncio
async def test_destroyed_session_is_gone() -> None:
    clock = ManualClock()
    sessions = SessionStore(MemoryKV(clock=clock), secret="s3cret", clock=clock, sliding_refresh=False)
    token = await sessions.create("user-1", 100)
    await sessions.destroy(token)
    assert await sessions.read(token) is None
