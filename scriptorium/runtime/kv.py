from __future__ import annotations

import json
from typing import Any, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from scriptorium.core.errors import UpstreamError
from scriptorium.runtime.clock import Clock, system_clock


class KVStore(Protocol):
    async def get(self, key: str, *, as_json: bool = False) -> Any: ...

    async def put(self, key: str, value: str, *, expiration_ttl: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def ping(self) -> bool: ...


def _decode(raw: str | None, as_json: bool) -> Any:
    if raw is None:
        return None
    if not as_json:
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        return None


class MemoryKV:
    """In-process KV with authoritative TTLs measured on the injected clock."""

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or system_clock
        self._values: dict[str, tuple[str, float | None]] = {}

    async def get(self, key: str, *, as_json: bool = False) -> Any:
        item = self._values.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            self._values.pop(key, None)
            return None
        return _decode(value, as_json)

    async def put(self, key: str, value: str, *, expiration_ttl: int | None = None) -> None:
        if not isinstance(value, str):
            raise TypeError("KV values must be strings; encode JSON before writing")
        expires_at = self._clock() + expiration_ttl if expiration_ttl else None
        self._values[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)

    async def ping(self) -> bool:
        return True

    def keys(self) -> list[str]:
        # Test helper; includes keys that have expired but were never read.
        return sorted(self._values)


class RedisKV:
    """KV backed by Redis string keys with native expiry."""

    def __init__(self, redis: Redis, *, prefix: str = "") -> None:
        self._redis = redis
        self._prefix = prefix

    @property
    def redis(self) -> Redis:
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str, *, as_json: bool = False) -> Any:
        try:
            raw = await self._redis.get(self._key(key))
        except RedisError as exc:
            raise UpstreamError("KV unavailable") from exc
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        return _decode(raw, as_json)

    async def put(self, key: str, value: str, *, expiration_ttl: int | None = None) -> None:
        if not isinstance(value, str):
            raise TypeError("KV values must be strings; encode JSON before writing")
        try:
            if expiration_ttl:
                await self._redis.set(self._key(key), value, ex=int(expiration_ttl))
            else:
                await self._redis.set(self._key(key), value)
        except RedisError as exc:
            raise UpstreamError("KV unavailable") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(self._key(key))
        except RedisError as exc:
            raise UpstreamError("KV unavailable") from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError:
            return False


async def put_json(kv: KVStore, key: str, value: Any, *, expiration_ttl: int | None = None) -> None:
    await kv.put(key, json.dumps(value, separators=(",", ":")), expiration_ttl=expiration_ttl)
