from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from scriptorium.core.config import Settings
from scriptorium.runtime.kv import KVStore


logger = logging.getLogger(__name__)

MANUSCRIPT_STATUSES = ("uploaded", "queued", "analyzing", "analyzed", "failed", "archived")
_ALL = "all"


class CacheKeys:
    @staticmethod
    def user(user_id: str) -> str:
        return f"user:{user_id}"

    @staticmethod
    def user_subscription(user_id: str) -> str:
        return f"user:{user_id}:subscription"

    @staticmethod
    def manuscript(manuscript_id: str) -> str:
        return f"manuscript:{manuscript_id}"

    @staticmethod
    def manuscript_list(user_id: str, status: str | None, genre: str | None, page: int) -> str:
        return f"manuscripts:{user_id}:{status or _ALL}:{genre or _ALL}:p{page}"

    @staticmethod
    def manuscript_stats(user_id: str) -> str:
        return f"manuscript-stats:{user_id}"

    @staticmethod
    def analysis_status(report_id: str) -> str:
        return f"analysis-status:{report_id}"

    @staticmethod
    def analysis_result(blob_key: str, stage: str) -> str:
        return f"analysis:{blob_key}:{stage}"

    @staticmethod
    def admin_stats() -> str:
        return "admin:stats"

    @staticmethod
    def cost(user_id: str, month: str) -> str:
        return f"cost:{user_id}:{month}"


@dataclass(frozen=True)
class CacheTTL:
    user: int
    manuscript: int
    listing: int
    analysis_result: int
    analysis_status: int
    admin_stats: int
    cost: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheTTL":
        return cls(
            user=settings.cache_user_ttl_s,
            manuscript=settings.cache_manuscript_ttl_s,
            listing=settings.cache_list_ttl_s,
            analysis_result=settings.cache_analysis_result_ttl_s,
            analysis_status=settings.cache_analysis_status_ttl_s,
            admin_stats=settings.cache_admin_stats_ttl_s,
            cost=settings.cache_cost_ttl_s,
        )


class Cache:
    """Cache-aside over KV; every failure is logged and treated as a miss."""

    def __init__(self, kv: KVStore, ttl: CacheTTL) -> None:
        self._kv = kv
        self.ttl = ttl

    async def get(self, key: str) -> Any:
        try:
            return await self._kv.get(key, as_json=True)
        except Exception as exc:  # noqa: BLE001 - cache reads fall through to the source
            logger.warning("cache_get_failed key=%s", key.split(":", 1)[0], exc_info=exc)
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self._kv.put(key, json.dumps(value, default=str), expiration_ttl=ttl)
        except Exception as exc:  # noqa: BLE001 - cache writes are best-effort
            logger.warning("cache_set_failed key=%s", key.split(":", 1)[0], exc_info=exc)

    async def delete(self, key: str) -> None:
        try:
            await self._kv.delete(key)
        except Exception as exc:  # noqa: BLE001 - stale entries expire on their own TTL
            logger.warning("cache_delete_failed key=%s", key.split(":", 1)[0], exc_info=exc)

    async def delete_many(self, keys: list[str]) -> None:
        await asyncio.gather(*(self.delete(key) for key in keys))

    async def get_or_fetch(self, key: str, ttl: int, fetch: Callable[[], Awaitable[Any]]) -> Any:
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await fetch()
        # Misses are not cached so a later insert is visible immediately.
        if value is not None:
            await self.set(key, value, ttl)
        return value


def manuscript_fanout_keys(
    *,
    manuscript_id: str,
    user_id: str,
    report_id: str | None,
    genre: str | None,
) -> list[str]:
    """Keys cleared when a manuscript changes: row, owner stats, analysis status, first list pages."""
    keys = [CacheKeys.manuscript(manuscript_id), CacheKeys.manuscript_stats(user_id)]
    if report_id:
        keys.append(CacheKeys.analysis_status(report_id))
    genres = [None, genre] if genre else [None]
    for status in (None, *MANUSCRIPT_STATUSES):
        for genre_key in genres:
            keys.append(CacheKeys.manuscript_list(user_id, status, genre_key, 1))
    return keys


async def invalidate_manuscript(
    cache: Cache,
    *,
    manuscript_id: str,
    user_id: str,
    report_id: str | None,
    genre: str | None,
) -> None:
    await cache.delete_many(
        manuscript_fanout_keys(
            manuscript_id=manuscript_id, user_id=user_id, report_id=report_id, genre=genre
        )
    )


async def invalidate_user(cache: Cache, user_id: str) -> None:
    await cache.delete_many(
        [
            CacheKeys.user(user_id),
            CacheKeys.user_subscription(user_id),
            CacheKeys.manuscript_stats(user_id),
        ]
    )
