from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from arq import create_pool
from arq.connections import RedisSettings
from redis.asyncio import Redis

from scriptorium.core.config import BUCKET_NAMES, SUBSTRATE_MEMORY, SUBSTRATE_SERVER, Settings
from scriptorium.persistence.migrations import apply_migrations
from scriptorium.persistence.query_monitor import QueryMonitor
from scriptorium.runtime.buckets import Bucket, Buckets, MemoryBucket, S3Bucket, create_s3_client
from scriptorium.runtime.clock import Clock, system_clock
from scriptorium.runtime.kv import KVStore, MemoryKV, RedisKV
from scriptorium.runtime.queues import ArqQueue, MemoryQueue, QueueProducer
from scriptorium.runtime.relational import Database, create_database
from scriptorium.runtime.sessions import SessionStore


logger = logging.getLogger(__name__)

_MEMORY_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
_MEMORY_SESSION_SECRET = "memory-substrate-session-secret"


@dataclass
class RuntimeEnv:
    """Handles to every backend; handlers and consumers only see these interfaces."""

    settings: Settings
    db: Database
    buckets: Buckets
    kv: KVStore
    sessions: SessionStore
    queue: QueueProducer
    clock: Clock
    substrate: str
    redis: Redis | None = None

    def now(self) -> int:
        return int(self.clock())

    async def close(self) -> None:
        await self.db.close()
        close_queue = getattr(self.queue, "close", None)
        if close_queue is not None:
            await close_queue()
        if self.redis is not None:
            await self.redis.aclose()


async def connect_with_retry(
    name: str,
    probe: Callable[[], Awaitable[Any]],
    *,
    attempts: int,
    backoff_ms: int,
) -> None:
    """Probe a backend until it answers, doubling the delay; re-raise after the last attempt."""
    attempt = 1
    while True:
        try:
            result = await probe()
            if result is False:
                raise ConnectionError(f"{name} probe returned false")
            return
        except Exception as exc:  # noqa: BLE001 - any connect failure is retried, then surfaced
            if attempt >= max(attempts, 1):
                logger.error("backend_connect_failed backend=%s attempts=%s", name, attempt)
                raise
            delay_s = (backoff_ms / 1000.0) * (2 ** (attempt - 1))
            logger.warning("backend_connect_retry backend=%s attempt=%s", name, attempt, exc_info=exc)
            await asyncio.sleep(delay_s)
            attempt += 1


def build_memory_env(settings: Settings, *, clock: Clock | None = None) -> RuntimeEnv:
    """In-process substrate: SQLite in memory, dict buckets and KV, and an in-process queue."""
    clock = clock or system_clock
    monitor = QueryMonitor(slow_query_ms=settings.slow_query_ms)
    db = create_database(settings.database_url or _MEMORY_DATABASE_URL, observer=monitor)
    buckets: dict[str, Bucket] = {name: MemoryBucket(name, clock=clock) for name in BUCKET_NAMES}
    kv = MemoryKV(clock=clock)
    sessions = SessionStore(
        kv,
        secret=settings.session_secret or _MEMORY_SESSION_SECRET,
        clock=clock,
        sliding_refresh=settings.session_sliding_refresh,
    )
    queue = MemoryQueue(clock=clock, max_attempts=settings.queue_max_attempts)
    return RuntimeEnv(
        settings=settings,
        db=db,
        buckets=Buckets(buckets),
        kv=kv,
        sessions=sessions,
        queue=queue,
        clock=clock,
        substrate=SUBSTRATE_MEMORY,
    )


async def build_server_env(settings: Settings, *, clock: Clock | None = None) -> RuntimeEnv:
    """Server substrate: relational DSN, Redis KV and sessions, S3 buckets, arq queue."""
    clock = clock or system_clock
    monitor = QueryMonitor(slow_query_ms=settings.slow_query_ms)
    db = create_database(
        settings.database_url or "",
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        observer=monitor,
    )
    await connect_with_retry(
        "database", db.ping, attempts=settings.connect_attempts, backoff_ms=settings.connect_backoff_ms
    )
    redis = Redis.from_url(settings.redis_url or "", encoding="utf-8", decode_responses=True)
    kv = RedisKV(redis)
    await connect_with_retry(
        "redis", kv.ping, attempts=settings.connect_attempts, backoff_ms=settings.connect_backoff_ms
    )
    client = create_s3_client(
        endpoint_url=settings.s3_endpoint_url or "",
        region=settings.s3_region or "",
        access_key_id=settings.s3_access_key_id or "",
        secret_access_key=settings.s3_secret_access_key or "",
    )
    buckets: dict[str, Bucket] = {
        name: S3Bucket(name, settings.bucket_name(name), client, clock=clock) for name in BUCKET_NAMES
    }
    pool = await create_pool(RedisSettings.from_dsn(settings.redis_url or ""))
    sessions = SessionStore(
        kv,
        secret=settings.session_secret or "",
        clock=clock,
        sliding_refresh=settings.session_sliding_refresh,
    )
    return RuntimeEnv(
        settings=settings,
        db=db,
        buckets=Buckets(buckets),
        kv=kv,
        sessions=sessions,
        queue=ArqQueue(pool),
        clock=clock,
        substrate=SUBSTRATE_SERVER,
        redis=redis,
    )


async def build_env(settings: Settings, *, clock: Clock | None = None) -> RuntimeEnv:
    substrate = settings.runtime_substrate
    if substrate == SUBSTRATE_MEMORY:
        env = build_memory_env(settings, clock=clock)
        # The in-memory database starts empty every time.
        report = await apply_migrations(env.db)
        if not report.ok:
            raise RuntimeError(f"Migrations failed: {sorted(report.failed)}")
    elif substrate == SUBSTRATE_SERVER:
        env = await build_server_env(settings, clock=clock)
    else:
        raise ValueError(f"Unknown runtime substrate {substrate!r}")
    logger.info("runtime_env_ready substrate=%s environment=%s", env.substrate, settings.environment)
    return env
