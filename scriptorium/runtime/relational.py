from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol, Sequence

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, NoResultFound, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from scriptorium.core.errors import (
    STORAGE_CONFLICT,
    STORAGE_NOT_FOUND,
    STORAGE_TRANSPORT,
    StorageError,
)


logger = logging.getLogger(__name__)


class QueryObserver(Protocol):
    async def observe(self, sql: str, call: Callable[[], Awaitable[Any]]) -> Any: ...


def translate_placeholders(sql: str) -> tuple[str, int]:
    """Rewrite positional ``?`` markers to named ``:pN`` binds, skipping quoted text."""
    out: list[str] = []
    count = 0
    quote: str | None = None
    for char in sql:
        if quote is not None:
            out.append(char)
            if char == quote:
                quote = None
            continue
        if char in ("'", '"'):
            quote = char
            out.append(char)
            continue
        if char == "?":
            count += 1
            out.append(f":p{count}")
            continue
        out.append(char)
    return "".join(out), count


def _storage_error(exc: Exception, sql: str) -> StorageError:
    # Map driver failures onto storage kinds; the driver exception stays on __cause__.
    if isinstance(exc, IntegrityError):
        return StorageError(STORAGE_CONFLICT, "Constraint violated")
    if isinstance(exc, NoResultFound):
        return StorageError(STORAGE_NOT_FOUND, "Row not found")
    preview = " ".join(sql.split())[:120]
    logger.warning("relational_call_failed sql=%s error=%s", preview, type(exc).__name__)
    return StorageError(STORAGE_TRANSPORT, "Database operation failed")


@dataclass(frozen=True)
class RunResult:
    # Affected row count for write statements.
    changes: int


class BoundStatement:
    def __init__(self, database: "Database", sql: str, params: dict[str, Any]) -> None:
        self._database = database
        self.sql = sql
        self.params = params

    async def first(self, column: str | None = None) -> Any:
        rows = await self._database._fetch(self, limit_one=True)
        if not rows:
            return None
        row = rows[0]
        return row.get(column) if column else row

    async def all(self) -> list[dict[str, Any]]:
        return await self._database._fetch(self)

    async def run(self) -> RunResult:
        return await self._database._run(self)


class Statement:
    def __init__(self, database: "Database", sql: str, arity: int) -> None:
        self._database = database
        self.sql = sql
        self.arity = arity

    def bind(self, *args: Any) -> BoundStatement:
        if len(args) != self.arity:
            raise StorageError(
                STORAGE_TRANSPORT,
                f"Statement expects {self.arity} parameters, got {len(args)}",
            )
        params = {f"p{index}": value for index, value in enumerate(args, start=1)}
        return BoundStatement(self._database, self.sql, params)


class Database:
    """Relational handle over an async SQLAlchemy engine using ``?`` placeholders."""

    def __init__(self, engine: AsyncEngine, *, observer: QueryObserver | None = None) -> None:
        self._engine = engine
        self._observer = observer
        # Translated SQL per source string; safe to share across requests.
        self._prepared: dict[str, tuple[str, int]] = {}
        # SQLite shares one connection, so transactions must not interleave on it.
        self._serial = asyncio.Lock() if engine.dialect.name == "sqlite" else None

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    def prepare(self, sql: str) -> Statement:
        cached = self._prepared.get(sql)
        if cached is None:
            cached = translate_placeholders(sql)
            self._prepared[sql] = cached
        translated, arity = cached
        return Statement(self, translated, arity)

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncConnection]:
        if self._serial is None:
            async with self._engine.begin() as conn:
                yield conn
            return
        async with self._serial:
            async with self._engine.begin() as conn:
                yield conn

    async def _observe(self, sql: str, call: Callable[[], Awaitable[Any]]) -> Any:
        if self._observer is None:
            return await call()
        return await self._observer.observe(sql, call)

    async def _fetch(self, bound: BoundStatement, *, limit_one: bool = False) -> list[dict[str, Any]]:
        async def _call() -> list[dict[str, Any]]:
            async with self._transaction() as conn:
                result = await conn.execute(text(bound.sql), bound.params)
                if not result.returns_rows:
                    return []
                if limit_one:
                    row = result.mappings().first()
                    return [dict(row)] if row is not None else []
                return [dict(row) for row in result.mappings().all()]

        try:
            return await self._observe(bound.sql, _call)
        except SQLAlchemyError as exc:
            raise _storage_error(exc, bound.sql) from exc
        except OSError as exc:
            raise StorageError(STORAGE_TRANSPORT, "Database unreachable") from exc

    async def _run(self, bound: BoundStatement) -> RunResult:
        async def _call() -> RunResult:
            async with self._transaction() as conn:
                result = await conn.execute(text(bound.sql), bound.params)
                return RunResult(changes=max(result.rowcount or 0, 0))

        try:
            return await self._observe(bound.sql, _call)
        except SQLAlchemyError as exc:
            raise _storage_error(exc, bound.sql) from exc
        except OSError as exc:
            raise StorageError(STORAGE_TRANSPORT, "Database unreachable") from exc

    async def batch(self, statements: Sequence[BoundStatement]) -> list[RunResult | list[dict[str, Any]]]:
        """Execute bound statements in one transaction; any failure rolls back all of them."""
        if not statements:
            return []
        joined = "; ".join(statement.sql for statement in statements)

        async def _call() -> list[RunResult | list[dict[str, Any]]]:
            results: list[RunResult | list[dict[str, Any]]] = []
            async with self._transaction() as conn:
                for statement in statements:
                    result = await conn.execute(text(statement.sql), statement.params)
                    if result.returns_rows:
                        results.append([dict(row) for row in result.mappings().all()])
                    else:
                        results.append(RunResult(changes=max(result.rowcount or 0, 0)))
            return results

        try:
            return await self._observe(joined, _call)
        except SQLAlchemyError as exc:
            raise _storage_error(exc, joined) from exc
        except OSError as exc:
            raise StorageError(STORAGE_TRANSPORT, "Database unreachable") from exc

    async def exec_script_statement(self, sql: str) -> None:
        # Raw DDL path for the migration runner; no placeholder translation.
        async def _call() -> None:
            async with self._transaction() as conn:
                await conn.exec_driver_sql(sql)

        try:
            await self._observe(sql, _call)
        except SQLAlchemyError as exc:
            raise _storage_error(exc, sql) from exc

    async def ping(self) -> bool:
        try:
            await self.prepare("SELECT 1 AS ok").bind().first()
        except StorageError:
            return False
        return True

    async def close(self) -> None:
        await self._engine.dispose()


def create_database(
    url: str,
    *,
    pool_size: int = 10,
    max_overflow: int = 10,
    observer: QueryObserver | None = None,
) -> Database:
    # SQLite in memory must share a single connection or every checkout sees an empty DB.
    kwargs: dict[str, Any] = {}
    if url.startswith("sqlite"):
        if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_pre_ping"] = True
        kwargs["pool_size"] = max(1, pool_size)
        kwargs["max_overflow"] = max(0, max_overflow)
        kwargs["pool_recycle"] = 1800
    engine = create_async_engine(url, **kwargs)
    return Database(engine, observer=observer)
