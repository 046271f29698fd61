from __future__ import annotations

from typing import Any

from scriptorium.core.errors import STORAGE_CONFLICT, STORAGE_NOT_FOUND, StorageError
from scriptorium.runtime.relational import Database


async def get_window(db: Database, principal_id: str, period_start: int) -> dict[str, Any] | None:
    return await db.prepare(
        "SELECT principal_id, period_start, period_end, manuscripts_count, monthly_limit "
        "FROM usage_windows WHERE principal_id = ? AND period_start = ?"
    ).bind(principal_id, period_start).first()


async def ensure_window(
    db: Database,
    *,
    principal_id: str,
    period_start: int,
    period_end: int,
    monthly_limit: int | None,
    now: int,
) -> dict[str, Any]:
    existing = await get_window(db, principal_id, period_start)
    if existing is not None:
        return existing
    try:
        await db.prepare(
            "INSERT INTO usage_windows (principal_id, period_start, period_end, manuscripts_count, "
            "monthly_limit, updated_at) VALUES (?, ?, ?, 0, ?, ?)"
        ).bind(principal_id, period_start, period_end, monthly_limit, now).run()
    except StorageError as exc:
        # A concurrent request created the row first.
        if exc.storage_kind != STORAGE_CONFLICT:
            raise
    window = await get_window(db, principal_id, period_start)
    if window is None:
        raise StorageError(STORAGE_NOT_FOUND, "Usage window missing after insert")
    return window


async def increment_window(db: Database, principal_id: str, period_start: int, *, now: int) -> int:
    result = await db.prepare(
        "UPDATE usage_windows SET manuscripts_count = manuscripts_count + 1, updated_at = ? "
        "WHERE principal_id = ? AND period_start = ?"
    ).bind(now, principal_id, period_start).run()
    return result.changes
