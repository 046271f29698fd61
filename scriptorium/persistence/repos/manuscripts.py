from __future__ import annotations

import json
from typing import Any

from scriptorium.persistence.pagination import Page, paginate
from scriptorium.runtime.relational import Database


_MANUSCRIPT_COLUMNS = (
    "id, user_id, title, genre, word_count, status, blob_key, report_id, file_type, file_size, "
    "metadata, uploaded_at, updated_at, analyzed_at"
)


async def create_manuscript(
    db: Database,
    *,
    manuscript_id: str,
    user_id: str,
    title: str,
    genre: str | None,
    word_count: int | None,
    status: str,
    blob_key: str,
    file_type: str,
    file_size: int,
    metadata: dict[str, Any],
    now: int,
) -> None:
    await db.prepare(
        f"INSERT INTO manuscripts ({_MANUSCRIPT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?, ?, ?, NULL)"
    ).bind(
        manuscript_id,
        user_id,
        title,
        genre,
        word_count,
        status,
        blob_key,
        file_type,
        file_size,
        json.dumps(metadata),
        now,
        now,
    ).run()


async def get_manuscript(db: Database, manuscript_id: str) -> dict[str, Any] | None:
    return await db.prepare(f"SELECT {_MANUSCRIPT_COLUMNS} FROM manuscripts WHERE id = ?").bind(
        manuscript_id
    ).first()


async def get_owned_manuscript(db: Database, manuscript_id: str, user_id: str) -> dict[str, Any] | None:
    # Ownership mismatch looks like absence so ids are not enumerable.
    return await db.prepare(
        f"SELECT {_MANUSCRIPT_COLUMNS} FROM manuscripts WHERE id = ? AND user_id = ?"
    ).bind(manuscript_id, user_id).first()


async def get_manuscript_by_report_id(db: Database, report_id: str) -> dict[str, Any] | None:
    return await db.prepare(f"SELECT {_MANUSCRIPT_COLUMNS} FROM manuscripts WHERE report_id = ?").bind(
        report_id
    ).first()


async def set_report_id(db: Database, manuscript_id: str, report_id: str, *, now: int) -> None:
    await db.prepare("UPDATE manuscripts SET report_id = ?, updated_at = ? WHERE id = ?").bind(
        report_id, now, manuscript_id
    ).run()


async def set_status(db: Database, manuscript_id: str, status: str, *, now: int) -> None:
    await db.prepare("UPDATE manuscripts SET status = ?, updated_at = ? WHERE id = ?").bind(
        status, now, manuscript_id
    ).run()


async def mark_analyzed(db: Database, manuscript_id: str, *, now: int) -> None:
    await db.prepare(
        "UPDATE manuscripts SET status = 'analyzed', analyzed_at = ?, updated_at = ? WHERE id = ?"
    ).bind(now, now, manuscript_id).run()


async def update_details(
    db: Database,
    manuscript_id: str,
    *,
    title: str,
    genre: str | None,
    metadata: dict[str, Any],
    now: int,
) -> None:
    await db.prepare(
        "UPDATE manuscripts SET title = ?, genre = ?, metadata = ?, updated_at = ? WHERE id = ?"
    ).bind(title, genre, json.dumps(metadata), now, manuscript_id).run()


async def list_manuscripts(
    db: Database,
    user_id: str,
    *,
    status: str | None = None,
    genre: str | None = None,
    limit: int = 20,
    cursor: int | None = None,
) -> Page:
    where = ["user_id = ?"]
    params: list[Any] = [user_id]
    if status:
        where.append("status = ?")
        params.append(status)
    else:
        # Archived manuscripts only appear when asked for explicitly.
        where.append("status <> 'archived'")
    if genre:
        where.append("genre = ?")
        params.append(genre)
    return await paginate(
        db,
        select_sql=f"SELECT {_MANUSCRIPT_COLUMNS} FROM manuscripts",
        where=where,
        params=params,
        cursor_column="uploaded_at",
        direction="desc",
        limit=limit,
        cursor=cursor,
    )


async def count_by_status(db: Database, user_id: str) -> dict[str, int]:
    rows = await db.prepare(
        "SELECT status, COUNT(*) AS total FROM manuscripts WHERE user_id = ? GROUP BY status"
    ).bind(user_id).all()
    return {row["status"]: int(row["total"]) for row in rows}


async def existing_ids(db: Database, manuscript_ids: list[str]) -> set[str]:
    if not manuscript_ids:
        return set()
    placeholders = ", ".join("?" for _ in manuscript_ids)
    rows = await db.prepare(f"SELECT id FROM manuscripts WHERE id IN ({placeholders})").bind(
        *manuscript_ids
    ).all()
    return {row["id"] for row in rows}
