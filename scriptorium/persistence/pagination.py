from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Sequence

from scriptorium.runtime.relational import Database


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class Page:
    items: list[dict[str, Any]]
    next_cursor: Any | None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


async def paginate(
    db: Database,
    *,
    select_sql: str,
    where: Sequence[str] = (),
    params: Sequence[Any] = (),
    cursor_column: str = "uploaded_at",
    direction: str = "desc",
    limit: int = 20,
    cursor: Any | None = None,
) -> Page:
    """Keyset pagination: fetch one extra row to learn whether another page exists."""
    if not _IDENTIFIER_RE.match(cursor_column):
        raise ValueError(f"Invalid cursor column {cursor_column!r}")
    descending = direction.lower() == "desc"
    clauses = list(where)
    bound = list(params)
    if cursor is not None:
        clauses.append(f"{cursor_column} {'<' if descending else '>'} ?")
        bound.append(cursor)
    sql = select_sql
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    order = "DESC" if descending else "ASC"
    sql += f" ORDER BY {cursor_column} {order}, id {order} LIMIT ?"
    bound.append(limit + 1)
    rows = await db.prepare(sql).bind(*bound).all()
    if len(rows) > limit:
        items = rows[:limit]
        return Page(items=items, next_cursor=items[-1][cursor_column])
    return Page(items=rows, next_cursor=None)
