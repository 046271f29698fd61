from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field

from scriptorium.apps.api.deps import get_cache, get_env, require_auth
from scriptorium.core.errors import NotFoundError, ValidationError
from scriptorium.domain.models import MANUSCRIPT_ARCHIVED, Manuscript, User
from scriptorium.persistence.repos import manuscripts as manuscripts_repo
from scriptorium.runtime.env import RuntimeEnv
from scriptorium.services.cache import MANUSCRIPT_STATUSES, Cache, CacheKeys, invalidate_manuscript


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/manuscripts", tags=["manuscripts"])


class ManuscriptUpdate(BaseModel):
    title: str | None = Field(default=None, max_length=300)
    genre: str | None = Field(default=None, max_length=100)
    metadata: dict[str, Any] | None = None

    model_config = {"extra": "forbid"}


async def _load_owned(env: RuntimeEnv, cache: Cache, manuscript_id: str, principal: User) -> Manuscript:
    async def _fetch() -> dict[str, Any] | None:
        row = await manuscripts_repo.get_manuscript(env.db, manuscript_id)
        return Manuscript.from_row(row).model_dump() if row is not None else None

    cached = await cache.get_or_fetch(CacheKeys.manuscript(manuscript_id), cache.ttl.manuscript, _fetch)
    # Another principal's manuscript is reported as missing.
    if cached is None or cached.get("user_id") != principal.id:
        raise NotFoundError("Manuscript not found")
    return Manuscript.model_validate(cached)


@router.get("")
async def list_manuscripts(
    status: str | None = None,
    genre: str | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    cursor: int | None = None,
    principal: User = Depends(require_auth),
    env: RuntimeEnv = Depends(get_env),
    cache: Cache = Depends(get_cache),
) -> dict:
    if status is not None and status not in MANUSCRIPT_STATUSES:
        raise ValidationError("Unknown manuscript status", details={"field": "status"})

    async def _fetch() -> dict[str, Any]:
        page = await manuscripts_repo.list_manuscripts(
            env.db, principal.id, status=status, genre=genre, limit=limit, cursor=cursor
        )
        items = [Manuscript.from_row(row).public() for row in page.items]
        return {"manuscripts": items, "count": len(items), "nextCursor": page.next_cursor}

    # Only the default first page is cached; fan-out invalidation clears exactly these keys.
    if cursor is None and limit == 20:
        key = CacheKeys.manuscript_list(principal.id, status, genre, 1)
        return await cache.get_or_fetch(key, cache.ttl.listing, _fetch)
    return await _fetch()


@router.get("/stats")
async def manuscript_stats(
    principal: User = Depends(require_auth),
    env: RuntimeEnv = Depends(get_env),
    cache: Cache = Depends(get_cache),
) -> dict:
    async def _fetch() -> dict[str, Any]:
        counts = await manuscripts_repo.count_by_status(env.db, principal.id)
        by_status = {status: counts.get(status, 0) for status in MANUSCRIPT_STATUSES}
        active = sum(count for status, count in by_status.items() if status != MANUSCRIPT_ARCHIVED)
        return {"total": active, "byStatus": by_status}

    return await cache.get_or_fetch(CacheKeys.manuscript_stats(principal.id), cache.ttl.listing, _fetch)


@router.get("/{manuscript_id}")
async def get_manuscript(
    manuscript_id: str,
    principal: User = Depends(require_auth),
    env: RuntimeEnv = Depends(get_env),
    cache: Cache = Depends(get_cache),
) -> dict:
    manuscript = await _load_owned(env, cache, manuscript_id, principal)
    return {"manuscript": manuscript.public()}


@router.put("/{manuscript_id}")
async def update_manuscript(
    manuscript_id: str,
    body: ManuscriptUpdate,
    principal: User = Depends(require_auth),
    env: RuntimeEnv = Depends(get_env),
    cache: Cache = Depends(get_cache),
) -> dict:
    manuscript = await _load_owned(env, cache, manuscript_id, principal)
    title = manuscript.title
    if body.title is not None:
        title = body.title.strip()
        if not title:
            raise ValidationError("A title is required", details={"field": "title"})
    genre = manuscript.genre if body.genre is None else (body.genre.strip() or None)
    metadata = {**manuscript.metadata, **(body.metadata or {})}
    await manuscripts_repo.update_details(
        env.db, manuscript_id, title=title, genre=genre, metadata=metadata, now=env.now()
    )
    # Both the old and the new genre listings may hold the row.
    for genre_key in {manuscript.genre, genre}:
        await invalidate_manuscript(
            cache,
            manuscript_id=manuscript_id,
            user_id=principal.id,
            report_id=manuscript.report_id,
            genre=genre_key,
        )
    row = await manuscripts_repo.get_manuscript(env.db, manuscript_id)
    return {"manuscript": Manuscript.from_row(row).public()}


@router.delete("/{manuscript_id}", status_code=204)
async def delete_manuscript(
    manuscript_id: str,
    principal: User = Depends(require_auth),
    env: RuntimeEnv = Depends(get_env),
    cache: Cache = Depends(get_cache),
) -> Response:
    manuscript = await _load_owned(env, cache, manuscript_id, principal)
    await manuscripts_repo.set_status(env.db, manuscript_id, MANUSCRIPT_ARCHIVED, now=env.now())
    await invalidate_manuscript(
        cache,
        manuscript_id=manuscript_id,
        user_id=principal.id,
        report_id=manuscript.report_id,
        genre=manuscript.genre,
    )
    logger.info("manuscript_archived manuscript_id=%s", manuscript_id)
    return Response(status_code=204)
