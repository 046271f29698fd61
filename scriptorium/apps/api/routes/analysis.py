from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import HTMLResponse

from scriptorium.apps.api.deps import get_cache, get_env
from scriptorium.core.errors import NotFoundError
from scriptorium.domain.models import MANUSCRIPT_ANALYZED, MANUSCRIPT_FAILED
from scriptorium.providers.agents.base import STAGE_COPY, STAGE_DEVELOPMENTAL, STAGE_LINE, STAGES
from scriptorium.runtime.env import RuntimeEnv
from scriptorium.services.analysis.extraction import extract_text
from scriptorium.services.analysis.jobs import result_key
from scriptorium.services.analysis.status import (
    PROGRESS_COMPLETE,
    STATUS_COMPLETE,
    STATUS_FAILED,
    STATUS_QUEUED,
    TERMINAL_STATUSES,
    AnalysisStatusStore,
    public_status,
)
from scriptorium.services.cache import Cache, CacheKeys
from scriptorium.services.ingest.upload import ResolvedReport, resolve_report
from scriptorium.services.reports import render_annotated, render_report


logger = logging.getLogger(__name__)
router = APIRouter(tags=["analysis"])


def _status_from_row(manuscript: dict[str, Any] | None) -> dict[str, Any]:
    # The KV document has expired; the manuscript row still knows the outcome.
    row_status = (manuscript or {}).get("status")
    if row_status == MANUSCRIPT_ANALYZED:
        return {"status": STATUS_COMPLETE, "progress": PROGRESS_COMPLETE, "message": "All analyses complete"}
    if row_status == MANUSCRIPT_FAILED:
        return {"status": STATUS_FAILED, "progress": 0, "message": "Analysis failed"}
    return {"status": STATUS_QUEUED, "progress": 0, "message": "Queued for analysis"}


@router.get("/analyze/status")
async def analysis_status(
    reportId: str | None = None,
    env: RuntimeEnv = Depends(get_env),
    cache: Cache = Depends(get_cache),
) -> dict:
    report_id = (reportId or "").strip()
    cache_key = CacheKeys.analysis_status(report_id)
    if report_id:
        cached = await cache.get(cache_key)
        if cached is not None:
            return cached
    store = AnalysisStatusStore(env.kv, ttl_s=env.settings.analysis_status_ttl_s, clock=env.clock)
    doc = await store.get(report_id) if report_id else None
    if doc is None:
        resolved = await resolve_report(env, report_id)
        payload = {**_status_from_row(resolved.manuscript), "currentStep": None}
    else:
        payload = public_status(doc)
    # Only settled documents are cached; in-flight progress must stay live.
    if payload.get("status") in TERMINAL_STATUSES:
        await cache.set(cache_key, payload, cache.ttl.analysis_status)
    return payload


async def _load_results(env: RuntimeEnv, cache: Cache, resolved: ResolvedReport) -> dict[str, dict[str, Any]]:
    results: dict[str, dict[str, Any]] = {}
    for stage in STAGES:

        async def _fetch(stage: str = stage) -> Any:
            obj = await env.buckets.processed.get(result_key(resolved.blob_key, stage))
            return await obj.json() if obj is not None else None

        value = await cache.get_or_fetch(
            CacheKeys.analysis_result(resolved.blob_key, stage), cache.ttl.analysis_result, _fetch
        )
        if value is None:
            raise NotFoundError("Analysis results are not ready", details={"missing": stage})
        results[stage] = value
    return results


@router.get("/results")
async def analysis_results(
    id: str | None = None,
    env: RuntimeEnv = Depends(get_env),
    cache: Cache = Depends(get_cache),
) -> dict:
    resolved = await resolve_report(env, id)
    results = await _load_results(env, cache, resolved)
    return {
        "success": True,
        "reportId": resolved.report_id,
        "results": {
            "developmental": results[STAGE_DEVELOPMENTAL],
            "lineEditing": results[STAGE_LINE],
            "copyEditing": results[STAGE_COPY],
        },
    }


@router.get("/report", response_class=HTMLResponse)
async def analysis_report(
    id: str | None = None,
    env: RuntimeEnv = Depends(get_env),
    cache: Cache = Depends(get_cache),
) -> HTMLResponse:
    resolved = await resolve_report(env, id)
    results = await _load_results(env, cache, resolved)
    html = render_report(
        report_id=resolved.report_id,
        title=(resolved.manuscript or {}).get("title"),
        developmental=results[STAGE_DEVELOPMENTAL],
        line=results[STAGE_LINE],
        copy=results[STAGE_COPY],
        generated_at=env.clock(),
    )
    return HTMLResponse(content=html)


@router.get("/annotated", response_class=HTMLResponse)
async def annotated_manuscript(
    id: str | None = None,
    env: RuntimeEnv = Depends(get_env),
    cache: Cache = Depends(get_cache),
) -> HTMLResponse:
    resolved = await resolve_report(env, id)
    results = await _load_results(env, cache, resolved)
    raw = await env.buckets.raw.get(resolved.blob_key)
    if raw is None:
        raise NotFoundError("Manuscript file not found")
    text = extract_text(
        await raw.read(),
        raw.custom_metadata.get("fileType") or raw.content_type,
        raw.custom_metadata.get("originalName"),
    )
    html = render_annotated(
        report_id=resolved.report_id,
        title=(resolved.manuscript or {}).get("title"),
        text=text,
        line=results[STAGE_LINE],
        copy=results[STAGE_COPY],
    )
    return HTMLResponse(content=html)
