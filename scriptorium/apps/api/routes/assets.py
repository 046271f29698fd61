from __future__ import annotations

from fastapi import APIRouter, Depends

from scriptorium.apps.api.deps import get_env
from scriptorium.runtime.env import RuntimeEnv
from scriptorium.services.assets.status import load_status_document, public_asset_status
from scriptorium.services.ingest.upload import resolve_report


router = APIRouter(prefix="/assets", tags=["assets"])


@router.get("/status")
async def asset_status(reportId: str | None = None, env: RuntimeEnv = Depends(get_env)) -> dict:
    resolved = await resolve_report(env, reportId)
    doc = await load_status_document(env.buckets.processed, resolved.blob_key)
    return {"reportId": resolved.report_id, **public_asset_status(doc)}
