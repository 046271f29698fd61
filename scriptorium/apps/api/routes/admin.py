from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from scriptorium.apps.api.deps import get_env, require_admin
from scriptorium.domain.models import User
from scriptorium.runtime.env import RuntimeEnv
from scriptorium.services.ingest.reconcile import reconcile_orphans


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/reconcile-orphans")
async def run_orphan_sweep(
    dry_run: bool = False,
    principal: User = Depends(require_admin),
    env: RuntimeEnv = Depends(get_env),
) -> dict:
    logger.info("orphan_sweep_requested admin_id=%s dry_run=%s", principal.id, dry_run)
    report = await reconcile_orphans(env, dry_run=dry_run)
    return {
        "scanned": report.scanned,
        "recreated": report.recreated,
        "skipped": report.skipped,
        "dryRun": dry_run,
    }
