from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from scriptorium.apps.api.deps import get_env
from scriptorium.core.config import SUBSTRATE_SERVER
from scriptorium.runtime.env import RuntimeEnv
from scriptorium.runtime.queues import heartbeat_key


logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


async def _probe(name: str, probe: Any) -> bool:
    try:
        return bool(await probe())
    except Exception as exc:  # noqa: BLE001 - a failing backend is reported, not raised
        logger.warning("health_probe_failed backend=%s", name, exc_info=exc)
        return False


async def worker_states(env: RuntimeEnv) -> dict[str, dict[str, Any]]:
    settings = env.settings
    states: dict[str, dict[str, Any]] = {}
    for queue_name in (settings.analysis_queue_name, settings.asset_queue_name):
        try:
            beat = await env.kv.get(heartbeat_key(queue_name), as_json=True)
        except Exception as exc:  # noqa: BLE001 - heartbeat lookup is advisory
            logger.warning("health_heartbeat_read_failed queue=%s", queue_name, exc_info=exc)
            beat = None
        last_seen = float(beat["at"]) if isinstance(beat, dict) and beat.get("at") is not None else None
        age = env.clock() - last_seen if last_seen is not None else None
        states[queue_name] = {
            "lastSeen": last_seen,
            "stale": age is None or age > settings.worker_heartbeat_stale_after_s,
        }
    return states


@router.get("/health")
async def health(env: RuntimeEnv = Depends(get_env)) -> JSONResponse:
    checks = {
        "database": await _probe("database", env.db.ping),
        "kv": await _probe("kv", env.kv.ping),
    }
    payload: dict[str, Any] = {"status": "ok", "substrate": env.substrate, "checks": checks}
    if env.substrate == SUBSTRATE_SERVER:
        workers = await worker_states(env)
        payload["workers"] = workers
        if any(state["stale"] for state in workers.values()):
            payload["status"] = "degraded"
    if not all(checks.values()):
        payload["status"] = "unavailable"
        return JSONResponse(content=payload, status_code=503)
    return JSONResponse(content=payload)
