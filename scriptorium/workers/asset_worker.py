from __future__ import annotations

import logging

from arq.connections import RedisSettings

from scriptorium.core.config import get_settings
from scriptorium.runtime.queues import ASSET_QUEUE, settle_arq_job
from scriptorium.services.assets.orchestrator import AssetOrchestrator
from scriptorium.workers.common import lifecycle


logger = logging.getLogger(__name__)


async def consume_asset_queue(ctx, payload: dict) -> str:
    settings = ctx["env"].settings
    orchestrator: AssetOrchestrator = ctx["consumer"]
    return await settle_arq_job(
        ctx,
        queue_name=settings.asset_queue_name,
        payload=payload,
        consumer=orchestrator.handle,
        max_attempts=settings.queue_max_attempts,
    )


_startup, _shutdown = lifecycle(ASSET_QUEUE, lambda env, agents, email: AssetOrchestrator(env, agents))


class WorkerSettings:
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url or "redis://localhost:6379/0")
    queue_name = settings.asset_queue_name
    max_tries = settings.queue_max_attempts
    # Seven agents run concurrently, each under its own budget.
    job_timeout = settings.asset_agent_timeout_s * 2
    functions = [consume_asset_queue]
    on_startup = _startup
    on_shutdown = _shutdown
