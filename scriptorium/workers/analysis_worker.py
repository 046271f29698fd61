from __future__ import annotations

import logging

from arq.connections import RedisSettings

from scriptorium.core.config import get_settings
from scriptorium.runtime.queues import ANALYSIS_QUEUE, settle_arq_job
from scriptorium.services.analysis.orchestrator import AnalysisOrchestrator
from scriptorium.workers.common import lifecycle


logger = logging.getLogger(__name__)


async def consume_analysis_queue(ctx, payload: dict) -> str:
    settings = ctx["env"].settings
    orchestrator: AnalysisOrchestrator = ctx["consumer"]
    return await settle_arq_job(
        ctx,
        queue_name=settings.analysis_queue_name,
        payload=payload,
        consumer=orchestrator.handle,
        max_attempts=settings.queue_max_attempts,
    )


_startup, _shutdown = lifecycle(
    ANALYSIS_QUEUE,
    lambda env, agents, email: AnalysisOrchestrator(env, agents, email=email),
)


class WorkerSettings:
    # Class attributes so `arq scriptorium.workers.analysis_worker.WorkerSettings` works.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url or "redis://localhost:6379/0")
    queue_name = settings.analysis_queue_name
    max_tries = settings.queue_max_attempts
    job_timeout = settings.stage_timeout_s * 4
    functions = [consume_analysis_queue]
    on_startup = _startup
    on_shutdown = _shutdown
