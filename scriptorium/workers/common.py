from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable

from scriptorium.core.config import get_settings
from scriptorium.core.logging import configure_logging
from scriptorium.providers.agents.factory import get_agents
from scriptorium.runtime.env import RuntimeEnv, build_env
from scriptorium.runtime.queues import heartbeat_key
from scriptorium.services.email import get_email_sender


logger = logging.getLogger(__name__)


async def write_heartbeat(env: RuntimeEnv, queue_name: str) -> None:
    settings = env.settings
    # Outlive a few missed beats so health reports staleness instead of absence.
    ttl = max(settings.worker_heartbeat_stale_after_s * 10, 60)
    await env.kv.put(heartbeat_key(queue_name), json.dumps({"at": env.clock()}), expiration_ttl=ttl)


async def _heartbeat_loop(env: RuntimeEnv, queue_name: str) -> None:
    while True:
        try:
            await write_heartbeat(env, queue_name)
        except Exception as exc:  # noqa: BLE001 - a missed beat must not stop the worker
            logger.warning("worker_heartbeat_failed queue=%s", queue_name, exc_info=exc)
        await asyncio.sleep(env.settings.worker_heartbeat_interval_s)


def lifecycle(queue_name: str, build_consumer: Callable[[RuntimeEnv, Any, Any], Any]):
    """arq on_startup/on_shutdown pair that owns the env, consumer and heartbeat task."""

    async def _startup(ctx: dict[str, Any]) -> None:
        settings = get_settings()
        configure_logging(settings.log_level)
        env = await build_env(settings)
        email = get_email_sender(settings)
        agents = get_agents(settings, kv=env.kv, clock=env.clock)
        ctx["env"] = env
        ctx["email"] = email
        ctx["consumer"] = build_consumer(env, agents, email)
        ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop(env, queue_name))
        logger.info("worker_started queue=%s", queue_name)

    async def _shutdown(ctx: dict[str, Any]) -> None:
        task = ctx.get("heartbeat_task")
        if task:
            task.cancel()
        close_email = getattr(ctx.get("email"), "close", None)
        if close_email is not None:
            await close_email()
        env = ctx.get("env")
        if env is not None:
            await env.close()
        logger.info("worker_stopped queue=%s", queue_name)

    return _startup, _shutdown
