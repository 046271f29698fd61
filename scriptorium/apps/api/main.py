from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import UUID, uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from scriptorium.apps.api.cors import SECURITY_HEADERS, cors_headers, preflight_response
from scriptorium.apps.api.errors import (
    http_exception_handler,
    render_error,
    render_internal_error,
    scriptorium_exception_handler,
    validation_exception_handler,
)
from scriptorium.apps.api.rate_limit import RateLimiter, RateLimitDecision, rate_limit_headers
from scriptorium.apps.api.routes.admin import router as admin_router
from scriptorium.apps.api.routes.analysis import router as analysis_router
from scriptorium.apps.api.routes.assets import router as assets_router
from scriptorium.apps.api.routes.auth import router as auth_router
from scriptorium.apps.api.routes.health import router as health_router
from scriptorium.apps.api.routes.manuscripts import router as manuscripts_router
from scriptorium.apps.api.routes.upload import router as upload_router
from scriptorium.apps.api.routes.usage import router as usage_router
from scriptorium.core.config import Settings, get_settings
from scriptorium.core.errors import ScriptoriumError
from scriptorium.core.logging import configure_logging
from scriptorium.domain.models import User
from scriptorium.providers.agents.base import AgentSet
from scriptorium.providers.agents.factory import get_agents
from scriptorium.runtime.clock import Clock
from scriptorium.runtime.env import RuntimeEnv, build_env
from scriptorium.services.analysis.orchestrator import AnalysisOrchestrator
from scriptorium.services.assets.orchestrator import AssetOrchestrator
from scriptorium.services.auth.service import AuthService
from scriptorium.services.cache import Cache, CacheTTL
from scriptorium.services.email import EmailSender, get_email_sender
from scriptorium.services.ingest.upload import IngestService
from scriptorium.services.usage import UsageService


logger = logging.getLogger(__name__)


def wire_services(
    app: FastAPI,
    env: RuntimeEnv,
    *,
    agents: AgentSet | None = None,
    email: EmailSender | None = None,
) -> None:
    """Bind the runtime env and every service built on it to ``app.state``."""
    settings = env.settings
    cache = Cache(env.kv, CacheTTL.from_settings(settings))
    email = email or get_email_sender(settings)
    agents = agents or get_agents(settings, kv=env.kv, clock=env.clock)
    app.state.env = env
    app.state.cache = cache
    app.state.email = email
    app.state.agents = agents
    app.state.rate_limiter = RateLimiter(env.kv, settings, time_provider=env.clock)
    app.state.auth = AuthService(
        db=env.db, sessions=env.sessions, cache=cache, email=email, settings=settings, clock=env.clock
    )
    app.state.usage = UsageService(env.db, settings)
    app.state.ingest = IngestService(env)
    app.state.analysis = AnalysisOrchestrator(env, agents, email=email)
    app.state.assets = AssetOrchestrator(env, agents)


def _correlation_id(incoming: str | None) -> str:
    # Client ids are kept only when they are UUIDs; anything else gets a fresh one.
    if incoming:
        try:
            return str(UUID(incoming))
        except ValueError:
            logger.debug("request_id_rejected length=%s", len(incoming))
    return str(uuid4())


async def _extract_principal(request: Request) -> User | None:
    # Never raises: a broken session store degrades to an anonymous request.
    state = request.app.state
    token = request.cookies.get(state.env.settings.session_cookie_name)
    if not token:
        authorization = request.headers.get("authorization", "")
        if authorization.lower().startswith("bearer "):
            token = authorization[7:].strip()
    request.state.session_token = token
    if not token:
        return None
    try:
        record = await state.env.sessions.read(token)
        if record is None:
            return None
        return await state.auth.load_principal(record.principal_id)
    except Exception as exc:  # noqa: BLE001 - auth extraction is non-throwing by contract
        logger.warning("session_lookup_failed", exc_info=exc)
        return None


def create_app(
    settings: Settings | None = None,
    *,
    env: RuntimeEnv | None = None,
    clock: Clock | None = None,
    agents: AgentSet | None = None,
    email: EmailSender | None = None,
) -> FastAPI:
    settings = settings or (env.settings if env is not None else get_settings())
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        runtime = env or await build_env(settings, clock=clock)
        wire_services(app, runtime, agents=agents, email=email)
        try:
            yield
        finally:
            close_email = getattr(app.state.email, "close", None)
            if close_email is not None:
                await close_email()
            # Caller-owned envs are closed by the caller.
            if env is None:
                await runtime.close()

    app = FastAPI(title="Scriptorium API", lifespan=lifespan)

    @app.middleware("http")
    async def request_pipeline(request: Request, call_next):  # type: ignore[override]
        request_id = _correlation_id(request.headers.get("X-Request-Id"))
        request.state.request_id = request_id
        request.state.principal = None
        runtime: RuntimeEnv = request.app.state.env
        if request.method == "OPTIONS":
            response = preflight_response(request, runtime.settings)
            response.headers["X-Request-Id"] = request_id
            return response

        decisions: list[RateLimitDecision] = []
        try:
            principal = await _extract_principal(request)
            request.state.principal = principal
            limiter: RateLimiter = request.app.state.rate_limiter
            if not limiter.bypassed(request.url.path):
                decisions = await limiter.enforce(request, principal)
            response = await call_next(request)
        except ScriptoriumError as exc:
            response = render_error(request, exc)
        except Exception as exc:  # noqa: BLE001 - last-resort normalizer for anything a handler leaked
            response = render_internal_error(request, exc)

        merged = {**cors_headers(request, runtime.settings), **SECURITY_HEADERS, **rate_limit_headers(decisions)}
        for name, value in merged.items():
            if name not in response.headers:
                response.headers[name] = value
        response.headers["X-Request-Id"] = request_id
        return response

    app.add_exception_handler(ScriptoriumError, scriptorium_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(upload_router)
    app.include_router(manuscripts_router)
    app.include_router(analysis_router)
    app.include_router(assets_router)
    app.include_router(usage_router)
    app.include_router(admin_router)

    return app
