from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from scriptorium.apps.api.main import create_app
from scriptorium.core.config import SUBSTRATE_MEMORY, Settings, get_settings
from scriptorium.providers.agents.fake import build_fake_agents
from scriptorium.runtime.clock import ManualClock
from scriptorium.runtime.env import build_env
from scriptorium.services.email import OutboxEmailSender


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings(monkeypatch) -> Settings:
    # Tests never read a developer .env; every knob is explicit.
    monkeypatch.setenv("RUNTIME_SUBSTRATE", SUBSTRATE_MEMORY)
    get_settings.cache_clear()
    return Settings(
        _env_file=None,
        runtime_substrate=SUBSTRATE_MEMORY,
        auth_expose_tokens=True,
        agent_provider="fake",
        email_provider="outbox",
        log_level="WARNING",
    )


@pytest.fixture
async def env(settings, clock):
    runtime = await build_env(settings, clock=clock)
    yield runtime
    await runtime.close()


@pytest.fixture
def agents():
    return build_fake_agents()


@pytest.fixture
def outbox() -> OutboxEmailSender:
    return OutboxEmailSender()


@pytest.fixture
async def app(env, agents, outbox):
    application = create_app(env.settings, env=env, agents=agents, email=outbox)
    # ASGITransport does not drive lifespan events.
    async with application.router.lifespan_context(application):
        yield application


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    # https so the Secure session cookie is sent back.
    async with AsyncClient(transport=transport, base_url="https://test") as http:
        yield http
