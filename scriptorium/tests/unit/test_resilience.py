from __future__ import annotations

import httpx
import pytest

from scriptorium.core.config import SUBSTRATE_MEMORY, Settings
from scriptorium.core.errors import (
    AuthError,
    UpstreamError,
    UpstreamTimeoutError,
    ValidationError,
)
from scriptorium.providers.agents.base import ASSET_KINDS, STAGES, AnalysisRequest, AssetRequest
from scriptorium.providers.agents.factory import get_agents
from scriptorium.providers.agents.http import AgentServiceClient, HttpAnalysisAgent, HttpAssetAgent
from scriptorium.runtime.clock import ManualClock
from scriptorium.runtime.kv import MemoryKV
from scriptorium.services.resilience import (
    STATE_CLOSED,
    STATE_HALF_OPEN,
    STATE_OPEN,
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryPolicy,
    circuit_key,
    retry_async,
)


_CONFIG = CircuitBreakerConfig(window_s=60, min_calls=2, failure_ratio=0.5, open_seconds=30)


def _breaker(clock: ManualClock, kv: MemoryKV | None = None, name: str = "developmental") -> CircuitBreaker:
    return CircuitBreaker(name, kv=kv or MemoryKV(clock=clock), config=_CONFIG, clock=clock)


def _agent_client(handler) -> AgentServiceClient:  # noqa: ANN001
    transport = httpx.MockTransport(handler)
    return AgentServiceClient(
        base_url="http://agents.local/",
        api_key="agent-key",
        client=httpx.AsyncClient(transport=transport),
    )


@pytest.mark.asyncio
async def test_breaker_opens_then_half_opens_after_cooldown() -> None:
    clock = ManualClock()
    breaker = _breaker(clock)

    await breaker.before_call()
    await breaker.record_failure()
    assert await breaker.state() == STATE_CLOSED
    await breaker.record_failure()
    assert await breaker.state() == STATE_OPEN

    with pytest.raises(UpstreamError):
        await breaker.before_call()

    clock.advance(30)
    await breaker.before_call()
    assert await breaker.state() == STATE_HALF_OPEN
    # Only one trial call is let through while half open.
    with pytest.raises(UpstreamError):
        await breaker.before_call()

    await breaker.record_success()
    assert await breaker.state() == STATE_CLOSED


@pytest.mark.asyncio
async def test_failed_trial_reopens_the_breaker() -> None:
    clock = ManualClock()
    breaker = _breaker(clock)
    await breaker.record_failure()
    await breaker.record_failure()
    clock.advance(30)
    await breaker.before_call()

    await breaker.record_failure()
    assert await breaker.state() == STATE_OPEN


@pytest.mark.asyncio
async def test_breaker_state_is_shared_per_agent() -> None:
    clock = ManualClock()
    kv = MemoryKV(clock=clock)
    worker_a = _breaker(clock, kv)
    worker_b = _breaker(clock, kv)
    other_agent = _breaker(clock, kv, name="keywords")

    await worker_a.record_failure()
    await worker_a.record_failure()
    assert await worker_b.state() == STATE_OPEN
    assert await other_agent.state() == STATE_CLOSED
    assert circuit_key("developmental") in kv.keys()


@pytest.mark.asyncio
async def test_window_rolls_over_before_counting() -> None:
    clock = ManualClock()
    breaker = _breaker(clock)
    await breaker.record_failure()
    await breaker.record_success()
    clock.advance(61)
    await breaker.record_failure()
    assert await breaker.state() == STATE_CLOSED


def test_breaker_config_from_settings() -> None:
    settings = Settings(_env_file=None, runtime_substrate=SUBSTRATE_MEMORY, cb_min_calls=9)
    config = CircuitBreakerConfig.from_settings(settings)
    assert config.min_calls == 9
    assert config.open_seconds == settings.cb_open_seconds


@pytest.mark.asyncio
async def test_retry_async_retries_transient_failures_only() -> None:
    calls = {"count": 0}

    async def _flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise UpstreamError("busy")
        return "done"

    policy = RetryPolicy(timeout_s=1.0, max_attempts=3, backoff_ms=1)
    assert await retry_async(_flaky, policy=policy) == "done"
    assert calls["count"] == 3

    async def _invalid() -> str:
        calls["count"] += 1
        raise ValidationError("bad input")

    calls["count"] = 0
    with pytest.raises(ValidationError):
        await retry_async(_invalid, policy=policy)
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_http_agent_posts_request_with_credentials() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"overallScore": 8})

    clock = ManualClock()
    client = _agent_client(_handler)
    agent = HttpAnalysisAgent("developmental", client=client, breaker=_breaker(clock))
    result = await agent.analyze(AnalysisRequest(report_id="abcd1234", text="Once.", genre=None, structure={}))

    assert result == {"overallScore": 8}
    assert str(seen[0].url) == "http://agents.local/analysis/developmental"
    assert seen[0].headers["Authorization"] == "Bearer agent-key"
    await client.close()


@pytest.mark.asyncio
async def test_http_agent_maps_status_codes() -> None:
    statuses = iter([503, 401, 422])

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), json={})

    clock = ManualClock()
    breaker = _breaker(clock, name="keywords")
    agent = HttpAssetAgent("keywords", client=_agent_client(_handler), breaker=breaker)
    request = AssetRequest(report_id="abcd1234", kind="keywords", text="Once.", analyses={})

    with pytest.raises(UpstreamError):
        await agent.generate(request)
    with pytest.raises(AuthError):
        await agent.generate(request)
    with pytest.raises(ValidationError):
        await agent.generate(request)


@pytest.mark.asyncio
async def test_http_agent_timeouts_count_against_the_breaker() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    clock = ManualClock()
    breaker = _breaker(clock, name="line")
    agent = HttpAnalysisAgent("line", client=_agent_client(_handler), breaker=breaker)
    request = AnalysisRequest(report_id="abcd1234", text="Once.", genre=None, structure={})

    for _ in range(2):
        with pytest.raises(UpstreamTimeoutError):
            await agent.analyze(request)
    assert await breaker.state() == STATE_OPEN
    # Open breakers short-circuit without reaching the transport.
    with pytest.raises(UpstreamError):
        await agent.analyze(request)


@pytest.mark.asyncio
async def test_http_asset_agent_reads_token_counts() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"result": ["rain", "letters"], "tokensIn": 120, "tokensOut": 30})

    clock = ManualClock()
    agent = HttpAssetAgent("keywords", client=_agent_client(_handler), breaker=_breaker(clock, name="keywords"))
    result = await agent.generate(AssetRequest(report_id="abcd1234", kind="keywords", text="x", analyses={}))
    assert result.result == ["rain", "letters"]
    assert (result.tokens_in, result.tokens_out) == (120, 30)


def test_agent_factory_selects_provider() -> None:
    kv = MemoryKV()
    fake = get_agents(Settings(_env_file=None, runtime_substrate=SUBSTRATE_MEMORY, agent_provider="fake"), kv=kv)
    assert set(fake.analysis) == set(STAGES)
    assert set(fake.assets) == set(ASSET_KINDS)

    remote = get_agents(
        Settings(
            _env_file=None,
            runtime_substrate=SUBSTRATE_MEMORY,
            agent_provider="http",
            agent_base_url="http://agents.local",
        ),
        kv=kv,
    )
    assert isinstance(remote.analysis_agent("line"), HttpAnalysisAgent)
    assert isinstance(remote.asset_agent("keywords"), HttpAssetAgent)

    with pytest.raises(ValidationError):
        get_agents(Settings(_env_file=None, runtime_substrate=SUBSTRATE_MEMORY, agent_provider="carrier-pigeon"), kv=kv)
