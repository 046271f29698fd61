from __future__ import annotations

import pytest
from starlette.requests import Request

from scriptorium.apps.api import rate_limit
from scriptorium.core.config import SUBSTRATE_MEMORY, Settings
from scriptorium.core.errors import RateLimitError, UpstreamError
from scriptorium.runtime.clock import ManualClock
from scriptorium.runtime.kv import MemoryKV


def _make_request(path: str, method: str, headers: list[tuple[bytes, bytes]] | None = None) -> Request:
    # Construct a minimal ASGI scope for limiter tests.
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "scheme": "http",
        "server": ("test", 80),
        "client": ("10.0.0.9", 1234),
        "headers": headers or [],
        "query_string": b"",
    }
    return Request(scope)


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, runtime_substrate=SUBSTRATE_MEMORY, **overrides)


class _Principal:
    def __init__(self, principal_id: str, tier: str) -> None:
        self.id = principal_id
        self.tier = tier


class _BrokenKV(MemoryKV):
    async def get(self, key: str, *, as_json: bool = False):  # noqa: ANN201
        raise ConnectionError("kv down")


def test_window_math() -> None:
    limit = rate_limit.WindowLimit(limit=2, window_s=60)
    state, allowed, count = rate_limit.advance_window(None, now=100.0, limit=limit)
    assert (state, allowed, count) == ({"count": 1, "windowStart": 100.0}, True, 1)

    state, allowed, count = rate_limit.advance_window(state, now=110.0, limit=limit)
    assert allowed and count == 2
    assert state["windowStart"] == 100.0

    blocked, allowed, count = rate_limit.advance_window(state, now=120.0, limit=limit)
    assert blocked is None and not allowed and count == 2

    fresh, allowed, count = rate_limit.advance_window(state, now=160.0, limit=limit)
    assert fresh == {"count": 1, "windowStart": 160.0}
    assert allowed


def test_endpoint_class_mapping() -> None:
    assert rate_limit.endpoint_class_for_path("/auth/login", "POST") == rate_limit.ENDPOINT_LOGIN
    assert rate_limit.endpoint_class_for_path("/auth/register", "post") == rate_limit.ENDPOINT_REGISTER
    assert rate_limit.endpoint_class_for_path("/auth/password-reset", "POST") == rate_limit.ENDPOINT_PASSWORD_RESET
    assert (
        rate_limit.endpoint_class_for_path("/auth/password-reset-request", "POST")
        == rate_limit.ENDPOINT_PASSWORD_RESET
    )
    assert rate_limit.endpoint_class_for_path("/upload/manuscript", "POST") == rate_limit.ENDPOINT_UPLOAD
    assert rate_limit.endpoint_class_for_path("/auth/login", "GET") == rate_limit.ENDPOINT_DEFAULT
    assert rate_limit.endpoint_class_for_path("/manuscripts", "GET") == rate_limit.ENDPOINT_DEFAULT


def test_client_ip_prefers_proxy_headers() -> None:
    assert rate_limit.client_ip(_make_request("/", "GET")) == "10.0.0.9"
    forwarded = _make_request("/", "GET", [(b"x-forwarded-for", b"1.2.3.4, 10.0.0.1")])
    assert rate_limit.client_ip(forwarded) == "1.2.3.4"
    both = _make_request("/", "GET", [(b"x-forwarded-for", b"1.2.3.4"), (b"cf-connecting-ip", b"5.6.7.8")])
    assert rate_limit.client_ip(both) == "5.6.7.8"


def test_user_limits_grow_with_tier() -> None:
    settings = _settings()
    free = rate_limit.user_limit(rate_limit.ENDPOINT_UPLOAD, "free", settings)
    pro = rate_limit.user_limit(rate_limit.ENDPOINT_UPLOAD, "pro", settings)
    enterprise = rate_limit.user_limit(rate_limit.ENDPOINT_UPLOAD, "enterprise", settings)
    assert free.limit < pro.limit < enterprise.limit
    # Unknown tiers get the free allowance.
    assert rate_limit.user_limit(rate_limit.ENDPOINT_DEFAULT, "legacy", settings).limit == settings.rl_user_free_default


@pytest.mark.asyncio
async def test_login_limit_blocks_then_resets() -> None:
    clock = ManualClock()
    settings = _settings()
    limiter = rate_limit.RateLimiter(MemoryKV(clock=clock), settings, time_provider=clock)
    request = _make_request("/auth/login", "POST")

    for _ in range(settings.rl_login_limit):
        decisions = await limiter.enforce(request, None)
    assert rate_limit.rate_limit_headers(decisions)["X-RateLimit-Remaining"] == "0"

    with pytest.raises(RateLimitError) as excinfo:
        await limiter.enforce(request, None)
    error = excinfo.value
    assert error.retry_after == settings.rl_login_window_s
    assert error.details["endpointClass"] == rate_limit.ENDPOINT_LOGIN
    assert error.headers["Retry-After"] == str(settings.rl_login_window_s)

    clock.advance(settings.rl_login_window_s)
    await limiter.enforce(request, None)


@pytest.mark.asyncio
async def test_user_scope_applies_to_authenticated_requests() -> None:
    clock = ManualClock()
    settings = _settings(rl_user_free_default=2, rl_general_limit=100)
    limiter = rate_limit.RateLimiter(MemoryKV(clock=clock), settings, time_provider=clock)
    request = _make_request("/manuscripts", "GET")
    principal = _Principal("u1", "free")

    await limiter.enforce(request, principal)
    decisions = await limiter.enforce(request, principal)
    assert [decision.scope for decision in decisions] == [rate_limit.SCOPE_IP, rate_limit.SCOPE_USER]
    with pytest.raises(RateLimitError) as excinfo:
        await limiter.enforce(request, principal)
    assert excinfo.value.details["scope"] == rate_limit.SCOPE_USER

    # Another principal from the same address is unaffected.
    await limiter.enforce(request, _Principal("u2", "free"))


@pytest.mark.asyncio
async def test_storage_outage_follows_fail_mode() -> None:
    request = _make_request("/manuscripts", "GET")
    open_limiter = rate_limit.RateLimiter(_BrokenKV(), _settings(rl_fail_mode="open"))
    assert await open_limiter.enforce(request, None) == []

    closed_limiter = rate_limit.RateLimiter(_BrokenKV(), _settings(rl_fail_mode="closed"))
    with pytest.raises(UpstreamError):
        await closed_limiter.enforce(request, None)


def test_bypass_prefixes() -> None:
    limiter = rate_limit.RateLimiter(MemoryKV(), _settings())
    assert limiter.bypassed("/health")
    assert not limiter.bypassed("/manuscripts")
    disabled = rate_limit.RateLimiter(MemoryKV(), _settings(rate_limit_enabled=False))
    assert disabled.bypassed("/manuscripts")
