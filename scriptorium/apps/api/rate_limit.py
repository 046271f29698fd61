from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from starlette.requests import Request

from scriptorium.core.config import Settings
from scriptorium.core.errors import RateLimitError, UpstreamError
from scriptorium.runtime.kv import KVStore, put_json


logger = logging.getLogger(__name__)

ENDPOINT_LOGIN = "login"
ENDPOINT_REGISTER = "register"
ENDPOINT_PASSWORD_RESET = "password_reset"
ENDPOINT_UPLOAD = "upload"
ENDPOINT_DEFAULT = "default"

SCOPE_IP = "ip"
SCOPE_ENDPOINT = "endpoint"
SCOPE_USER = "user"


class PrincipalLike(Protocol):
    # Minimal principal shape needed for per-user limits.
    id: str
    tier: str


@dataclass(frozen=True)
class WindowLimit:
    limit: int
    window_s: int


@dataclass(frozen=True)
class RateLimitDecision:
    # Outcome for one scope, with the values rendered into X-RateLimit-* headers.
    allowed: bool
    scope: str
    endpoint_class: str
    limit: int
    remaining: int
    reset_at: int
    retry_after: int = 0


def endpoint_class_for_path(path: str, method: str) -> str:
    normalized = method.upper()
    if normalized == "POST":
        if path == "/auth/login":
            return ENDPOINT_LOGIN
        if path == "/auth/register":
            return ENDPOINT_REGISTER
        if path in {"/auth/password-reset-request", "/auth/password-reset"}:
            return ENDPOINT_PASSWORD_RESET
        if path.startswith("/upload"):
            return ENDPOINT_UPLOAD
    return ENDPOINT_DEFAULT


def client_ip(request: Request) -> str:
    # Prefer proxy-provided addresses, falling back to the socket peer.
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit_key(scope: str, identifier: str, endpoint_class: str) -> str:
    return f"rl:{scope}:{identifier}:{endpoint_class}"


def advance_window(
    state: dict[str, Any] | None,
    *,
    now: float,
    limit: WindowLimit,
) -> tuple[dict[str, Any] | None, bool, int]:
    """Apply one request to a window; returns (state to write, allowed, count after)."""
    if not state or now - float(state.get("windowStart", 0)) >= limit.window_s:
        return {"count": 1, "windowStart": now}, True, 1
    count = int(state.get("count", 0))
    if count < limit.limit:
        return {"count": count + 1, "windowStart": float(state["windowStart"])}, True, count + 1
    return None, False, count


def endpoint_limit(endpoint_class: str, settings: Settings) -> WindowLimit | None:
    limits = {
        ENDPOINT_LOGIN: WindowLimit(settings.rl_login_limit, settings.rl_login_window_s),
        ENDPOINT_REGISTER: WindowLimit(settings.rl_register_limit, settings.rl_register_window_s),
        ENDPOINT_PASSWORD_RESET: WindowLimit(
            settings.rl_password_reset_limit, settings.rl_password_reset_window_s
        ),
        ENDPOINT_UPLOAD: WindowLimit(settings.rl_upload_limit, settings.rl_upload_window_s),
    }
    return limits.get(endpoint_class)


def user_limit(endpoint_class: str, tier: str, settings: Settings) -> WindowLimit:
    # Tier overrides grow strictly from free to enterprise.
    if endpoint_class == ENDPOINT_UPLOAD:
        by_tier = {
            "free": settings.rl_user_free_upload,
            "pro": settings.rl_user_pro_upload,
            "enterprise": settings.rl_user_enterprise_upload,
        }
        return WindowLimit(by_tier.get(tier, settings.rl_user_free_upload), settings.rl_user_upload_window_s)
    by_tier = {
        "free": settings.rl_user_free_default,
        "pro": settings.rl_user_pro_default,
        "enterprise": settings.rl_user_enterprise_default,
    }
    return WindowLimit(by_tier.get(tier, settings.rl_user_free_default), settings.rl_user_default_window_s)


class RateLimiter:
    def __init__(
        self,
        kv: KVStore,
        settings: Settings,
        *,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._kv = kv
        self._settings = settings
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time

    async def check(
        self,
        *,
        scope: str,
        identifier: str,
        endpoint_class: str,
        limit: WindowLimit,
    ) -> RateLimitDecision:
        # Read-modify-write on a single key; concurrent requests may under-count slightly.
        key = rate_limit_key(scope, identifier, endpoint_class)
        now = self._time_provider()
        state = await self._kv.get(key, as_json=True)
        new_state, allowed, count = advance_window(
            state if isinstance(state, dict) else None, now=now, limit=limit
        )
        if new_state is not None:
            window_start = float(new_state["windowStart"])
        else:
            window_start = float(state["windowStart"])
        reset_at = window_start + limit.window_s
        if new_state is not None:
            ttl = max(1, int(math.ceil(reset_at - now)))
            await put_json(self._kv, key, new_state, expiration_ttl=ttl)
        if allowed:
            return RateLimitDecision(
                allowed=True,
                scope=scope,
                endpoint_class=endpoint_class,
                limit=limit.limit,
                remaining=max(limit.limit - count, 0),
                reset_at=int(math.ceil(reset_at)),
            )
        return RateLimitDecision(
            allowed=False,
            scope=scope,
            endpoint_class=endpoint_class,
            limit=limit.limit,
            remaining=0,
            reset_at=int(math.ceil(reset_at)),
            retry_after=max(1, int(math.ceil(reset_at - now))),
        )

    def _plan(self, request: Request, principal: PrincipalLike | None) -> list[tuple[str, str, str, WindowLimit]]:
        settings = self._settings
        endpoint_class = endpoint_class_for_path(request.url.path, request.method)
        ip = client_ip(request)
        plan = [
            (
                SCOPE_IP,
                ip,
                ENDPOINT_DEFAULT,
                WindowLimit(settings.rl_general_limit, settings.rl_general_window_s),
            )
        ]
        specific = endpoint_limit(endpoint_class, settings)
        if specific is not None:
            plan.append((SCOPE_ENDPOINT, ip, endpoint_class, specific))
        if principal is not None:
            plan.append((SCOPE_USER, principal.id, endpoint_class, user_limit(endpoint_class, principal.tier, settings)))
        return plan

    async def enforce(self, request: Request, principal: PrincipalLike | None) -> list[RateLimitDecision]:
        """Check every scope for the request; raise RateLimitError on the first rejection."""
        decisions: list[RateLimitDecision] = []
        for scope, identifier, endpoint_class, limit in self._plan(request, principal):
            try:
                decision = await self.check(
                    scope=scope, identifier=identifier, endpoint_class=endpoint_class, limit=limit
                )
            except Exception as exc:  # noqa: BLE001 - limiter storage outages follow the fail mode
                if self._settings.rl_fail_mode.lower() == "closed":
                    raise UpstreamError("Rate limiting unavailable") from exc
                logger.warning("rate_limit_storage_unavailable scope=%s", scope, exc_info=exc)
                return decisions
            decisions.append(decision)
            if not decision.allowed:
                raise RateLimitError(
                    "Rate limit exceeded",
                    retry_after=decision.retry_after,
                    details={"scope": decision.scope, "endpointClass": decision.endpoint_class},
                ).with_headers(rate_limit_headers(decisions))
        return decisions

    def bypassed(self, path: str) -> bool:
        if not self._settings.rate_limit_enabled:
            return True
        return path.startswith(self._settings.rate_limit_bypass_prefixes())


def rate_limit_headers(decisions: list[RateLimitDecision]) -> dict[str, str]:
    # Report the tightest scope: fewest remaining requests.
    if not decisions:
        return {}
    tightest = min(decisions, key=lambda decision: (decision.allowed, decision.remaining))
    headers = {
        "X-RateLimit-Limit": str(tightest.limit),
        "X-RateLimit-Remaining": str(tightest.remaining),
        "X-RateLimit-Reset": str(tightest.reset_at),
    }
    if not tightest.allowed:
        headers["Retry-After"] = str(tightest.retry_after)
    return headers
