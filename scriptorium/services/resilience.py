from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable

from scriptorium.core.config import Settings
from scriptorium.core.errors import UpstreamError, is_transient
from scriptorium.runtime.clock import Clock, system_clock
from scriptorium.runtime.kv import KVStore, put_json


logger = logging.getLogger(__name__)

STATE_CLOSED = "closed"
STATE_OPEN = "open"
STATE_HALF_OPEN = "half_open"


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize in-call retry behavior for deterministic policy changes.
    timeout_s: float
    max_attempts: int
    backoff_ms: int


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    retryable = retryable or is_transient
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_s)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1


@dataclass(frozen=True)
class CircuitBreakerConfig:
    # Thresholds come from settings; see from_settings.
    window_s: int
    min_calls: int
    failure_ratio: float
    open_seconds: int
    half_open_trials: int = 1

    @classmethod
    def from_settings(cls, settings: Settings) -> "CircuitBreakerConfig":
        return cls(
            window_s=settings.cb_window_s,
            min_calls=settings.cb_min_calls,
            failure_ratio=settings.cb_failure_ratio,
            open_seconds=settings.cb_open_seconds,
        )


@dataclass
class CircuitBreakerState:
    # Serialized into KV so every worker shares one view per agent.
    state: str = STATE_CLOSED
    window_start: float = 0.0
    calls: int = 0
    failures: int = 0
    opened_at: float | None = None
    half_open_trials: int = 0

    @classmethod
    def from_raw(cls, raw: Any) -> "CircuitBreakerState":
        if not isinstance(raw, dict):
            return cls()
        return cls(
            state=raw.get("state", STATE_CLOSED),
            window_start=float(raw.get("window_start", 0.0)),
            calls=int(raw.get("calls", 0)),
            failures=int(raw.get("failures", 0)),
            opened_at=float(raw["opened_at"]) if raw.get("opened_at") is not None else None,
            half_open_trials=int(raw.get("half_open_trials", 0)),
        )


def circuit_key(name: str) -> str:
    return f"agent:{name}:circuit"


class CircuitBreaker:
    """Failure-ratio breaker over a rolling window, shared through KV."""

    def __init__(
        self,
        name: str,
        *,
        kv: KVStore,
        config: CircuitBreakerConfig,
        clock: Clock | None = None,
    ) -> None:
        self._name = name
        self._kv = kv
        self._config = config
        self._clock = clock or system_clock

    @property
    def name(self) -> str:
        return self._name

    async def _load(self) -> CircuitBreakerState:
        try:
            raw = await self._kv.get(circuit_key(self._name), as_json=True)
        except Exception as exc:  # noqa: BLE001 - an unreadable breaker behaves as closed
            logger.warning("circuit_breaker_load_failed name=%s", self._name, exc_info=exc)
            return CircuitBreakerState()
        return CircuitBreakerState.from_raw(raw)

    async def _save(self, state: CircuitBreakerState) -> None:
        ttl = max(self._config.open_seconds * 4, self._config.window_s * 2, 60)
        try:
            await put_json(self._kv, circuit_key(self._name), asdict(state), expiration_ttl=ttl)
        except Exception as exc:  # noqa: BLE001 - breaker bookkeeping is best-effort
            logger.warning("circuit_breaker_save_failed name=%s", self._name, exc_info=exc)

    def _transition(self, state: CircuitBreakerState, target: str) -> CircuitBreakerState:
        if state.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, state.state, target)
        now = self._clock()
        return CircuitBreakerState(
            state=target,
            window_start=now,
            opened_at=now if target == STATE_OPEN else None,
        )

    async def state(self) -> str:
        return (await self._load()).state

    async def before_call(self) -> None:
        # Short-circuit without outbound traffic while open.
        state = await self._load()
        now = self._clock()
        if state.state == STATE_OPEN:
            if state.opened_at is not None and (now - state.opened_at) >= self._config.open_seconds:
                state = self._transition(state, STATE_HALF_OPEN)
            else:
                raise UpstreamError(f"Agent {self._name} circuit open", details={"agent": self._name})
        if state.state == STATE_HALF_OPEN:
            if state.half_open_trials >= self._config.half_open_trials:
                raise UpstreamError(f"Agent {self._name} circuit open", details={"agent": self._name})
            state.half_open_trials += 1
            await self._save(state)

    async def record_success(self) -> None:
        state = await self._load()
        if state.state != STATE_CLOSED:
            await self._save(self._transition(state, STATE_CLOSED))
            return
        await self._save(self._count(state, failed=False))

    async def record_failure(self) -> None:
        state = await self._load()
        if state.state == STATE_HALF_OPEN:
            await self._save(self._transition(state, STATE_OPEN))
            return
        state = self._count(state, failed=True)
        ratio = state.failures / state.calls if state.calls else 0.0
        if state.calls >= self._config.min_calls and ratio >= self._config.failure_ratio:
            state = self._transition(state, STATE_OPEN)
        await self._save(state)

    def _count(self, state: CircuitBreakerState, *, failed: bool) -> CircuitBreakerState:
        now = self._clock()
        if now - state.window_start >= self._config.window_s:
            state = CircuitBreakerState(window_start=now)
        state.calls += 1
        if failed:
            state.failures += 1
        return state
