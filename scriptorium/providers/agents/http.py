from __future__ import annotations

import logging
import time
from dataclasses import asdict
from typing import Any

import httpx

from scriptorium.core.errors import AuthError, UpstreamError, UpstreamTimeoutError, ValidationError
from scriptorium.providers.agents.base import AnalysisRequest, AssetRequest, AssetResult
from scriptorium.services.resilience import CircuitBreaker


logger = logging.getLogger(__name__)


class AgentServiceClient:
    """Posts agent invocations to a remote agent service over HTTP."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 600.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._client = client
        self._timeout_s = timeout_s

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    async def invoke(self, path: str, payload: dict[str, Any], *, breaker: CircuitBreaker) -> dict[str, Any]:
        await breaker.before_call()
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        start = time.monotonic()
        try:
            response = await self._get_client().post(f"{self._base_url}{path}", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            await breaker.record_failure()
            raise UpstreamTimeoutError(f"Agent {breaker.name} timed out") from exc
        except httpx.HTTPError as exc:
            await breaker.record_failure()
            raise UpstreamError(f"Agent {breaker.name} request failed") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code in {401, 403}:
            # Credentials problems are terminal and do not trip the breaker.
            raise AuthError(f"Agent {breaker.name} rejected credentials", reason="agent_auth_failed")
        if response.status_code == 429 or response.status_code >= 500:
            await breaker.record_failure()
            logger.warning(
                "agent_call_failed agent=%s status=%s latency_ms=%.1f",
                breaker.name,
                response.status_code,
                latency_ms,
            )
            raise UpstreamError(f"Agent {breaker.name} error: {response.status_code}")
        if response.status_code >= 400:
            raise ValidationError(f"Agent {breaker.name} rejected input: {response.status_code}")

        await breaker.record_success()
        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamError(f"Agent {breaker.name} returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise UpstreamError(f"Agent {breaker.name} returned a non-object body")
        return body

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


class HttpAnalysisAgent:
    def __init__(self, stage: str, *, client: AgentServiceClient, breaker: CircuitBreaker) -> None:
        self.stage = stage
        self._client = client
        self._breaker = breaker

    async def analyze(self, request: AnalysisRequest) -> dict[str, Any]:
        return await self._client.invoke(f"/analysis/{self.stage}", asdict(request), breaker=self._breaker)


class HttpAssetAgent:
    def __init__(self, kind: str, *, client: AgentServiceClient, breaker: CircuitBreaker) -> None:
        self.kind = kind
        self._client = client
        self._breaker = breaker

    async def generate(self, request: AssetRequest) -> AssetResult:
        body = await self._client.invoke(f"/assets/{self.kind}", asdict(request), breaker=self._breaker)
        return AssetResult(
            kind=self.kind,
            result=body.get("result"),
            tokens_in=int(body.get("tokensIn", 0) or 0),
            tokens_out=int(body.get("tokensOut", 0) or 0),
        )
