from __future__ import annotations

from scriptorium.core.config import Settings
from scriptorium.core.errors import ValidationError
from scriptorium.providers.agents.base import ASSET_KINDS, STAGES, AgentSet
from scriptorium.providers.agents.fake import build_fake_agents
from scriptorium.providers.agents.http import AgentServiceClient, HttpAnalysisAgent, HttpAssetAgent
from scriptorium.runtime.clock import Clock
from scriptorium.runtime.kv import KVStore
from scriptorium.services.resilience import CircuitBreaker, CircuitBreakerConfig


def get_agents(settings: Settings, *, kv: KVStore, clock: Clock | None = None) -> AgentSet:
    provider = (settings.agent_provider or "fake").lower()

    if provider == "fake":
        return build_fake_agents()
    if provider == "http":
        client = AgentServiceClient(
            base_url=settings.agent_base_url,
            api_key=settings.agent_api_key,
            timeout_s=float(settings.stage_timeout_s),
        )
        config = CircuitBreakerConfig.from_settings(settings)

        def _breaker(name: str) -> CircuitBreaker:
            # One breaker per agent so a failing kind does not block its peers.
            return CircuitBreaker(name, kv=kv, config=config, clock=clock)

        return AgentSet(
            analysis={
                stage: HttpAnalysisAgent(stage, client=client, breaker=_breaker(stage)) for stage in STAGES
            },
            assets={kind: HttpAssetAgent(kind, client=client, breaker=_breaker(kind)) for kind in ASSET_KINDS},
        )

    raise ValidationError(f"Unsupported agent provider: {provider}")
