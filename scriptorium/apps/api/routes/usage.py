from __future__ import annotations

from fastapi import APIRouter, Depends

from scriptorium.apps.api.deps import get_env, get_usage_service, require_auth
from scriptorium.domain.models import User
from scriptorium.runtime.env import RuntimeEnv
from scriptorium.services.usage import UsageService


router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("")
async def usage_summary(
    principal: User = Depends(require_auth),
    env: RuntimeEnv = Depends(get_env),
    usage: UsageService = Depends(get_usage_service),
) -> dict:
    snapshot = await usage.current(principal, now=env.now())
    return {"tier": principal.tier, **snapshot.public()}
