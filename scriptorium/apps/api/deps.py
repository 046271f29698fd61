from __future__ import annotations

from fastapi import Depends, Request

from scriptorium.core.config import Settings
from scriptorium.core.errors import AuthError, AuthorizationError
from scriptorium.domain.models import User
from scriptorium.runtime.env import RuntimeEnv
from scriptorium.services.analysis.orchestrator import AnalysisOrchestrator
from scriptorium.services.assets.orchestrator import AssetOrchestrator
from scriptorium.services.auth.service import AuthService
from scriptorium.services.cache import Cache
from scriptorium.services.ingest.upload import IngestService
from scriptorium.services.usage import UsageService


def get_env(request: Request) -> RuntimeEnv:
    return request.app.state.env


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.env.settings


def get_cache(request: Request) -> Cache:
    return request.app.state.cache


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth


def get_ingest_service(request: Request) -> IngestService:
    return request.app.state.ingest


def get_usage_service(request: Request) -> UsageService:
    return request.app.state.usage


def get_analysis_orchestrator(request: Request) -> AnalysisOrchestrator:
    return request.app.state.analysis


def get_asset_orchestrator(request: Request) -> AssetOrchestrator:
    return request.app.state.assets


def get_principal(request: Request) -> User | None:
    # Populated by the middleware; absent or invalid sessions leave it None.
    return getattr(request.state, "principal", None)


def require_auth(principal: User | None = Depends(get_principal)) -> User:
    if principal is None:
        raise AuthError("Authentication required")
    return principal


def require_admin(principal: User = Depends(require_auth)) -> User:
    if principal.role != "admin":
        raise AuthorizationError("Admin access required")
    return principal
