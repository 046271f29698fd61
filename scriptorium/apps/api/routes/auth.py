from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field

from scriptorium.apps.api.deps import get_auth_service, get_settings_dep, require_auth
from scriptorium.apps.api.rate_limit import client_ip
from scriptorium.core.config import Settings
from scriptorium.domain.models import User
from scriptorium.services.auth.service import AuthService


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=1024)
    full_name: str | None = Field(default=None, alias="fullName", max_length=200)

    model_config = {"populate_by_name": True}


class LoginRequest(BaseModel):
    email: str = Field(max_length=320)
    password: str = Field(max_length=1024)


class PasswordResetRequest(BaseModel):
    email: str = Field(max_length=320)


class PasswordResetBody(BaseModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=1, max_length=1024)


def _set_session_cookie(response: Response, settings: Settings, token: str, ttl_s: int) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=ttl_s,
        path="/",
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )


@router.post("/register", status_code=201)
async def register(
    body: RegisterRequest,
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings_dep),
) -> dict:
    registration = await auth.register(body.email, body.password, full_name=body.full_name)
    return registration.public(expose_token=settings.auth_expose_tokens)


@router.get("/verify-email")
async def verify_email(token: str = "", auth: AuthService = Depends(get_auth_service)) -> dict:
    user_id = await auth.verify_email(token)
    return {"verified": True, "userId": user_id}


@router.post("/login")
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings_dep),
) -> dict:
    result = await auth.login(
        body.email,
        body.password,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _set_session_cookie(response, settings, result.token, result.ttl_s)
    return {"user": result.user.public(), "expiresIn": result.ttl_s}


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings_dep),
) -> dict:
    await auth.logout(getattr(request.state, "session_token", None))
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )
    return {"loggedOut": True}


@router.post("/password-reset-request")
async def password_reset_request(body: PasswordResetRequest, auth: AuthService = Depends(get_auth_service)) -> dict:
    await auth.request_password_reset(body.email)
    return {"message": "If that address is registered, a reset link has been sent."}


@router.get("/verify-reset-token")
async def verify_reset_token(token: str = "", auth: AuthService = Depends(get_auth_service)) -> dict:
    return {"valid": await auth.verify_reset_token(token)}


@router.post("/password-reset")
async def password_reset(body: PasswordResetBody, auth: AuthService = Depends(get_auth_service)) -> dict:
    await auth.reset_password(body.token, body.password)
    return {"reset": True}


@router.get("/me")
async def me(principal: User = Depends(require_auth)) -> dict:
    return {"user": principal.public()}
