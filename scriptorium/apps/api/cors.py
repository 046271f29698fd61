from __future__ import annotations

from starlette.requests import Request
from starlette.responses import Response

from scriptorium.core.config import Settings


ALLOWED_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
ALLOWED_HEADERS = "Content-Type, Authorization, X-Request-Id"
PREFLIGHT_MAX_AGE = "86400"

SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def allowed_origin(request: Request, settings: Settings) -> str:
    """Echo the caller's origin when configured, else the first configured origin."""
    origins = settings.cors_origins()
    origin = request.headers.get("origin")
    if origin and origin in origins:
        return origin
    return origins[0] if origins else ""


def cors_headers(request: Request, settings: Settings) -> dict[str, str]:
    origin = allowed_origin(request, settings)
    if not origin:
        return {}
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Credentials": "true",
        "Vary": "Origin",
    }


def preflight_response(request: Request, settings: Settings) -> Response:
    headers = cors_headers(request, settings)
    headers.update(
        {
            "Access-Control-Allow-Methods": ALLOWED_METHODS,
            "Access-Control-Allow-Headers": ALLOWED_HEADERS,
            "Access-Control-Max-Age": PREFLIGHT_MAX_AGE,
        }
    )
    return Response(status_code=204, headers=headers)
