from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from scriptorium.core.errors import ScriptoriumError, ValidationError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    410: "gone",
    413: "payload_too_large",
    415: "unsupported_format",
    429: "rate_limited",
    500: "internal_error",
    503: "upstream_error",
}


def get_request_id(request: Request) -> str:
    # Reuse the id assigned by the middleware; assign one when a handler runs outside it.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    generated = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = generated
    return generated


def error_payload(request: Request, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": code, "message": message, "requestId": get_request_id(request)}
    if details:
        payload.update(details)
    return payload


def render_error(request: Request, exc: ScriptoriumError) -> JSONResponse:
    payload = exc.to_payload()
    payload["requestId"] = get_request_id(request)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers or None)


def render_internal_error(request: Request, exc: BaseException) -> JSONResponse:
    # Opaque to the client; the correlation id ties the response to the log entry.
    request_id = get_request_id(request)
    logger.error(
        "unhandled_request_error request_id=%s method=%s path=%s",
        request_id,
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return JSONResponse(
        content=error_payload(request, code="internal_error", message="Internal server error"),
        status_code=500,
    )


async def scriptorium_exception_handler(request: Request, exc: ScriptoriumError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(
            "request_failed request_id=%s kind=%s status=%s",
            get_request_id(request),
            exc.kind,
            exc.status_code,
            exc_info=exc,
        )
    return render_error(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Schema failures share the 400 ValidationError shape.
    fields = [".".join(str(part) for part in err.get("loc", ()) if part != "body") for err in exc.errors()]
    error = ValidationError("Invalid request", details={"fields": [f for f in fields if f]})
    return render_error(request, error)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _DEFAULT_ERROR_CODES.get(exc.status_code, "error")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        content=error_payload(request, code=code, message=message),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )
