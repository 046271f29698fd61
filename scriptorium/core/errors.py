from __future__ import annotations

from typing import Any


class ScriptoriumError(Exception):
    """Base error carrying a stable code, HTTP status and safe message."""

    code = "internal_error"
    status_code = 500
    transient = False

    default_message = "Request failed"

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        self.headers: dict[str, str] = {}
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def with_headers(self, headers: dict[str, str]) -> "ScriptoriumError":
        self.headers.update(headers)
        return self

    def to_payload(self) -> dict[str, Any]:
        # Flatten details beside the code so clients read e.g. upgradeRequired directly.
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(ScriptoriumError):
    """Input failed schema or size/type constraints."""

    code = "validation_error"
    status_code = 400
    default_message = "Invalid request"


# HTTP status per registration reason; other reasons stay 401.
_AUTH_REASON_STATUS = {"email_taken": 409, "weak_password": 400, "invalid_email": 400}


class AuthError(ScriptoriumError):
    """Missing or invalid credentials or session."""

    code = "unauthorized"
    status_code = 401
    default_message = "Authentication required"

    def __init__(self, message: str | None = None, *, reason: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        # Registration failures name a reason (email_taken, weak_password, invalid_email).
        self.reason = reason
        if reason:
            self.code = reason
            self.status_code = _AUTH_REASON_STATUS.get(reason, self.status_code)


class AuthorizationError(ScriptoriumError):
    """Authenticated but not permitted."""

    code = "forbidden"
    status_code = 403
    default_message = "Not permitted"


class NotFoundError(ScriptoriumError):
    """Resource absent or not owned by the caller."""

    code = "not_found"
    status_code = 404
    default_message = "Not found"


class ConflictError(ScriptoriumError):
    """Uniqueness or state conflict."""

    code = "conflict"
    status_code = 409
    default_message = "Conflict"


class QuotaExceeded(ScriptoriumError):
    """Tier limit reached; carries an upgrade hint."""

    code = "quota_exceeded"
    status_code = 402
    default_message = "Monthly manuscript limit reached"


class GoneError(ScriptoriumError):
    """Artifact expired."""

    code = "gone"
    status_code = 410
    default_message = "This resource has expired"


class PayloadTooLarge(ScriptoriumError):
    code = "payload_too_large"
    status_code = 413
    default_message = "File exceeds the upload size limit"


class UnsupportedFormat(ScriptoriumError):
    code = "unsupported_format"
    status_code = 415
    default_message = "File type not supported"


class RateLimitError(ScriptoriumError):
    """Too many requests for a rate-limit scope."""

    code = "rate_limited"
    status_code = 429
    default_message = "Too many requests"

    def __init__(self, message: str | None = None, *, retry_after: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(0, int(retry_after))
        self.details.setdefault("retryAfter", self.retry_after)


class UpstreamError(ScriptoriumError):
    """Agent, payment or email provider failed."""

    code = "upstream_error"
    status_code = 503
    transient = True
    default_message = "Upstream service unavailable"


class UpstreamTimeoutError(ScriptoriumError):
    """Stage or upstream call exceeded its wall-clock budget."""

    code = "timeout"
    status_code = 504
    transient = True
    default_message = "Operation timed out"


class InternalError(ScriptoriumError):
    code = "internal_error"
    status_code = 500
    transient = True
    default_message = "Internal server error"


STORAGE_NOT_FOUND = "not_found"
STORAGE_CONFLICT = "conflict"
STORAGE_TRANSPORT = "transport"

_STORAGE_STATUS = {STORAGE_NOT_FOUND: 404, STORAGE_CONFLICT: 409, STORAGE_TRANSPORT: 503}


class StorageError(ScriptoriumError):
    """Relational backend failure with the driver exception kept as the cause."""

    code = "storage_error"
    default_message = "Storage unavailable"

    def __init__(self, kind: str, message: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.storage_kind = kind
        self.status_code = _STORAGE_STATUS.get(kind, 503)
        self.transient = kind == STORAGE_TRANSPORT


def is_transient(exc: BaseException) -> bool:
    # Unknown failures retry; typed errors declare their own class.
    if isinstance(exc, ScriptoriumError):
        return exc.transient
    return True
