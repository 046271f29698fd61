from __future__ import annotations

import json

import httpx
import pytest

from scriptorium.core.config import SUBSTRATE_MEMORY, Settings
from scriptorium.core.errors import UpstreamError, ValidationError
from scriptorium.services.email import (
    HttpEmailSender,
    OutboxEmailSender,
    get_email_sender,
    password_reset_email,
)
from scriptorium.services.resilience import RetryPolicy


_POLICY = RetryPolicy(timeout_s=1.0, max_attempts=3, backoff_ms=1)


def _sender(handler) -> HttpEmailSender:  # noqa: ANN001
    return HttpEmailSender(
        api_url="http://mail.local/emails",
        api_key="mail-key",
        sender="Scriptorium <noreply@scriptorium.local>",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        retry_policy=_POLICY,
    )


@pytest.mark.asyncio
async def test_transient_provider_errors_are_retried() -> None:
    seen: list[httpx.Request] = []
    statuses = iter([503, 429, 200])

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(next(statuses), json={})

    sender = _sender(_handler)
    await sender.send(password_reset_email("a@b.co", link="https://app.local/reset?token=t"))

    assert len(seen) == 3
    body = json.loads(seen[-1].content)
    assert body["to"] == ["a@b.co"]
    assert body["tags"] == [{"name": "category", "value": "password_reset"}]
    assert seen[-1].headers["Authorization"] == "Bearer mail-key"
    await sender.close()


@pytest.mark.asyncio
async def test_rejected_messages_are_not_retried() -> None:
    calls = {"count": 0}

    def _handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(422, json={"message": "invalid recipient"})

    with pytest.raises(ValidationError):
        await _sender(_handler).send(password_reset_email("a@b.co", link="x"))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_outage_gives_up_after_max_attempts() -> None:
    calls = {"count": 0}

    def _handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamError):
        await _sender(_handler).send(password_reset_email("a@b.co", link="x"))
    assert calls["count"] == _POLICY.max_attempts


def test_email_sender_factory() -> None:
    outbox = get_email_sender(Settings(_env_file=None, runtime_substrate=SUBSTRATE_MEMORY))
    assert isinstance(outbox, OutboxEmailSender)

    http = get_email_sender(
        Settings(
            _env_file=None,
            runtime_substrate=SUBSTRATE_MEMORY,
            email_provider="http",
            email_api_key="mail-key",
            email_max_attempts=5,
        )
    )
    assert isinstance(http, HttpEmailSender)
    assert http._retry_policy.max_attempts == 5

    with pytest.raises(ValidationError):
        get_email_sender(Settings(_env_file=None, runtime_substrate=SUBSTRATE_MEMORY, email_provider="http"))
