from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from scriptorium.core.config import Settings
from scriptorium.core.errors import UpstreamError, ValidationError
from scriptorium.services.resilience import RetryPolicy, retry_async


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str
    # Tag used by tests and provider dashboards to group sends.
    category: str = "transactional"


class EmailSender(Protocol):
    async def send(self, message: EmailMessage) -> None: ...


@dataclass
class OutboxEmailSender:
    """Keeps sent messages in memory; used by the memory substrate and tests."""

    sent: list[EmailMessage] = field(default_factory=list)

    async def send(self, message: EmailMessage) -> None:
        self.sent.append(message)
        logger.info("email_queued_outbox category=%s", message.category)

    def last_to(self, address: str) -> EmailMessage | None:
        for message in reversed(self.sent):
            if message.to == address:
                return message
        return None


class HttpEmailSender:
    def __init__(
        self,
        *,
        api_url: str,
        api_key: str,
        sender: str,
        client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._api_url = api_url
        self._api_key = api_key
        self._sender = sender
        self._client = client
        self._retry_policy = retry_policy or RetryPolicy(timeout_s=10.0, max_attempts=3, backoff_ms=200)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per sender for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._retry_policy.timeout_s)
        return self._client

    async def send(self, message: EmailMessage) -> None:
        await retry_async(lambda: self._post(message), policy=self._retry_policy)

    async def _post(self, message: EmailMessage) -> None:
        payload = {
            "from": self._sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
            "tags": [{"name": "category", "value": message.category}],
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            response = await self._get_client().post(self._api_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise UpstreamError("Email provider request failed") from exc
        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("email_send_unavailable status=%s category=%s", response.status_code, message.category)
            raise UpstreamError(f"Email provider error: {response.status_code}")
        if response.status_code >= 400:
            # Rejected payloads will not succeed on retry.
            logger.warning("email_send_rejected status=%s category=%s", response.status_code, message.category)
            raise ValidationError(f"Email provider rejected the message: {response.status_code}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def get_email_sender(settings: Settings) -> EmailSender:
    provider = settings.email_provider.lower()
    if provider == "outbox":
        return OutboxEmailSender()
    if provider == "http":
        if not settings.email_api_key:
            raise ValidationError("EMAIL_API_KEY is required for the http email provider")
        return HttpEmailSender(
            api_url=settings.email_api_url,
            api_key=settings.email_api_key,
            sender=settings.email_from,
            retry_policy=RetryPolicy(
                timeout_s=settings.email_timeout_s,
                max_attempts=settings.email_max_attempts,
                backoff_ms=settings.email_backoff_ms,
            ),
        )
    raise ValidationError(f"Unknown email provider {settings.email_provider!r}")


def verification_email(to: str, *, link: str) -> EmailMessage:
    return EmailMessage(
        to=to,
        subject="Verify your email address",
        html=f'<p>Welcome! Confirm your address to start uploading manuscripts.</p><p><a href="{link}">Verify email</a></p>',
        text=f"Welcome! Confirm your address: {link}",
        category="verify_email",
    )


def password_reset_email(to: str, *, link: str) -> EmailMessage:
    return EmailMessage(
        to=to,
        subject="Reset your password",
        html=f'<p>Someone asked to reset your password. The link expires in one hour.</p><p><a href="{link}">Reset password</a></p>',
        text=f"Reset your password (expires in one hour): {link}",
        category="password_reset",
    )


def password_changed_email(to: str) -> EmailMessage:
    return EmailMessage(
        to=to,
        subject="Your password was changed",
        html="<p>Your password was just changed. If this was not you, reset it immediately.</p>",
        text="Your password was just changed. If this was not you, reset it immediately.",
        category="password_changed",
    )


def analysis_complete_email(to: str, *, title: str, link: str) -> EmailMessage:
    safe_title = html.escape(title)
    return EmailMessage(
        to=to,
        subject=f"Your analysis for {title} is ready",
        html=f'<p>The analysis of <strong>{safe_title}</strong> is complete.</p><p><a href="{link}">View report</a></p>',
        text=f"The analysis of {title} is complete: {link}",
        category="analysis_complete",
    )
