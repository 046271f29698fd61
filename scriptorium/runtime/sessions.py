from __future__ import annotations

import hashlib
import hmac
import logging
import secrets

from pydantic import BaseModel

from scriptorium.runtime.clock import Clock, system_clock
from scriptorium.runtime.kv import KVStore, put_json


logger = logging.getLogger(__name__)

_SESSION_PREFIX = "session:"
# 32 random bytes, URL-safe encoded (256 bits).
_TOKEN_BYTES = 32


class SessionRecord(BaseModel):
    principal_id: str
    issued_at: float
    expires_at: float
    ttl_s: int
    ip: str | None = None
    user_agent: str | None = None


class SessionStore:
    """Opaque session tokens bound to records in KV.

    Only a keyed digest of the token is used as the KV key, so a leaked KV dump
    cannot be replayed as cookies.
    """

    def __init__(
        self,
        kv: KVStore,
        *,
        secret: str,
        clock: Clock | None = None,
        sliding_refresh: bool = True,
    ) -> None:
        self._kv = kv
        self._secret = secret.encode("utf-8")
        self._clock = clock or system_clock
        self._sliding_refresh = sliding_refresh

    def _key(self, token: str) -> str:
        digest = hmac.new(self._secret, token.encode("utf-8"), hashlib.sha256).hexdigest()
        return f"{_SESSION_PREFIX}{digest}"

    async def create(
        self,
        principal_id: str,
        ttl_s: int,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        token = secrets.token_urlsafe(_TOKEN_BYTES)
        now = self._clock()
        record = SessionRecord(
            principal_id=principal_id,
            issued_at=now,
            expires_at=now + ttl_s,
            ttl_s=ttl_s,
            ip=ip,
            user_agent=user_agent,
        )
        await put_json(self._kv, self._key(token), record.model_dump(), expiration_ttl=ttl_s)
        return token

    async def read(self, token: str) -> SessionRecord | None:
        if not token:
            return None
        raw = await self._kv.get(self._key(token), as_json=True)
        if not isinstance(raw, dict):
            return None
        try:
            record = SessionRecord.model_validate(raw)
        except ValueError:
            logger.warning("session_record_invalid")
            return None
        now = self._clock()
        if record.expires_at <= now:
            await self._kv.delete(self._key(token))
            return None
        if self._sliding_refresh and (record.expires_at - now) < record.ttl_s / 2:
            # Extend once half the lifetime has elapsed.
            record = record.model_copy(update={"expires_at": now + record.ttl_s})
            await put_json(self._kv, self._key(token), record.model_dump(), expiration_ttl=record.ttl_s)
        return record

    async def destroy(self, token: str) -> None:
        if token:
            await self._kv.delete(self._key(token))
