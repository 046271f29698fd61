from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import uuid4

from scriptorium.core.config import Settings
from scriptorium.core.errors import STORAGE_CONFLICT, AuthError, StorageError, ValidationError
from scriptorium.domain.models import User
from scriptorium.persistence.repos import auth_tokens as tokens_repo
from scriptorium.persistence.repos import users as users_repo
from scriptorium.runtime.clock import Clock, system_clock
from scriptorium.runtime.relational import Database
from scriptorium.runtime.sessions import SessionStore
from scriptorium.services.auth.passwords import (
    PasswordVerifier,
    burn_verification_async,
    hash_password_async,
    is_valid_email,
    normalize_email,
    password_problems,
    verify_password_async,
)
from scriptorium.services.auth.tokens import generate_token, hash_token
from scriptorium.services.cache import Cache, CacheKeys, invalidate_user
from scriptorium.services.email import (
    EmailMessage,
    EmailSender,
    password_changed_email,
    password_reset_email,
    verification_email,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Registration:
    user_id: str
    # Raw verification token; only returned to callers when tokens are exposed.
    verification_token: str

    def public(self, *, expose_token: bool) -> dict[str, str]:
        payload = {"userId": self.user_id}
        if expose_token:
            payload["verificationToken"] = self.verification_token
        return payload


@dataclass(frozen=True)
class LoginResult:
    token: str
    user: User
    ttl_s: int


def _verifier_from_row(row: dict) -> PasswordVerifier:
    return PasswordVerifier(
        salt=row["password_salt"],
        iterations=int(row["password_iterations"]),
        hash=row["password_hash"],
    )


class AuthService:
    """Registration, login, email verification and password reset over the runtime env."""

    def __init__(
        self,
        *,
        db: Database,
        sessions: SessionStore,
        cache: Cache,
        email: EmailSender,
        settings: Settings,
        clock: Clock | None = None,
    ) -> None:
        self._db = db
        self._sessions = sessions
        self._cache = cache
        self._email = email
        self._settings = settings
        self._clock = clock or system_clock

    def _now(self) -> int:
        return int(self._clock())

    async def _send(self, message: EmailMessage) -> None:
        try:
            await self._email.send(message)
        except Exception as exc:  # noqa: BLE001 - mail delivery never fails the auth flow
            logger.warning("auth_email_failed category=%s", message.category, exc_info=exc)

    async def _issue_token(self, user_id: str, purpose: str) -> str:
        raw = generate_token()
        now = self._now()
        await tokens_repo.create_token(
            self._db,
            token_id=str(uuid4()),
            user_id=user_id,
            purpose=purpose,
            token_hash=hash_token(raw),
            expires_at=now + self._settings.auth_token_ttl_s,
            now=now,
        )
        return raw

    async def register(self, email: str, password: str, *, full_name: str | None = None) -> Registration:
        email = normalize_email(email or "")
        if not is_valid_email(email):
            raise AuthError("Invalid email address", reason="invalid_email")
        problems = password_problems(password or "")
        if problems:
            raise AuthError(problems[0], reason="weak_password", details={"requirements": problems})
        if await users_repo.get_user_by_email(self._db, email) is not None:
            raise AuthError("An account with this email already exists", reason="email_taken")

        verifier = await hash_password_async(password, iterations=self._settings.password_hash_iterations)
        user_id = str(uuid4())
        try:
            await users_repo.create_user(
                self._db,
                user_id=user_id,
                email=email,
                full_name=full_name,
                password_hash=verifier.hash,
                password_salt=verifier.salt,
                password_iterations=verifier.iterations,
                now=self._now(),
            )
        except StorageError as exc:
            # A concurrent registration won the unique email index.
            if exc.storage_kind == STORAGE_CONFLICT:
                raise AuthError("An account with this email already exists", reason="email_taken") from exc
            raise
        token = await self._issue_token(user_id, tokens_repo.PURPOSE_VERIFY_EMAIL)
        link = f"{self._settings.frontend_url}/verify-email?token={token}"
        await self._send(verification_email(email, link=link))
        logger.info("user_registered user_id=%s", user_id)
        return Registration(user_id=user_id, verification_token=token)

    async def verify_email(self, token: str) -> str:
        if not token:
            raise ValidationError("Verification token is required")
        row = await tokens_repo.get_active_token(
            self._db, token_hash=hash_token(token), purpose=tokens_repo.PURPOSE_VERIFY_EMAIL, now=self._now()
        )
        if row is None:
            raise ValidationError("Invalid or expired verification token")
        now = self._now()
        await self._db.batch(
            [
                tokens_repo.consume_token_statement(self._db, row["id"], now=now),
                users_repo.mark_email_verified_statement(self._db, row["user_id"], now=now),
            ]
        )
        await invalidate_user(self._cache, row["user_id"])
        logger.info("email_verified user_id=%s", row["user_id"])
        return row["user_id"]

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> LoginResult:
        email = normalize_email(email or "")
        row = await users_repo.get_user_by_email(self._db, email) if email else None
        if row is None:
            # Spend the same derivation cost as a real check.
            await burn_verification_async(password or "")
            raise AuthError("Invalid email or password", reason="invalid_credentials")
        if not await verify_password_async(password or "", _verifier_from_row(row)):
            raise AuthError("Invalid email or password", reason="invalid_credentials")

        now = self._now()
        await users_repo.record_login(self._db, row["id"], now=now)
        ttl_s = self._settings.session_ttl_s
        token = await self._sessions.create(row["id"], ttl_s, ip=ip, user_agent=user_agent)
        row = {**row, "last_login_at": now}
        logger.info("user_login user_id=%s", row["id"])
        return LoginResult(token=token, user=User.from_row(row), ttl_s=ttl_s)

    async def logout(self, token: str | None) -> None:
        if token:
            await self._sessions.destroy(token)

    async def request_password_reset(self, email: str) -> None:
        # Same outcome whether or not the address is registered.
        email = normalize_email(email or "")
        if not is_valid_email(email):
            return
        row = await users_repo.get_user_by_email(self._db, email)
        if row is None:
            logger.info("password_reset_unknown_email")
            return
        await tokens_repo.revoke_open_tokens(
            self._db, row["id"], tokens_repo.PURPOSE_PASSWORD_RESET, now=self._now()
        )
        token = await self._issue_token(row["id"], tokens_repo.PURPOSE_PASSWORD_RESET)
        link = f"{self._settings.frontend_url}/reset-password?token={token}"
        await self._send(password_reset_email(email, link=link))
        logger.info("password_reset_requested user_id=%s", row["id"])

    async def verify_reset_token(self, token: str) -> bool:
        if not token:
            return False
        row = await tokens_repo.get_active_token(
            self._db, token_hash=hash_token(token), purpose=tokens_repo.PURPOSE_PASSWORD_RESET, now=self._now()
        )
        return row is not None

    async def reset_password(self, token: str, new_password: str) -> None:
        if not token:
            raise ValidationError("Reset token is required")
        problems = password_problems(new_password or "")
        if problems:
            raise AuthError(problems[0], reason="weak_password", details={"requirements": problems})
        now = self._now()
        row = await tokens_repo.get_active_token(
            self._db, token_hash=hash_token(token), purpose=tokens_repo.PURPOSE_PASSWORD_RESET, now=now
        )
        if row is None:
            raise ValidationError("Invalid or expired reset token")

        verifier = await hash_password_async(new_password, iterations=self._settings.password_hash_iterations)
        await self._db.batch(
            [
                tokens_repo.consume_token_statement(self._db, row["id"], now=now),
                users_repo.update_password_statement(
                    self._db,
                    row["user_id"],
                    password_hash=verifier.hash,
                    password_salt=verifier.salt,
                    password_iterations=verifier.iterations,
                    now=now,
                ),
            ]
        )
        await invalidate_user(self._cache, row["user_id"])
        user_row = await users_repo.get_user_by_id(self._db, row["user_id"])
        if user_row is not None:
            await self._send(password_changed_email(user_row["email"]))
        logger.info("password_reset_completed user_id=%s", row["user_id"])

    async def load_principal(self, user_id: str) -> User | None:
        """Resolve a principal through the ``user:<id>`` cache."""

        async def _fetch() -> dict | None:
            row = await users_repo.get_user_by_id(self._db, user_id)
            return User.from_row(row).model_dump() if row is not None else None

        cached = await self._cache.get_or_fetch(CacheKeys.user(user_id), self._cache.ttl.user, _fetch)
        if cached is None:
            return None
        return User.model_validate(cached)
