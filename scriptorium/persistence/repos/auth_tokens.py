from __future__ import annotations

from typing import Any

from scriptorium.runtime.relational import BoundStatement, Database


PURPOSE_VERIFY_EMAIL = "verify_email"
PURPOSE_PASSWORD_RESET = "password_reset"


async def create_token(
    db: Database,
    *,
    token_id: str,
    user_id: str,
    purpose: str,
    token_hash: str,
    expires_at: int,
    now: int,
) -> None:
    await db.prepare(
        "INSERT INTO auth_tokens (id, user_id, purpose, token_hash, expires_at, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?)"
    ).bind(token_id, user_id, purpose, token_hash, expires_at, now).run()


async def get_active_token(
    db: Database, *, token_hash: str, purpose: str, now: int
) -> dict[str, Any] | None:
    # Used and expired tokens are indistinguishable from unknown ones.
    return await db.prepare(
        "SELECT id, user_id, purpose, expires_at, used_at FROM auth_tokens "
        "WHERE token_hash = ? AND purpose = ? AND used_at IS NULL AND expires_at > ?"
    ).bind(token_hash, purpose, now).first()


def consume_token_statement(db: Database, token_id: str, *, now: int) -> BoundStatement:
    # Returned without running so callers can batch it with the write it authorizes.
    return db.prepare("UPDATE auth_tokens SET used_at = ? WHERE id = ? AND used_at IS NULL").bind(now, token_id)


async def revoke_open_tokens(db: Database, user_id: str, purpose: str, *, now: int) -> None:
    await db.prepare(
        "UPDATE auth_tokens SET used_at = ? WHERE user_id = ? AND purpose = ? AND used_at IS NULL"
    ).bind(now, user_id, purpose).run()
