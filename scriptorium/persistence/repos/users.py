from __future__ import annotations

from typing import Any

from scriptorium.runtime.relational import BoundStatement, Database


_USER_COLUMNS = (
    "id, email, full_name, password_hash, password_salt, password_iterations, "
    "role, tier, email_verified, created_at, updated_at, last_login_at"
)


async def create_user(
    db: Database,
    *,
    user_id: str,
    email: str,
    full_name: str | None,
    password_hash: str,
    password_salt: str,
    password_iterations: int,
    now: int,
    role: str = "user",
    tier: str = "free",
) -> None:
    # Unique email violations surface as StorageError(kind=conflict).
    await db.prepare(
        "INSERT INTO users (id, email, full_name, password_hash, password_salt, password_iterations, "
        "role, tier, email_verified, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)"
    ).bind(
        user_id,
        email,
        full_name,
        password_hash,
        password_salt,
        password_iterations,
        role,
        tier,
        now,
        now,
    ).run()


async def get_user_by_id(db: Database, user_id: str) -> dict[str, Any] | None:
    return await db.prepare(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?").bind(user_id).first()


async def get_user_by_email(db: Database, email: str) -> dict[str, Any] | None:
    # Emails are stored case-normalized.
    return await db.prepare(f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?").bind(email).first()


def mark_email_verified_statement(db: Database, user_id: str, *, now: int) -> BoundStatement:
    return db.prepare("UPDATE users SET email_verified = 1, updated_at = ? WHERE id = ?").bind(now, user_id)


async def mark_email_verified(db: Database, user_id: str, *, now: int) -> None:
    await mark_email_verified_statement(db, user_id, now=now).run()


async def update_password(
    db: Database,
    user_id: str,
    *,
    password_hash: str,
    password_salt: str,
    password_iterations: int,
    now: int,
) -> None:
    await update_password_statement(
        db,
        user_id,
        password_hash=password_hash,
        password_salt=password_salt,
        password_iterations=password_iterations,
        now=now,
    ).run()


async def record_login(db: Database, user_id: str, *, now: int) -> None:
    await db.prepare("UPDATE users SET last_login_at = ? WHERE id = ?").bind(now, user_id).run()


async def update_tier(db: Database, user_id: str, tier: str, *, now: int) -> None:
    await db.prepare("UPDATE users SET tier = ?, updated_at = ? WHERE id = ?").bind(tier, now, user_id).run()


def update_password_statement(
    db: Database,
    user_id: str,
    *,
    password_hash: str,
    password_salt: str,
    password_iterations: int,
    now: int,
) -> BoundStatement:
    # Batched with the token consumption that authorizes it.
    return db.prepare(
        "UPDATE users SET password_hash = ?, password_salt = ?, password_iterations = ?, updated_at = ? "
        "WHERE id = ?"
    ).bind(password_hash, password_salt, password_iterations, now, user_id)
