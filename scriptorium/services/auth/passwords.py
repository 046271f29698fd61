from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass


SALT_BYTES = 16
DERIVED_KEY_BYTES = 32
MIN_ITERATIONS = 100_000
PASSWORD_MIN_LENGTH = 8

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


@dataclass(frozen=True)
class PasswordVerifier:
    # Stored per principal; all three fields are needed to re-derive.
    salt: str
    iterations: int
    hash: str


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email))


def password_problems(password: str) -> list[str]:
    """Return the unmet strength rules; an empty list means the password is acceptable."""
    problems: list[str] = []
    if not password or len(password) < PASSWORD_MIN_LENGTH:
        problems.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
        return problems
    if not re.search(r"[A-Z]", password):
        problems.append("Password must contain an uppercase letter")
    if not re.search(r"[a-z]", password):
        problems.append("Password must contain a lowercase letter")
    if not re.search(r"[0-9]", password):
        problems.append("Password must contain a number")
    if not _SPECIAL_RE.search(password):
        problems.append("Password must contain a special character")
    return problems


def _derive(password: str, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations, dklen=DERIVED_KEY_BYTES)


def hash_password(password: str, *, iterations: int = MIN_ITERATIONS) -> PasswordVerifier:
    if iterations < MIN_ITERATIONS:
        raise ValueError(f"PBKDF2 iterations must be at least {MIN_ITERATIONS}")
    salt = secrets.token_bytes(SALT_BYTES)
    derived = _derive(password, salt, iterations)
    return PasswordVerifier(
        salt=base64.b64encode(salt).decode("ascii"),
        iterations=iterations,
        hash=base64.b64encode(derived).decode("ascii"),
    )


def verify_password(password: str, verifier: PasswordVerifier) -> bool:
    # Re-derive with the stored parameters and compare in constant time.
    try:
        salt = base64.b64decode(verifier.salt)
        expected = base64.b64decode(verifier.hash)
    except ValueError:
        return False
    candidate = _derive(password, salt, verifier.iterations)
    return hmac.compare_digest(candidate, expected)


# Verified against when the email is unknown so both failure paths cost one derivation.
_DUMMY_VERIFIER = hash_password("dummy-password-for-timing", iterations=MIN_ITERATIONS)


def burn_verification(password: str) -> None:
    verify_password(password, _DUMMY_VERIFIER)


# PBKDF2 at this cost takes tens of milliseconds; request handlers go through these
# so the derivation runs on a worker thread instead of the event loop.
async def hash_password_async(password: str, *, iterations: int = MIN_ITERATIONS) -> PasswordVerifier:
    return await asyncio.to_thread(hash_password, password, iterations=iterations)


async def verify_password_async(password: str, verifier: PasswordVerifier) -> bool:
    return await asyncio.to_thread(verify_password, password, verifier)


async def burn_verification_async(password: str) -> None:
    await asyncio.to_thread(burn_verification, password)
