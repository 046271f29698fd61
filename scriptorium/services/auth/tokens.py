from __future__ import annotations

import hashlib
import secrets


def generate_token() -> str:
    # 32 random bytes URL-safe encoded; only the digest is persisted.
    return secrets.token_urlsafe(32)


def hash_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()
