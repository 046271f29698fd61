from __future__ import annotations

import pytest

from scriptorium.core.config import SUBSTRATE_MEMORY, SUBSTRATE_SERVER, Settings


_SERVER_VALUES = {
    "database_url": "postgresql+asyncpg://app:app@db:5432/scriptorium",
    "redis_url": "redis://redis:6379/0",
    "s3_endpoint_url": "http://minio:9000",
    "s3_region": "us-east-1",
    "s3_access_key_id": "key",
    "s3_secret_access_key": "secret",
    "bucket_manuscripts_raw": "raw",
    "bucket_manuscripts_processed": "processed",
    "bucket_marketing_assets": "assets",
    "bucket_backups": "backups",
    "session_secret": "session-secret",
}


def test_server_substrate_accepts_complete_configuration() -> None:
    settings = Settings(_env_file=None, runtime_substrate=SUBSTRATE_SERVER, **_SERVER_VALUES)
    assert settings.bucket_name("manuscripts_raw") == "raw"


def test_server_substrate_names_every_missing_variable() -> None:
    values = dict(_SERVER_VALUES, redis_url=None, session_secret=None)
    with pytest.raises(ValueError) as excinfo:
        Settings(_env_file=None, runtime_substrate=SUBSTRATE_SERVER, **values)
    message = str(excinfo.value)
    assert "REDIS_URL" in message
    assert "SESSION_SECRET" in message
    assert "DATABASE_URL" not in message


def test_memory_substrate_needs_no_backends() -> None:
    settings = Settings(_env_file=None, runtime_substrate=SUBSTRATE_MEMORY)
    assert settings.bucket_name("manuscripts_raw") == "manuscripts_raw"


def test_iteration_floor_is_enforced() -> None:
    with pytest.raises(ValueError, match="PASSWORD_HASH_ITERATIONS"):
        Settings(_env_file=None, runtime_substrate=SUBSTRATE_MEMORY, password_hash_iterations=10_000)


def test_list_settings_are_split() -> None:
    settings = Settings(
        _env_file=None,
        runtime_substrate=SUBSTRATE_MEMORY,
        cors_allowed_origins="https://app.example, http://localhost:3000,",
    )
    assert settings.cors_origins() == ["https://app.example", "http://localhost:3000"]
    assert "/health" in settings.rate_limit_bypass_prefixes()
