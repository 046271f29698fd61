from __future__ import annotations

from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Logical bucket names are fixed; physical names come from settings.
BUCKET_NAMES = ("manuscripts_raw", "manuscripts_processed", "marketing_assets", "backups")

SUBSTRATE_SERVER = "server"
SUBSTRATE_MEMORY = "memory"


class MissingConfigurationError(ValueError):
    """Required environment variables are absent for the selected substrate."""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "scriptorium"
    log_level: str = "INFO"
    # Deployment label surfaced in health output and logs.
    environment: str = "development"
    frontend_url: str = "http://localhost:3000"

    # Select which backends the runtime env wires: "server" or "memory".
    runtime_substrate: str = SUBSTRATE_SERVER

    database_url: str | None = None
    redis_url: str | None = None

    # S3-compatible object store credentials for the server substrate.
    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    # Physical bucket names per logical bucket.
    bucket_manuscripts_raw: str | None = None
    bucket_manuscripts_processed: str | None = None
    bucket_marketing_assets: str | None = None
    bucket_backups: str | None = None

    session_secret: str | None = None
    jwt_secret: str | None = None
    agent_api_key: str | None = None
    email_api_key: str | None = None

    # Bounded-retry connect policy applied when adapters start.
    connect_attempts: int = 5
    connect_backoff_ms: int = 200
    # Relational pool sizing for the server substrate.
    db_pool_size: int = 10
    db_max_overflow: int = 10
    # Log relational statements slower than this threshold.
    slow_query_ms: int = 500

    # Session lifetime and cookie flags.
    session_ttl_s: int = 7 * 24 * 3600
    session_sliding_refresh: bool = True
    session_cookie_name: str = "session_id"
    session_cookie_secure: bool = True
    # PBKDF2 cost; never below 100k.
    password_hash_iterations: int = 100_000
    # Verification and reset tokens expire after an hour.
    auth_token_ttl_s: int = 3600
    # Return verification tokens in the register response (test builds only).
    auth_expose_tokens: bool = False

    # Email delivery; "outbox" keeps messages in memory for tests and dev.
    email_provider: str = "outbox"
    email_api_url: str = "https://api.resend.com/emails"
    email_from: str = "Scriptorium <noreply@scriptorium.local>"
    # Per-send timeout and in-call retries for transient provider failures.
    email_timeout_s: float = 10.0
    email_max_attempts: int = 3
    email_backoff_ms: int = 200

    # Comma-delimited allowed CORS origins; the first one is the fallback echo.
    cors_allowed_origins: str = "http://localhost:3000,http://localhost:8000"

    # Toggle rate limiting and pick behavior when KV is unavailable.
    rate_limit_enabled: bool = True
    rl_fail_mode: str = "open"
    rl_general_limit: int = 100
    rl_general_window_s: int = 60
    rl_login_limit: int = 5
    rl_login_window_s: int = 60
    rl_register_limit: int = 3
    rl_register_window_s: int = 3600
    rl_password_reset_limit: int = 3
    rl_password_reset_window_s: int = 3600
    rl_upload_limit: int = 10
    rl_upload_window_s: int = 3600
    # Per-principal limits by tier for the default and upload classes.
    rl_user_free_default: int = 60
    rl_user_pro_default: int = 300
    rl_user_enterprise_default: int = 1000
    rl_user_default_window_s: int = 60
    rl_user_free_upload: int = 10
    rl_user_pro_upload: int = 50
    rl_user_enterprise_upload: int = 200
    rl_user_upload_window_s: int = 3600
    # Paths that never pass through the limiter.
    rl_bypass_prefixes: str = "/payments/webhook,/static,/health"

    # Monthly manuscript limits by tier; 0 means unlimited.
    quota_free_monthly: int = 1
    quota_pro_monthly: int = 10
    quota_enterprise_monthly: int = 0

    # Upload validation.
    max_upload_bytes: int = 50 * 1024 * 1024
    report_id_ttl_s: int = 30 * 24 * 3600
    report_id_mint_attempts: int = 3
    analysis_status_ttl_s: int = 7 * 24 * 3600

    # Cache TTLs in seconds.
    cache_user_ttl_s: int = 3600
    cache_manuscript_ttl_s: int = 900
    cache_list_ttl_s: int = 300
    cache_analysis_result_ttl_s: int = 86400
    cache_analysis_status_ttl_s: int = 3600
    cache_admin_stats_ttl_s: int = 300
    cache_cost_ttl_s: int = 3600

    # Queue names and delivery policy.
    analysis_queue_name: str = "analysis-queue"
    asset_queue_name: str = "asset-queue"
    queue_max_attempts: int = 3
    queue_retry_base_s: int = 5
    queue_batch_size: int = 10

    # Wall-clock budgets per analysis stage and per asset agent.
    stage_timeout_s: int = 600
    asset_agent_timeout_s: int = 300

    # Agent provider selection: "fake" for deterministic runs, "http" for a remote agent service.
    agent_provider: str = "fake"
    agent_base_url: str = "http://localhost:8100"

    # Circuit breaker thresholds for agent calls.
    cb_window_s: int = 60
    cb_min_calls: int = 5
    cb_failure_ratio: float = 0.5
    cb_open_seconds: int = 30

    # Worker heartbeat cadence and staleness threshold.
    worker_heartbeat_interval_s: int = 10
    worker_heartbeat_stale_after_s: int = 60

    @model_validator(mode="after")
    def _require_server_variables(self) -> "Settings":
        # Fail at startup instead of at first use when the server substrate lacks config.
        if self.password_hash_iterations < 100_000:
            raise MissingConfigurationError("PASSWORD_HASH_ITERATIONS must be at least 100000")
        if self.runtime_substrate != SUBSTRATE_SERVER:
            return self
        required = {
            "DATABASE_URL": self.database_url,
            "REDIS_URL": self.redis_url,
            "S3_ENDPOINT_URL": self.s3_endpoint_url,
            "S3_REGION": self.s3_region,
            "S3_ACCESS_KEY_ID": self.s3_access_key_id,
            "S3_SECRET_ACCESS_KEY": self.s3_secret_access_key,
            "BUCKET_MANUSCRIPTS_RAW": self.bucket_manuscripts_raw,
            "BUCKET_MANUSCRIPTS_PROCESSED": self.bucket_manuscripts_processed,
            "BUCKET_MARKETING_ASSETS": self.bucket_marketing_assets,
            "BUCKET_BACKUPS": self.bucket_backups,
            "SESSION_SECRET": self.session_secret,
        }
        missing = sorted(name for name, value in required.items() if not value)
        if missing:
            raise MissingConfigurationError(
                "Missing required environment variables: " + ", ".join(missing)
            )
        return self

    def bucket_name(self, logical: str) -> str:
        # Resolve the physical bucket for a logical name, defaulting to the logical name.
        return getattr(self, f"bucket_{logical}", None) or logical

    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allowed_origins.split(",") if origin.strip()]

    def rate_limit_bypass_prefixes(self) -> tuple[str, ...]:
        return tuple(p.strip() for p in self.rl_bypass_prefixes.split(",") if p.strip())


@lru_cache
def get_settings() -> Settings:
    return Settings()
