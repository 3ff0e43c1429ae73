# chatrelay/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    # Database
    expected_schema_version: str = "001_init.sql"  # Update on deploy when new migrations are added
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5

    # Shared cache (dedup markers + conversation creation locks)
    # "postgres" - cache_entries table, shared across processes
    # "memory"   - per-process dict, single instance deployments only
    # "none"     - no cache: dedup disabled, locks always granted
    cache_backend: Literal["postgres", "memory", "none"] = "postgres"

    # Channel sessions
    sessions_dir: str = ".channel_sessions"  # One artifact directory per session key
    bridge_url: str = "ws://localhost:3001"  # Protocol bridge websocket
    bridge_token: str | None = None
    init_timeout_seconds: float = 120.0
    qr_timeout_seconds: float = 30.0
    qr_poll_interval_seconds: float = 0.5
    session_settle_delay_seconds: float = 0.5  # Wait after purging artifacts before re-initializing

    # Relay
    dedup_ttl_seconds: int = 86400  # 24 hours
    conversation_lock_ttl_seconds: int = 10
    conversation_lock_retry_delay_seconds: float = 0.5
    apology_message: str = (
        "Sorry, I'm having trouble processing your message right now. Please try again later."
    )

    # Remote agent backend
    agent_backend_url: str = "https://api.retellai.com"
    agent_backend_api_key: str | None = None
    agent_backend_timeout_seconds: int = 30

    # Security
    admin_token: str | None = None
    allowed_origins: list[str] = ["*"]
    rate_limit_per_minute: int = 120

    # Feature Flags
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("admin_token", self.admin_token),
            ("agent_backend_api_key", self.agent_backend_api_key),
        ]

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if not s.admin_token:
        warnings.append("admin_token is not set (channel endpoints will reject every request).")

    if s.cache_backend == "memory":
        warnings.append(
            "cache_backend=memory: dedup markers and creation locks are per-process, "
            "run a single instance only."
        )
    elif s.cache_backend == "none":
        warnings.append("cache_backend=none: duplicate inbound messages will be relayed twice.")

    if not s.bridge_token:
        warnings.append("bridge_token is not set (bridge connections are unauthenticated).")

    if s.session_settle_delay_seconds <= 0:
        warnings.append(
            "session_settle_delay_seconds<=0: a re-paired client may read a half-deleted session."
        )

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()
validate_or_warn(settings)
