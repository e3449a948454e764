"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore", # Allow extra env vars without failing
    )

    # App
    app_name: str = "AuditChain"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"
    # Secret key MUST be provided via environment (e.g. SECRET_KEY in .env)
    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # API
    api_prefix: str = "/api/v1"
    allowed_origins: list[str] = ["http://localhost:3000"]

    # Database
    database_url: str = "sqlite+aiosqlite:///./auditchain.db"
    db_ssl_mode: str = "disable" # "require" for production
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # Audit signing keys
    # Priority: AUDIT_SIGNATURE_KEY env -> key file -> generated + persisted
    audit_signature_key: Optional[str] = None
    audit_signature_key_version: str = "v1"
    audit_key_file: str = "config/audit_key"
    # Retired keys kept for verifying historic records, JSON: {"v0": "<hex>"}
    audit_retired_keys: dict[str, str] = {}

    # Record provenance
    server_instance: str = "default"

    # Ledger writer
    ledger_max_append_attempts: int = 3
    ledger_retry_backoff_seconds: float = 0.05

    # Scoring
    audit_timezone: str = "UTC"  # Hour-of-day checks are evaluated here
    alert_risk_threshold: int = 70
    alert_anomaly_threshold: int = 80

    # Alert delivery
    event_bus_maxsize: int = 10000
    alert_webhook_url: Optional[str] = None
    alert_webhook_timeout_seconds: float = 5.0

    # Record every API request into the ledger (request audit middleware)
    audit_http_requests: bool = False

    # Tracing (requires the optional opentelemetry extra)
    tracing_enabled: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
