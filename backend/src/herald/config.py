"""Herald notification engine — Application Configuration."""

from __future__ import annotations

import enum
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, enum.Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


_DEFAULT_ADMIN_KEY = "CHANGE-ME"


class Settings(BaseSettings):
    """Centralised, validated configuration loaded from environment / .env file.

    Tables (rate-limit rules, budgets, channel costs, retry policies, webhook
    secrets) may be given as JSON in the environment, e.g.
    ``BUDGETS='[{"tenant_id": "acme", "monthly_cap_micros": 5000000}]'``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    app_name: str = "herald"
    app_env: Environment = Environment.DEVELOPMENT
    app_debug: bool = False
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # ── Backends ─────────────────────────────────────────────
    state_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 50
    redis_key_prefix: str = "herald:"

    persistence_backend: Literal["memory", "sql"] = "memory"
    database_url: str = "sqlite+aiosqlite:///./herald.db"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # ── Rate limits (global defaults per level) ──────────────
    rate_limit_user_max: int = 60
    rate_limit_user_window_seconds: float = 3600
    rate_limit_user_burst: int = 20
    rate_limit_service_max: int = 1000
    rate_limit_service_window_seconds: float = 60
    rate_limit_service_burst: int = 200
    rate_limit_tenant_max: int = 5000
    rate_limit_tenant_window_seconds: float = 60
    rate_limit_tenant_burst: int = 1000
    rate_limit_rules: list[dict[str, Any]] = Field(default_factory=list)

    # ── Budgets & costs ──────────────────────────────────────
    budgets: list[dict[str, Any]] = Field(default_factory=list)
    channel_costs: list[dict[str, Any]] = Field(default_factory=list)

    # ── Retry policy ─────────────────────────────────────────
    retry_max_attempts: int = 6
    retry_base_delay_seconds: float = 5.0
    retry_backoff_factor: float = 2.0
    retry_max_backoff_seconds: float = 300.0
    retry_jitter_seconds: float = 1.0
    retry_attempt_timeout_seconds: float = 30.0
    retry_policies: list[dict[str, Any]] = Field(default_factory=list)
    seed_retry_policies: bool = True

    # ── Circuit breaker ──────────────────────────────────────
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_break_seconds: float = 60.0

    # ── Delivery ─────────────────────────────────────────────
    sync_timeout_seconds: float = 2.0
    batch_max_items: int = 100
    batch_concurrency: int = 10

    worker_enabled: bool = True
    worker_concurrency: int = 10
    worker_poll_interval_seconds: float = 0.5
    worker_claim_batch: int = 20
    # A `sending` notification untouched this long past its attempt budget is re-driven
    stall_grace_seconds: float = 30.0
    worker_sweep_interval_seconds: float = 30.0
    parked_callback_ttl_seconds: float = 3600.0

    # ── Webhooks & admin ─────────────────────────────────────
    webhook_secrets: dict[str, str] = Field(default_factory=dict)
    webhook_base_url: str = ""
    admin_api_key: str = _DEFAULT_ADMIN_KEY
    elevated_scope: str = "notifications:admin"
    events_channel: str = "herald.events"

    # ── Gateway credentials ──────────────────────────────────
    # Providers without credentials run simulated outside production
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    vonage_api_key: str = ""
    vonage_api_secret: str = ""
    vonage_from_number: str = ""
    sendgrid_api_key: str = ""
    sendgrid_from_email: str = ""
    mailgun_api_key: str = ""
    mailgun_domain: str = ""
    mailgun_from_email: str = ""
    fcm_project_id: str = ""
    fcm_access_token: str = ""
    gateway_timeout_seconds: float = 10.0

    # ── Observability ────────────────────────────────────────
    prometheus_enabled: bool = True

    # ── Derived helpers ──────────────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.app_env == Environment.PRODUCTION

    @property
    def simulate_missing_gateways(self) -> bool:
        return not self.is_production

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("database_url")
    @classmethod
    def _validate_database_url(cls, v: str) -> str:
        if not v.startswith(("postgresql", "sqlite")):
            raise ValueError("database_url must start with 'postgresql' or 'sqlite'")
        return v

    @field_validator("batch_max_items", "batch_concurrency", "worker_concurrency", "worker_claim_batch")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def _check_timeouts(self) -> Settings:
        if self.sync_timeout_seconds <= 0:
            raise ValueError("sync_timeout_seconds must be positive")
        if self.sync_timeout_seconds >= self.retry_attempt_timeout_seconds:
            raise ValueError(
                "sync_timeout_seconds must be shorter than retry_attempt_timeout_seconds"
            )
        return self

    @model_validator(mode="after")
    def _guard_production_secrets(self) -> Settings:
        """Prevent production from running with insecure defaults."""
        if self.app_env == Environment.PRODUCTION:
            if self.admin_api_key in (_DEFAULT_ADMIN_KEY, ""):
                raise ValueError("admin_api_key must be set to a secure value in production")
        return self


def get_settings(**overrides: Any) -> Settings:
    """Factory that allows test-time overrides."""
    return Settings(**overrides)
