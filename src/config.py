"""
Tracking service configuration (pydantic-settings, read from the environment
and `.env`). Validated once at startup: a missing signing secret stops the
process instead of producing unverifiable tokens.
"""
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

RATE_LIMIT_BACKENDS = ("memory", "redis")
EMAIL_PROVIDERS = ("sendgrid", "smtp")


class Settings(BaseSettings):
    app_env: str = "development"
    log_level: str = "INFO"

    # Persistence
    database_url: str = "postgresql+asyncpg://localhost/relate"
    database_pool_size: int = 20
    database_max_overflow: int = 10
    redis_url: str = "redis://localhost:6379/0"

    # Recipient-facing boundary: token signing and the public tracking host
    tracking_signing_secret: str
    tracking_domain: str = "tracking.relateai.com"
    tracking_scheme: str = "https"
    tracking_token_max_age_seconds: int = 0  # 0 = never expire
    tracking_update_timeout_seconds: float = 2.0

    # Provider-facing boundary: X-Webhook-Secret on reply/delivery callbacks
    email_webhook_secret: str = ""

    # Outbound mail: SendGrid API, or a plain SMTP relay
    email_provider: str = "sendgrid"
    sendgrid_api_key: str = ""
    email_host: str = ""
    email_port: int = 587
    email_user: str = ""
    email_password: str = ""
    email_from: str = "no-reply@relateai.com"

    # Fixed-window rate limiting
    rate_limit_backend: str = "memory"
    rate_limit_max_entries: int = 10000
    rate_limit_default_window_ms: int = 60 * 1000
    rate_limit_default_max: int = 100
    rate_limit_send_window_ms: int = 15 * 60 * 1000
    rate_limit_send_max: int = 20
    rate_limit_auth_window_ms: int = 30 * 60 * 1000
    rate_limit_auth_max: int = 5

    sentry_dsn: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @field_validator("tracking_signing_secret")
    @classmethod
    def _signing_secret_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("TRACKING_SIGNING_SECRET must be set")
        return value

    @field_validator("rate_limit_backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in RATE_LIMIT_BACKENDS:
            raise ValueError(f"Unknown rate limit backend: {value}")
        return value

    @field_validator("email_provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in EMAIL_PROVIDERS:
            raise ValueError(f"Unknown email provider: {value}")
        return value

    @model_validator(mode="after")
    def _secrets_are_distinct(self) -> "Settings":
        if self.email_webhook_secret and self.email_webhook_secret == self.tracking_signing_secret:
            raise ValueError("EMAIL_WEBHOOK_SECRET must differ from TRACKING_SIGNING_SECRET")
        return self


@lru_cache()
def get_settings() -> Settings:
    return Settings()
