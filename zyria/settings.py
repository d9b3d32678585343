from __future__ import annotations

from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

SUPPORTED_PROVIDER_TYPES = ("openai", "anthropic", "google", "mistral", "meta", "xai", "custom", "ollama")


class AppSettings(BaseSettings):
    api_auth_token: Optional[str] = Field(default=None, env="API_AUTH_TOKEN")
    auth_secret_key: Optional[str] = Field(default=None, env="AUTH_SECRET_KEY")
    celery_broker_url: Optional[str] = Field(default=None, env="CELERY_BROKER_URL")
    resend_api_key: Optional[str] = Field(default=None, env="RESEND_API_KEY")
    app_base_url: str = Field(default="http://localhost:5173", env="APP_BASE_URL")
    provider_failover_window_seconds: float = Field(default=5.0, env="PROVIDER_FAILOVER_WINDOW_SECONDS")

    class Config:
        case_sensitive = False

    @model_validator(mode="after")
    def _ensure_auth(self):
        token = (self.api_auth_token or "").strip()
        secret = (self.auth_secret_key or "").strip()
        if not token and not secret:
            raise ValueError("Must configure API_AUTH_TOKEN or AUTH_SECRET_KEY for production.")
        return self

    @field_validator("celery_broker_url")
    def _validate_celery(cls, v):
        if not v:
            return v
        if not (v.startswith("redis://") or v.startswith("amqp://") or v.startswith("sqs://") or v.startswith("rediss://")):
            raise ValueError("CELERY_BROKER_URL must be redis://, amqp://, sqs:// or rediss://")
        return v

    @field_validator("app_base_url")
    def _validate_base_url(cls, v):
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("APP_BASE_URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("provider_failover_window_seconds")
    def _validate_failover_window(cls, v):
        if v < 0:
            raise ValueError("PROVIDER_FAILOVER_WINDOW_SECONDS must be >= 0")
        return v


def load_settings() -> AppSettings:
    return AppSettings()
