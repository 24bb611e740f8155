"""Dependency providers and settings management."""

import hmac
from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, Request, status
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    DATABASE_URL: str = "sqlite:///./adsync.db"
    TOKEN_ENCRYPTION_KEY: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379/0"

    # Provider app credentials
    META_APP_ID: Optional[str] = None
    META_APP_SECRET: Optional[str] = None
    META_GRAPH_VERSION: str = "v18.0"
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_DEVELOPER_TOKEN: Optional[str] = None
    GOOGLE_LOGIN_CUSTOMER_ID: Optional[str] = None
    GOOGLE_ADS_API_VERSION: str = "v17"
    TIKTOK_APP_ID: Optional[str] = None
    TIKTOK_APP_SECRET: Optional[str] = None
    LINKEDIN_CLIENT_ID: Optional[str] = None
    LINKEDIN_CLIENT_SECRET: Optional[str] = None

    # Shared secret for the scheduler trigger endpoint
    INTEGRATIONS_CRON_SECRET: Optional[str] = None

    # Worker tuning
    SYNC_STALE_JOB_MINUTES: int = 10
    SYNC_JOB_RETENTION_DAYS: int = 7
    SYNC_JOB_DEADLINE_SECONDS: float = 540.0
    # Wall-clock cap for one drain (cron tick or workspace request)
    SYNC_DRAIN_BUDGET_SECONDS: float = 1800.0

    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_sync_service(request: Request):
    """Return the IntegrationSyncService built at app startup."""
    return request.app.state.sync_service


def verify_cron_secret(
    request: Request,
    x_cron_secret: Optional[str] = Header(default=None, alias="X-Cron-Secret"),
) -> None:
    """Reject scheduler trigger calls that do not carry the shared secret.

    The secret is compared in constant time. A missing server-side secret
    disables the endpoint entirely rather than leaving it open.
    """
    settings: Settings = request.app.state.settings
    expected = settings.INTEGRATIONS_CRON_SECRET
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Cron secret not configured")
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")
