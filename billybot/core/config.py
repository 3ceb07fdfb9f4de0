"""
Core application configuration using Pydantic Settings.

All environment variables are loaded here and validated. A single Settings
instance is built per process (see get_settings) and handed to the app and
to each service explicitly.
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from billybot.core.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # App Configuration
    APP_NAME: str = "BillyBot"
    APP_URL: str = "http://localhost:8000"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost/billybot"

    # Sessions (cookie signing)
    SESSION_SECRET_KEY: str = "change-me"

    # Token encryption (base64-encoded 32-byte AES-256-GCM key)
    EMAIL_TOKEN_ENCRYPTION_KEY: Optional[str] = None

    # Shared secret for cron/orchestrator calls (x-internal-token header)
    INTERNAL_JOBS_TOKEN: Optional[str] = None

    # OAuth - Google
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_PUBSUB_TOPIC: Optional[str] = None

    # OAuth - Microsoft 365
    MICROSOFT_CLIENT_ID: Optional[str] = None
    MICROSOFT_CLIENT_SECRET: Optional[str] = None
    MICROSOFT_TENANT_ID: Optional[str] = None
    MICROSOFT_CLIENT_STATE_TOKEN: Optional[str] = None

    # Redis (OAuth state storage, Celery broker)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Celery
    CELERY_BROKER_URL: Optional[str] = None
    CELERY_RESULT_BACKEND: Optional[str] = None

    # Sentry Monitoring
    SENTRY_DSN: Optional[str] = None

    # Outbound provider calls
    HTTP_TIMEOUT_SECONDS: float = 15.0

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Set Celery URLs to Redis if not explicitly set
        if not self.CELERY_BROKER_URL:
            self.CELERY_BROKER_URL = self.REDIS_URL
        if not self.CELERY_RESULT_BACKEND:
            self.CELERY_RESULT_BACKEND = self.REDIS_URL

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    def app_url(self, path: str) -> str:
        """Absolute URL under APP_URL."""
        return f"{self.APP_URL.rstrip('/')}/{path.lstrip('/')}"

    def require_google_oauth(self) -> tuple[str, str]:
        """Return (client_id, client_secret) or fail fast."""
        if not self.GOOGLE_CLIENT_ID or not self.GOOGLE_CLIENT_SECRET:
            raise ConfigurationError("Missing Google OAuth credentials")
        return self.GOOGLE_CLIENT_ID, self.GOOGLE_CLIENT_SECRET

    def require_microsoft_oauth(self) -> tuple[str, str, str]:
        """Return (client_id, client_secret, tenant) or fail fast."""
        if (
            not self.MICROSOFT_CLIENT_ID
            or not self.MICROSOFT_CLIENT_SECRET
            or not self.MICROSOFT_TENANT_ID
        ):
            raise ConfigurationError("Missing Microsoft OAuth credentials")
        return self.MICROSOFT_CLIENT_ID, self.MICROSOFT_CLIENT_SECRET, self.MICROSOFT_TENANT_ID


@lru_cache
def get_settings() -> Settings:
    """
    Build the process-wide Settings once.

    Usage:
        settings = get_settings()
        app = create_app(settings)
    """
    return Settings()
