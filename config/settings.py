"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Provider Marketplace"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str
    LOG_LEVEL: str = "INFO"

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_CACHE_TTL: int = 300          # seconds
    REDIS_MAX_CONNECTIONS: int = 50

    # ── OAuth2 - Google ──────────────────────────────────────
    GOOGLE_CLIENT_ID: str
    GOOGLE_CLIENT_SECRET: str
    GOOGLE_REDIRECT_URI: str = "http://localhost:8000/auth/google/callback"

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    JWT_REFRESH_TOKEN_EXPIRE_DAYS: int = 30

    # ── Email ────────────────────────────────────────────────
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "noreply@marketplace.local"
    EMAIL_FROM_NAME: str = "Provider Marketplace"

    # ── Uploads ──────────────────────────────────────────────
    UPLOAD_DIR: str = "./uploads"
    UPLOAD_MAX_IMAGE_MB: int = 5
    UPLOAD_MAX_DOCUMENT_MB: int = 10

    # ── Frontend ─────────────────────────────────────────────
    FRONTEND_URL: str = "http://localhost:3000"
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:3001"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 60

    # ── Business Config ──────────────────────────────────────
    PLATFORM_COMMISSION_PERCENT: Decimal = Decimal("10.00")
    BOOKING_REMINDER_LEAD_HOURS: int = 24
    PASSWORD_RESET_CODE_TTL_MINUTES: int = 60
    NOTIFICATION_SWEEP_BATCH_SIZE: int = 100
    NOTIFICATION_CLAIM_TIMEOUT_SECONDS: int = 300

    @field_validator("PLATFORM_COMMISSION_PERCENT")
    @classmethod
    def _commission_in_range(cls, v: Decimal) -> Decimal:
        if not Decimal("0") <= v <= Decimal("100"):
            raise ValueError("PLATFORM_COMMISSION_PERCENT must be between 0 and 100")
        return v

    @field_validator("BOOKING_REMINDER_LEAD_HOURS", "NOTIFICATION_SWEEP_BATCH_SIZE")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings, read from the environment once."""
    return Settings()


settings = get_settings()
