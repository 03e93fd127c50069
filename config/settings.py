"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

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
    APP_NAME: str = "Talent Booking Platform"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str

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
    BOOKING_LOCK_TTL_SECONDS: int = 30      # per-booking action mutex
    TALENT_LOCK_TTL_SECONDS: int = 30       # booking creation for one talent

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── Frontend ─────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"
    CELERY_TIMEZONE: str = "Africa/Nairobi"
    NOTIFICATION_TASK_NAME: str = "notifications.deliver_booking_event"

    # Shared secret for the external scheduler calling the timer endpoint
    CRON_SECRET: str = ""

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20

    # ── Business Config ──────────────────────────────────────
    PLATFORM_FEE_PERCENT: float = 10.0
    DEFAULT_CURRENCY: str = "KES"
    DEFAULT_PAYOUT_METHOD: str = "MPESA"
    DEFAULT_EVENT_DURATION_HOURS: int = 8
    REVIEW_VISIBILITY_DELAY_HOURS: int = 48
    REVIEW_SWEEP_INTERVAL_SECONDS: int = 600
    REVIEW_SWEEP_BATCH_SIZE: int = 200
    RECURRING_GENERATION_MAX_DAYS: int = 1000

    @field_validator("DEFAULT_CURRENCY")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if len(v) != 3 or not v.isalpha() or not v.isupper():
            raise ValueError("Currency must be a three-letter upper-case code")
        return v

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance, shared by every module."""
    return Settings()


settings = get_settings()
