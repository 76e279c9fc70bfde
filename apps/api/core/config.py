"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the application.
"""
from datetime import datetime, timezone
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="workout_app")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)
    # Full URL override (takes precedence over the POSTGRES_* parts)
    DATABASE_URL: Optional[str] = Field(default=None)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # JWT Authentication - REQUIRED for bearer credential validation
    # Must be set via environment variable, never use default in production
    SECRET_KEY: str = Field(
        default=...,  # Required - no default
        description="JWT signing key. Must be cryptographically secure (32+ chars). "
                    "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )
    # Optional iss / aud the identity service stamps on its tokens
    JWT_ISSUER: Optional[str] = Field(default=None)
    JWT_AUDIENCE: Optional[str] = Field(default=None)

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)
    EXPOSE_API_DOCS: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Web app base URL (billing redirects back to the UI).
    WEB_APP_BASE_URL: str = Field(default="http://localhost:3000")

    # Entitlement store backend: "sql" (Postgres) or "memory" (local/dev fake)
    ENTITLEMENT_STORE_BACKEND: str = Field(default="sql")
    # Create missing entitlement tables on API startup (sql backend only)
    DB_CREATE_TABLES: bool = Field(default=False)

    # Grandfathering (users registered before the paywall get temporary unlimited access)
    PAYWALL_INTRODUCTION_DATE: datetime = Field(default=datetime(2025, 7, 26, tzinfo=timezone.utc))
    GRANDFATHERING_ENABLED: bool = Field(default=True)
    GRANDFATHERED_DURATION_DAYS: int = Field(default=30, ge=1)
    GRANDFATHERING_GRACE_PERIOD_HOURS: int = Field(default=24, ge=0)
    # Comma-separated day thresholds for expiry warnings, e.g. "7,3,1"
    GRANDFATHERING_WARNING_DAYS: str = Field(default="7,3,1")
    GRANDFATHERING_AUTO_CLEANUP_ENABLED: bool = Field(default=True)
    GRANDFATHERING_SEND_NOTIFICATIONS: bool = Field(default=False)

    # Free tier quota
    FREE_DAILY_GENERATION_LIMIT: int = Field(default=1, ge=0)
    # IANA zone name for the usage "day". Empty = host local time.
    USAGE_DAY_TIMEZONE: str = Field(default="")

    # Stripe (hosted checkout + webhooks)
    STRIPE_SECRET_KEY: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    STRIPE_PRICE_PREMIUM_MONTHLY_ID: Optional[str] = Field(default=None)
    STRIPE_PRICE_PREMIUM_YEARLY_ID: Optional[str] = Field(default=None)
    STRIPE_CHECKOUT_SUCCESS_URL: Optional[str] = Field(default=None)
    STRIPE_CHECKOUT_CANCEL_URL: Optional[str] = Field(default=None)

    # Workout generation (LLM)
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    WORKOUT_GENERATION_MODEL: str = Field(default="gpt-4o-mini")
    WORKOUT_GENERATION_MAX_TOKENS: int = Field(default=1000)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions

    @field_validator("PAYWALL_INTRODUCTION_DATE")
    @classmethod
    def _paywall_is_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def grandfathering_warning_days(self) -> List[int]:
        days = [int(part) for part in self.GRANDFATHERING_WARNING_DAYS.split(",") if part.strip()]
        return sorted(set(days), reverse=True)


# Global settings instance
settings = Settings()
