"""Application configuration using pydantic-settings."""

from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    DATABASE_URL: str = "sqlite:///./metering.db"
    APP_NAME: str = "Usage Metering Service"
    LOG_LEVEL: str = "INFO"

    # Generation quotas
    FREE_TIER_MONTHLY_LIMIT: int = 3
    PAID_TIER_MONTHLY_LIMIT: int = 25
    ANONYMOUS_GENERATION_LIMIT: int = 3
    QUOTA_RESET_POLICY: Literal["calendar_month", "anniversary"] = "calendar_month"
    ANONYMOUS_RETENTION_DAYS: int = 30
    ANONYMOUS_IP_ALERT_THRESHOLD: int = 20

    # Session analytics
    SESSION_IDLE_TIMEOUT_MINUTES: int = 30
    MAX_EVENTS_PER_BATCH: int = 100

    # Identity
    SESSION_COOKIE_NAME: str = "anonymous_session"
    SESSION_COOKIE_MAX_AGE_SECONDS: int = 60 * 60 * 24 * 30
    SESSION_COOKIE_SECURE: bool = False
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_ALGORITHM: str = "HS256"
    ADMIN_API_TOKEN: Optional[str] = None

    SQLITE_BUSY_TIMEOUT_SECONDS: int = 30

    # Background jobs
    ENABLE_SCHEDULER: bool = False
    RESET_SWEEP_INTERVAL_MINUTES: int = 60
    RECONCILE_INTERVAL_MINUTES: int = 15

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def tier_limit(self, tier: str) -> int:
        """Monthly generation limit for a subscription tier."""
        if tier == "paid":
            return self.PAID_TIER_MONTHLY_LIMIT
        if tier == "free":
            return self.FREE_TIER_MONTHLY_LIMIT
        raise ValueError(f"Unknown subscription tier: {tier!r}")


settings = Settings()
