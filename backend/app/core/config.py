"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from backend.app.core.config import settings
    print(settings.CONFIRM_QUORUM)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "Geofenced Broadcast Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production | test
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Crowd verification ──
    CONFIRM_QUORUM: int = 3
    DENY_QUORUM: int = 3
    VERIFICATION_RADIUS_KM: float = 5.0  # proximity gate for votes

    # ── Alerts ──
    DERIVED_ALERT_RADIUS_KM: float = 5.0  # community-verified alerts
    DERIVED_ALERT_TTL_HOURS: int = 24
    DEFAULT_ALERT_RADIUS_KM: float = 10.0

    # ── Sessions ──
    SESSION_TTL_HOURS: int = 24
    SESSION_INACTIVITY_MINUTES: int = 30
    SWEEP_INTERVAL_SECONDS: int = 300  # every 5 minutes

    # ── Broadcast ──
    NEW_REPORT_RADIUS_KM: float = 10.0
    BROADCAST_MAX_WORKERS: int = 16
    DELIVERY_TIMEOUT_SECONDS: float = 3.0
    DELIVERY_MAX_RETRIES: int = 1
    DELIVERY_RETRY_BACKOFF_SECONDS: float = 0.05

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
