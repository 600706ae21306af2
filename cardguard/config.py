"""
CardGuard — Centralised Configuration
All tunables live here; override via environment variables or a .env file.
Supports environment-specific settings: development | staging | production
"""

from pydantic import Field
from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    APP_NAME: str = "CardGuard"
    APP_ENV: str = "development"          # development | staging | production
    APP_PORT: int = 3000
    DEBUG: bool = False

    # ------------------------------------------------------------------
    # Card store
    # ------------------------------------------------------------------
    CARD_STORE_BACKEND: str = "json"      # json | sql
    CARD_STORE_PATH: str = "data/db.json"
    DATABASE_URL: str = "sqlite+aiosqlite:///data/cardguard.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    HISTORY_LIMIT: int = Field(200, ge=1)  # newest-first, oldest evicted

    # ------------------------------------------------------------------
    # Risk thresholds  (tunable without code changes)
    # ------------------------------------------------------------------
    EARTH_RADIUS_KM: float = 6371.0
    HIGH_RISK_DISTANCE_KM: float = 500.0
    HIGH_RISK_HOURS: float = 6.0
    MEDIUM_RISK_DISTANCE_KM: float = 100.0
    MEDIUM_RISK_HOURS: float = 24.0

    # ------------------------------------------------------------------
    # IP geolocation fallback
    # ------------------------------------------------------------------
    GEOLOOKUP_ENABLED: bool = True
    GEOLOOKUP_URL: str = "https://ipapi.co/json/"
    GEOLOOKUP_TIMEOUT_SECONDS: float = 3.0

    # ------------------------------------------------------------------
    # Alerting
    # ------------------------------------------------------------------
    ADMIN_EMAIL: Optional[str] = None
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASS: Optional[str] = None
    ALERT_WEBHOOK_URL: Optional[str] = None
    ALERT_TIMEOUT_SECONDS: float = 5.0

    # ------------------------------------------------------------------
    # Operator authentication
    # ------------------------------------------------------------------
    AUTH_ENABLED: bool = False
    OPERATOR_API_KEY: str = "change-me-in-production"  # MUST override in production

    # ------------------------------------------------------------------
    # Rate Limiting
    # ------------------------------------------------------------------
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_REQUESTS_PER_MINUTE: int = 120  # per client IP

    # ------------------------------------------------------------------
    # CORS
    # ------------------------------------------------------------------
    CORS_ORIGINS: List[str] = ["*"]

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------
    LOG_LEVEL: str = "INFO"
    STRUCTURED_LOGGING_ENABLED: bool = True

    # ------------------------------------------------------------------
    # Monitoring & Observability
    # ------------------------------------------------------------------
    METRICS_ENABLED: bool = True

    # ------------------------------------------------------------------
    # pydantic-settings: read from .env automatically
    # ------------------------------------------------------------------
    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def rate_limit(self) -> str:
        return f"{self.RATE_LIMIT_REQUESTS_PER_MINUTE}/minute"

    @property
    def smtp_configured(self) -> bool:
        return bool(self.SMTP_HOST and self.SMTP_USER)

    def is_production(self) -> bool:
        return self.APP_ENV.lower() == "production"

    def is_development(self) -> bool:
        return self.APP_ENV.lower() == "development"


# Singleton
settings = Settings()
