"""
Deposit Reconciliation Core - Configuration Management

Centralized configuration for environment variables, matching thresholds,
ledger retry policy and the background sweep.
This module ensures:
- No hardcoded secrets
- Environment-specific settings (dev/staging/prod)
- One place to tune the matching engine
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./reconciliation.db",
        description="SQLAlchemy async database URL"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="reconciliation")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="require")

    # ==================== AUTHENTICATION ====================
    INTERNAL_API_KEY: str = Field(
        default="",
        description="Primary API key for operator and bot-layer calls"
    )
    INTERNAL_API_KEYS: str = Field(
        default="",
        description="Comma-separated extra API keys (rotation)"
    )

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
    )

    # ==================== LEDGER ====================
    DEFAULT_CURRENCY: str = Field(
        default="ETB",
        description="Currency code for newly created wallets"
    )
    DEFAULT_TIMEZONE: str = Field(
        default="Africa/Addis_Ababa",
        description="Timezone assumed for timestamps printed in notifications"
    )
    RETRY_MAX_ATTEMPTS: int = Field(
        default=3,
        description="Attempts for an atomic unit that hits a write conflict"
    )
    RETRY_DELAYS: List[float] = Field(
        default=[0.05, 0.2, 0.5],
        description="Backoff delays (seconds) between conflict retries"
    )

    # ==================== MATCHING ====================
    AUTO_MATCH_THRESHOLD: float = Field(
        default=0.85,
        description="Score at or above which a pair is credited automatically"
    )
    SUGGEST_MATCH_THRESHOLD: float = Field(
        default=0.60,
        description="Score at or above which a candidate is shown to operators"
    )
    AUTO_MATCH_LOOKBACK_MINUTES: int = Field(
        default=60,
        description="Candidate window for fully automated matching"
    )
    OPERATOR_LOOKBACK_DAYS: int = Field(
        default=7,
        description="Candidate window for operator-assisted lookup"
    )
    SMALL_DEPOSIT_AUTO_APPROVE_LIMIT: float = Field(
        default=0,
        description="Waiting payer deposits up to this amount may be bulk approved (0 = disabled)"
    )

    # ==================== SWEEP ====================
    SWEEP_ENABLED: bool = Field(default=True)
    SWEEP_INTERVAL_SECONDS: int = Field(
        default=300,
        description="Interval of the background re-match sweep"
    )
    SWEEP_LOOKBACK_HOURS: int = Field(
        default=24,
        description="Only pending records newer than this are swept"
    )
    SWEEP_RECEIVED_GRACE_SECONDS: int = Field(
        default=120,
        description="Classified records still RECEIVED after this long are picked up by the sweep"
    )

    # ==================== NOTIFICATIONS ====================
    NOTIFIER_WEBHOOK_URL: str = Field(
        default="",
        description="Bot-layer webhook that delivers {user_id, message}; empty = log only"
    )
    NOTIFIER_WEBHOOK_SECRET: str = Field(
        default="",
        description="HMAC secret for signing notification webhooks"
    )
    NOTIFIER_TIMEOUT: int = Field(default=10)
    OPERATOR_CHANNEL_ID: str = Field(
        default="operators",
        description="Recipient id used for operator notifications"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )

    # ==================== API ====================
    API_TITLE: str = Field(
        default="Deposit Reconciliation API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list.

        Development also allows the local dashboard origins.
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        if not self.is_production:
            origins.extend([
                "http://localhost:3000",
                "http://localhost:5173",
                "http://127.0.0.1:3000",
            ])

        return sorted(set(origins))

    @property
    def internal_api_keys(self) -> List[str]:
        keys = []
        if self.INTERNAL_API_KEY:
            keys.append(self.INTERNAL_API_KEY)
        if self.INTERNAL_API_KEYS:
            keys.extend(k.strip() for k in self.INTERNAL_API_KEYS.split(",") if k.strip())
        return keys

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL and not self.POSTGRES_HOST:
            errors.append("DATABASE_URL is required")

        if not (0 < self.AUTO_MATCH_THRESHOLD <= 1):
            errors.append("AUTO_MATCH_THRESHOLD must be in (0, 1]")

        if self.SUGGEST_MATCH_THRESHOLD > self.AUTO_MATCH_THRESHOLD:
            errors.append("SUGGEST_MATCH_THRESHOLD cannot exceed AUTO_MATCH_THRESHOLD")

        if self.RETRY_MAX_ATTEMPTS < 1:
            errors.append("RETRY_MAX_ATTEMPTS must be at least 1")

        if self.is_production:
            if not self.internal_api_keys:
                errors.append("INTERNAL_API_KEY is required in production")

            if self.get_database_url().startswith("sqlite"):
                errors.append("DATABASE_URL cannot be SQLite in production")

            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.POSTGRES_HOST and self.POSTGRES_USER and self.POSTGRES_PASSWORD:
            ssl = f"?ssl={self.POSTGRES_SSLMODE}" if self.POSTGRES_SSLMODE else ""
            return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}{ssl}"

        if self.DATABASE_URL:
            return self.DATABASE_URL

        raise ValueError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug: {settings.debug_enabled}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== CORS CONFIGURATION ====================

def get_cors_config() -> dict:
    """
    Get CORS middleware configuration.

    Returns configuration dict for CORSMiddleware.
    """
    settings = get_settings()

    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": [
            "Content-Type",
            "Accept",
            "Origin",
            "X-Internal-Api-Key",
            "X-Operator-Id",
            "X-Request-ID",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,
    }


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment() -> dict:
    """
    Validate all required environment variables.

    Returns a status dict with validation results.
    """
    settings = get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "errors": [],
        "warnings": [],
        "variables": {}
    }

    optional_vars = [
        ("SENTRY_DSN", settings.SENTRY_DSN, "Error tracking disabled"),
        ("INTERNAL_API_KEY", settings.INTERNAL_API_KEY, "Operator endpoints reject every request"),
        ("NOTIFIER_WEBHOOK_URL", settings.NOTIFIER_WEBHOOK_URL, "Notifications are only logged"),
    ]

    for name, value, warning in optional_vars:
        if not value:
            status["warnings"].append(warning)
            status["variables"][name] = "not set"
        else:
            status["variables"][name] = "set"

    errors = settings.validate_production_config()
    if errors:
        status["errors"].extend(errors)
        status["valid"] = False

    return status
