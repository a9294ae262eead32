"""
Ledger Reconciliation - Configuration

Everything is read from the environment (or backend/.env). The RECON_*
variables are the default matching tolerances; a run may override any of
them for itself without touching the process-wide values.
"""

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Process settings. Field names are the environment variable names."""

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
        default="",
        description="SQLAlchemy async connection URL (required outside tests)"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="reconciliation")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="")

    # ==================== MATCHING TOLERANCES ====================
    RECON_AMOUNT_PERCENTAGE_TOLERANCE: float = Field(
        default=0.01,
        description="Relative amount tolerance as a fraction (0.01 = 1%)"
    )
    RECON_AMOUNT_ABSOLUTE_TOLERANCE: Decimal = Field(
        default=Decimal("0"),
        description="Absolute amount tolerance in currency units"
    )
    RECON_DATE_TOLERANCE_DAYS: int = Field(
        default=3,
        description="Maximum distance in days between matched transactions"
    )
    RECON_FUZZY_MATCH_THRESHOLD: int = Field(
        default=80,
        description="Minimum reference similarity (0-100) for fuzzy matching"
    )
    RECON_DATE_PARSE_POLICY: str = Field(
        default="fail_open",
        description="How unparseable dates compare: fail_open or fail_closed"
    )
    RECON_FLAG_AMOUNT_MISMATCHES: bool = Field(
        default=False,
        description="Record same-id pairs with differing amounts as amount_mismatch"
    )
    RECON_PARTIAL_DISCREPANCY_THRESHOLD: Optional[int] = Field(
        default=None,
        description="Discrepancy count above which a run is marked partial"
    )

    # ==================== PAYMENT GATEWAY ====================
    GATEWAY_BASE_URL: str = Field(
        default="",
        description="Payment gateway API base URL"
    )
    GATEWAY_CONSUMER_KEY: str = Field(default="")
    GATEWAY_CONSUMER_SECRET: str = Field(default="")
    GATEWAY_TIMEOUT_SECONDS: float = Field(
        default=15.0,
        description="Per-request timeout for gateway calls"
    )
    GATEWAY_MAX_RETRIES: int = Field(
        default=3,
        description="Retries for timeouts, connection errors and 5xx responses"
    )
    GATEWAY_BACKOFF_SECONDS: float = Field(
        default=1.0,
        description="Base delay for exponential backoff between retries"
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
    LOG_JSON: Optional[bool] = Field(
        default=None,
        description="Force JSON logs on/off (defaults to on in production)"
    )

    # ==================== API ====================
    API_TITLE: str = Field(
        default="Ledger Reconciliation API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated origins allowed to call the API"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def debug_enabled(self) -> bool:
        """Explicit DEBUG, or always on in development."""
        return self.DEBUG or self.ENVIRONMENT.lower() == "development"

    @property
    def json_logs(self) -> bool:
        return self.is_production if self.LOG_JSON is None else self.LOG_JSON

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def gateway_configured(self) -> bool:
        return bool(self.GATEWAY_BASE_URL)

    def tolerance_defaults(self) -> dict:
        """Tolerance values in the shape accepted by TolerancePolicy.apply_overrides."""
        return {
            "amount_percentage_tolerance": self.RECON_AMOUNT_PERCENTAGE_TOLERANCE,
            "amount_absolute_tolerance": self.RECON_AMOUNT_ABSOLUTE_TOLERANCE,
            "date_tolerance_days": self.RECON_DATE_TOLERANCE_DAYS,
            "fuzzy_match_threshold": self.RECON_FUZZY_MATCH_THRESHOLD,
            "date_parse_policy": self.RECON_DATE_PARSE_POLICY,
            "flag_amount_mismatches": self.RECON_FLAG_AMOUNT_MISMATCHES,
        }

    def validate_production_config(self) -> List[str]:
        """
        Problems that make the settings unusable.

        Tolerance values are checked in every environment; the SQLite and
        DEBUG checks apply to production only.
        """
        problems = []

        if not (self.DATABASE_URL or self.POSTGRES_HOST):
            problems.append("DATABASE_URL is not set")

        if self.RECON_DATE_PARSE_POLICY not in ("fail_open", "fail_closed"):
            problems.append("RECON_DATE_PARSE_POLICY must be fail_open or fail_closed")
        if not 0 <= self.RECON_FUZZY_MATCH_THRESHOLD <= 100:
            problems.append("RECON_FUZZY_MATCH_THRESHOLD must be between 0 and 100")
        if self.RECON_AMOUNT_PERCENTAGE_TOLERANCE < 0 or self.RECON_AMOUNT_ABSOLUTE_TOLERANCE < 0:
            problems.append("Amount tolerances cannot be negative")
        if self.RECON_DATE_TOLERANCE_DAYS < 0:
            problems.append("RECON_DATE_TOLERANCE_DAYS cannot be negative")

        if self.is_production:
            if self.DATABASE_URL.lower().startswith("sqlite"):
                problems.append("DATABASE_URL cannot point to SQLite in production")
            if self.DEBUG:
                problems.append("DEBUG should be False in production")

        return problems

    def get_database_url(self) -> str:
        """DATABASE_URL, or an asyncpg URL assembled from POSTGRES_*."""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        if not (self.POSTGRES_HOST and self.POSTGRES_USER and self.POSTGRES_PASSWORD):
            raise ValueError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")

        url = (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )
        if self.POSTGRES_SSLMODE:
            url += f"?ssl={self.POSTGRES_SSLMODE}"
        return url


@lru_cache()
def get_settings() -> Settings:
    """
    Settings for this process, loaded once.

    Refuses to start a production process with invalid settings.
    """
    settings = Settings()
    logger.info(f"Environment: {settings.ENVIRONMENT} (debug={settings.debug_enabled})")

    if settings.is_production:
        problems = settings.validate_production_config()
        for problem in problems:
            logger.error(f"Configuration error: {problem}")
        if problems:
            raise ValueError(f"Production configuration invalid: {', '.join(problems)}")

    return settings


# Optional integrations and the warning reported when unset
_OPTIONAL: Tuple[Tuple[str, str], ...] = (
    ("SENTRY_DSN", "Error tracking disabled"),
    ("GATEWAY_BASE_URL", "Gateway status sync disabled"),
)


def validate_environment() -> dict:
    """
    Configuration report used at startup and by /api/health.

    Returns a dict with `valid`, `errors`, `warnings` and a per-variable
    set/unset map. Secrets are never echoed.
    """
    settings = get_settings()

    errors = settings.validate_production_config()
    warnings = []
    variables: Dict[str, str] = {
        "DATABASE_URL": "set" if (settings.DATABASE_URL or settings.POSTGRES_HOST) else "missing",
    }

    for name, warning in _OPTIONAL:
        if getattr(settings, name):
            variables[name] = "set"
        else:
            variables[name] = "missing"
            warnings.append(warning)

    if settings.gateway_configured and not settings.GATEWAY_CONSUMER_KEY:
        warnings.append("GATEWAY_CONSUMER_KEY is not set; gateway calls will fail to authenticate")

    return {
        "valid": not errors,
        "environment": settings.ENVIRONMENT,
        "errors": errors,
        "warnings": warnings,
        "variables": variables,
    }
