"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Entitlement Engine API"
    api_version: str = "0.1.0"
    api_description: str = "Plan entitlements, credit ledger and refresh scheduling"
    app_url: str = "http://localhost:5173"  # Frontend base URL for checkout redirects

    # Authentication - bearer JWTs issued by the identity provider (HS256)
    auth_jwt_secret: str = ""
    auth_jwt_audience: str | None = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "entitlement-engine"
    deployment_environment: str = "production"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)
    stripe_price_pro: str = ""  # Price id for the pro plan (price_...)
    stripe_price_enterprise: str = ""  # Price id for the enterprise plan

    # Credits
    pro_plan_credits: int = 500
    enterprise_plan_credits: int = 9999
    generation_credit_cost: int = 10
    default_period_days: int = 30  # Used when checkout carries no period end

    # Refresh Scheduler
    refresh_worker_enabled: bool = False
    refresh_interval_seconds: int = 600
    refresh_batch_size: int = 100
    refresh_fetch_timeout_seconds: float = 15.0
    metrics_service_url: str = ""
    metrics_service_token: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.refresh_worker_enabled and not self.metrics_service_url:
            errors.append("METRICS_SERVICE_URL is required when REFRESH_WORKER_ENABLED is set")

        if self.refresh_interval_seconds <= 0:
            errors.append("REFRESH_INTERVAL_SECONDS must be positive")

        if self.refresh_batch_size <= 0:
            errors.append("REFRESH_BATCH_SIZE must be positive")

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
