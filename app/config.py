"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from decimal import Decimal

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
    api_title: str = "Credit Ledger API"
    api_version: str = "0.1.0"
    api_description: str = "Credit ledger and generation settlement engine"
    environment: str = "development"  # development, staging, production
    cors_origins: str = ""  # Comma-separated list of allowed origins

    # Security - service-to-service API keys
    service_api_keys: str = ""  # Comma-separated keys for the application backend
    admin_api_key: str = ""
    webhook_api_key: str = ""  # Shared secret for the generic topup webhook

    @property
    def valid_service_api_keys(self) -> list[str]:
        """Get list of accepted service API keys."""
        keys = []
        for key in self.service_api_keys.split(","):
            key = key.strip()
            if key and key not in keys:
                keys.append(key)
        return keys

    @property
    def allowed_cors_origins(self) -> list[str]:
        """Get list of allowed CORS origins."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "credit-ledger-api"
    trace_sample_rate: float = 1.0  # 1.0 = 100% sampling

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)
    topup_currency: str = "thb"
    credits_per_currency_unit: Decimal = Decimal("1")  # 1 THB = 1 credit

    # Pricing
    pricing_catalog_path: str = "pricing_catalog.json"

    # Generation settlement
    auto_refund_on_failure: bool = False  # Refunds are an explicit action by default
    generation_timeout_minutes: int = 45

    # Atomic operation retries (serialization failures, deadlocks, lock timeouts)
    storage_retry_attempts: int = 5
    storage_retry_backoff_seconds: float = 0.05

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
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if self.environment == "production":
            if not self.valid_service_api_keys:
                errors.append("SERVICE_API_KEYS is required in production")
            if not self.admin_api_key:
                errors.append("ADMIN_API_KEY is required in production")

        if self.storage_retry_attempts < 1:
            errors.append("STORAGE_RETRY_ATTEMPTS must be at least 1")

        if self.credits_per_currency_unit <= 0:
            errors.append("CREDITS_PER_CURRENCY_UNIT must be positive")

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
        """Whether the primary database is SQLite (local runs and tests)."""
        return self.database_url.startswith("sqlite")


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
