"""
Application Configuration - Pydantic Settings for type-safe config.

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
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Mycelia Billing API"
    api_version: str = "0.1.0"
    api_description: str = "Credit metering and model routing for Mycelia"

    # Security - shared secret for the route layer calling this service
    api_key: str | None = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "mycelia-billing-api"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # sk_test_... or sk_live_...
    stripe_webhook_secret: str = ""  # whsec_...
    stripe_price_basic_monthly: str = ""
    stripe_price_basic_annual: str = ""
    stripe_price_pro_monthly: str = ""
    stripe_price_pro_annual: str = ""
    stripe_price_credit_pack: str = ""  # one-time top-up price
    credit_pack_credits: int = 2000
    frontend_url: str = "http://localhost:3000"

    # Credit economy - 1000 credits == $1 of model spend
    credits_per_usd: int = 1000
    plan_credits_free: int = 500
    plan_credits_basic: int = 3000
    plan_credits_pro: int = 6000
    credit_period_months: int = 1

    # Model catalog override (JSON document, see services/model_catalog.py)
    model_catalog_json: str = ""

    # AI provider credentials
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    google_api_key: str = ""

    # Plan upgrade notification hook (fire-and-forget)
    plan_upgrade_webhook_url: str = ""
    plan_upgrade_webhook_timeout: float = 5.0

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
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.credits_per_usd <= 0:
            errors.append(f"CREDITS_PER_USD must be positive, got: {self.credits_per_usd}")

        for name in ("plan_credits_free", "plan_credits_basic", "plan_credits_pro"):
            if getattr(self, name) < 0:
                errors.append(f"{name.upper()} cannot be negative")

        if self.credit_period_months < 1:
            errors.append("CREDIT_PERIOD_MONTHS must be at least 1")

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


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
