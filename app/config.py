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
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    database_statement_timeout_ms: int = 10000
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Credit Ledger API"
    api_version: str = "0.1.0"
    api_description: str = "Subscription and credit ledger for the research product"

    # Identity provider (bearer token verification)
    identity_provider_url: str = ""  # e.g. https://<project>.supabase.co
    identity_provider_api_key: str = ""
    identity_timeout_seconds: float = 5.0

    # Administrators - comma-separated list of emails
    ADMIN_EMAILS: str = ""

    @property
    def admin_email_list(self) -> list[str]:
        """Get normalized list of administrator emails."""
        emails: list[str] = []
        for email in self.ADMIN_EMAILS.split(","):
            email = email.strip().lower()
            if email and email not in emails:
                emails.append(email)
        return emails

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "credit-ledger-api"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)
    stripe_timeout_seconds: float = 10.0
    app_base_url: str = "http://localhost:3000"

    # Subscription checkout - recurring Stripe price per tier (price_...)
    stripe_price_pro: str = ""
    stripe_price_agency: str = ""
    stripe_price_business: str = ""
    subscription_trial_days: int = 3

    # Tiers
    default_paid_tier: str = "pro"
    admin_trial_days: int = 1

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
        Webhook and identity secrets are checked per request instead, so a
        missing secret rejects those requests without taking the process down.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.admin_trial_days < 1:
            errors.append("ADMIN_TRIAL_DAYS must be at least 1")

        if self.subscription_trial_days < 0:
            errors.append("SUBSCRIPTION_TRIAL_DAYS must not be negative")

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
