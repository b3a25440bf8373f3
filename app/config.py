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
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "PokerWizard Entitlements API"
    api_version: str = "0.1.0"
    api_description: str = "Free-credit ledger, premium entitlements and PIX payments"

    # Security
    jwt_secret: str = ""  # generate with: openssl rand -hex 32
    jwt_expire_hours: int = 24 * 7
    admin_secret: str = ""  # Bearer secret for /admin endpoints

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "pokerwizard-entitlements"

    # Pricing / entitlement
    free_credits_per_account: int = 7
    premium_price_minor: int = 590  # R$ 5,90 in centavos
    premium_currency: str = "BRL"
    premium_days: int = 30
    payment_expiry_seconds: int = 1800

    # PIX receiving account (embedded in every BR Code)
    pix_key: str = "ae927522-3cf8-44b1-9e65-1797ca2ce670"
    pix_merchant_name: str = "POKERWIZARD"
    pix_merchant_city: str = "SAO PAULO"

    # Auto-confirmation (stands in for the payment-network webhook)
    pix_auto_confirm_enabled: bool = True
    pix_auto_confirm_interval_ms: int = 1000
    pix_auto_confirm_threshold_ms: int = 10000

    # Rate limiting - shared store, falls back to in-process counters
    redis_url: str | None = None
    redis_socket_timeout_seconds: float = 0.5
    rate_limit_enabled: bool = True
    rate_limit_window_ms: int = 60_000
    rate_limit_auth: int = 10
    rate_limit_payments: int = 20
    rate_limit_credits: int = 60
    rate_limit_webhook: int = 60
    rate_limit_default: int = 120
    # Only behind a proxy that overwrites X-Forwarded-For
    trust_forwarded_for: bool = False

    # Anti-fraud (registration admission)
    fraud_ip_cooldown_hours: int = 24
    fraud_max_accounts_per_fingerprint: int = 2
    fraud_retention_days: int = 30
    fraud_block_disposable_emails: bool = True

    # Every I/O-bound call from a request handler is bounded by this timeout
    operation_timeout_seconds: float = 5.0

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

        if len(self.jwt_secret) < 32:
            errors.append("JWT_SECRET must be at least 32 characters")

        if self.pix_auto_confirm_interval_ms <= 0:
            errors.append("PIX_AUTO_CONFIRM_INTERVAL_MS must be positive")
        if self.pix_auto_confirm_threshold_ms < 0:
            errors.append("PIX_AUTO_CONFIRM_THRESHOLD_MS cannot be negative")
        if self.free_credits_per_account < 0:
            errors.append("FREE_CREDITS_PER_ACCOUNT cannot be negative")

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
    def is_sqlite(self) -> bool:
        """True when running against the single-file SQLite substrate."""
        return self.database_url.startswith("sqlite")

    def rate_limit_for(self, route_class: str) -> int:
        """Request budget per window for a route class."""
        limits = {
            "auth": self.rate_limit_auth,
            "payments": self.rate_limit_payments,
            "credits": self.rate_limit_credits,
            "webhook": self.rate_limit_webhook,
        }
        return limits.get(route_class, self.rate_limit_default)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
