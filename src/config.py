"""
Configuration management for the billing service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Relational store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    path: str = Field(default="./data/billing.db", description="SQLite database file")


class RazorpayConfig(BaseSettings):
    """
    Razorpay credentials and plan mapping.

    Security: key_secret and webhook_secret are never logged or exposed in errors.
    """

    model_config = SettingsConfigDict(
        env_prefix="RAZORPAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    key_id: str = Field(default="", description="Public key id handed to the checkout widget")
    key_secret: str = Field(default="", description="API secret (also signs payment callbacks)")
    webhook_secret: str = Field(default="", description="Secret for X-Razorpay-Signature")
    api_base: str = Field(default="https://api.razorpay.com/v1")

    # Gateway plan ids for recurring subscriptions
    plan_id_starter: str = Field(default="")
    plan_id_pro: str = Field(default="")
    plan_id_business: str = Field(default="")

    recurring_total_count: int = Field(
        default=12, ge=1, le=120, description="Billing cycles for a recurring subscription"
    )

    @field_validator("api_base")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    @property
    def plan_ids(self) -> dict[str, str]:
        """Local plan id -> gateway plan id (only configured entries)."""
        mapping = {
            "starter": self.plan_id_starter,
            "pro": self.plan_id_pro,
            "business": self.plan_id_business,
        }
        return {plan: gateway_id for plan, gateway_id in mapping.items() if gateway_id}


class CashfreeConfig(BaseSettings):
    """Cashfree credentials (one-time orders only)."""

    model_config = SettingsConfigDict(
        env_prefix="CASHFREE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_id: str = Field(default="")
    secret_key: str = Field(default="")
    api_base: str = Field(default="https://sandbox.cashfree.com")
    api_version: str = Field(default="2023-08-01")

    @field_validator("api_base")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.app_id and self.secret_key)


class GatewayConfig(BaseSettings):
    """Provider selection and resilience settings shared by all gateway adapters."""

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    subscription_provider: Literal["razorpay", "cashfree"] = Field(default="razorpay")
    catalog_provider: Literal["razorpay", "cashfree"] = Field(default="razorpay")

    timeout_seconds: float = Field(
        default=10.0, gt=0, le=60, description="Per-request timeout for gateway calls"
    )

    # Retry configuration (transient failures only)
    retry_attempts: int = Field(default=3, ge=1, le=5)
    retry_min_wait_seconds: float = Field(default=0.5, ge=0)
    retry_max_wait_seconds: float = Field(default=4.0, ge=0)

    # Circuit breaker
    breaker_fail_max: int = Field(default=5, ge=1)
    breaker_reset_timeout_seconds: int = Field(default=30, ge=1)

    @field_validator("retry_max_wait_seconds")
    @classmethod
    def validate_max_wait(cls, v: float, info) -> float:
        min_wait = info.data.get("retry_min_wait_seconds", 0.5)
        if v < min_wait:
            raise ValueError(
                f"retry_max_wait_seconds ({v}) must be >= retry_min_wait_seconds ({min_wait})"
            )
        return v


class BillingConfig(BaseSettings):
    """Plan purchase and entitlement policy."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    currency: str = Field(default="INR", min_length=3, max_length=3)
    max_duration_months: int = Field(
        default=24, ge=1, le=120, description="Longest one-time purchase accepted"
    )
    free_default_period_days: int = Field(
        default=365, ge=1, description="Period length reported for the implicit free tier"
    )
    past_due_grace_days: int = Field(
        default=3, ge=0, le=30, description="Days a past_due subscription keeps its plan"
    )

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        if not v.isalpha():
            raise ValueError(f"currency must be an ISO 4217 code, got {v!r}")
        return v.upper()


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_", extra="ignore")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = Field(default=False)
    workers: int = Field(default=1, ge=1)

    rate_limit_enabled: bool = Field(default=True)
    order_rate_limit: str = Field(default="20/minute", description="slowapi limit for order creation")
    verify_rate_limit: str = Field(default="30/minute", description="slowapi limit for verification")


class CORSConfig(BaseSettings):
    """CORS configuration for API security."""

    model_config = SettingsConfigDict(env_prefix="CORS_", extra="ignore")

    allowed_origins: str = Field(
        default="*", description="Comma-separated list of allowed origins (* for all, ONLY for dev)"
    )
    allow_credentials: bool = Field(default=True)
    allowed_methods: str = Field(default="GET,POST,OPTIONS")
    allowed_headers: str = Field(default="*")
    max_age: int = Field(default=600, ge=0)

    @property
    def origins_list(self) -> list[str]:
        """Parse comma-separated origins into list."""
        if self.allowed_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def methods_list(self) -> list[str]:
        return [method.strip() for method in self.allowed_methods.split(",") if method.strip()]

    @property
    def headers_list(self) -> list[str]:
        if self.allowed_headers == "*":
            return ["*"]
        return [header.strip() for header in self.allowed_headers.split(",") if header.strip()]


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    json_output: bool = Field(
        default=True, description="Use JSON output (True for production, False for development)"
    )
    colorized: bool = Field(default=False)

    slow_request_warning_ms: float = Field(default=500.0, ge=0.0)
    slow_request_error_ms: float = Field(default=2000.0, ge=0.0)

    service_name: str = Field(default="billing-service")
    service_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = Field(default="development")


class Settings(BaseSettings):
    """Root configuration for the billing service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    razorpay: RazorpayConfig = Field(default_factory=RazorpayConfig)
    cashfree: CashfreeConfig = Field(default_factory=CashfreeConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    cors: CORSConfig = Field(default_factory=CORSConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if not self.razorpay.is_configured:
            logging.warning("Razorpay credentials not configured - Razorpay checkout disabled")
        elif not self.razorpay.webhook_secret:
            logging.warning("Razorpay webhook secret not configured - webhooks will be rejected")

        if not self.cashfree.is_configured:
            logging.warning("Cashfree credentials not configured - Cashfree checkout disabled")

        for role, provider in (
            ("subscription", self.gateway.subscription_provider),
            ("catalog", self.gateway.catalog_provider),
        ):
            configured = (
                self.razorpay.is_configured
                if provider == "razorpay"
                else self.cashfree.is_configured
            )
            if not configured:
                logging.warning(
                    f"Selected {role} gateway '{provider}' has no credentials configured"
                )

        missing_plan_ids = {"starter", "pro", "business"} - set(self.razorpay.plan_ids)
        if self.razorpay.is_configured and missing_plan_ids:
            logging.warning(
                f"Recurring plan ids not configured for: {', '.join(sorted(missing_plan_ids))}"
            )


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings
