"""
Application settings and configuration management.
"""
from decimal import Decimal
from typing import List
from pydantic_settings import BaseSettings
from pydantic import field_validator


DEFAULT_JWT_SECRET = "change-this-jwt-secret-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Settings
    environment: str = "development"
    app_version: str = "1.0.0"
    release_version: str = "v1.0.0"

    # Database
    database_url: str = "sqlite:///./carepro.db"

    # Redis Configuration (Celery broker and rate limit storage)
    redis_url: str = "redis://localhost:6379"

    # JWT Configuration
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"

    # CORS Settings
    allowed_origins: str = "http://localhost:3000,http://localhost:5173"

    # Logging
    log_level: str = "INFO"

    # Payment Gateway
    gateway_provider: str = "mock"  # "mock" or "flutterwave"
    flutterwave_base_url: str = "https://api.flutterwave.com"
    flutterwave_secret_key: str = ""
    flutterwave_public_key: str = ""
    flutterwave_webhook_hash: str = ""
    gateway_timeout_seconds: float = 30.0

    # Billing
    default_currency: str = "NGN"
    max_retry_attempts: int = 3
    retry_backoff_base_hours: int = 4
    billing_interval_seconds: int = 300  # 5 minutes
    charge_claim_timeout_seconds: int = 900
    card_verification_amount: Decimal = Decimal("50")
    amount_tolerance: Decimal = Decimal("0.01")
    payment_title: str = "CarePro Service Payment"

    # Notifications
    admin_notification_recipients: str = ""

    # Monitoring & Observability
    sentry_dsn: str = ""
    sentry_traces_sample_rate: float = 0.1
    sentry_profiles_sample_rate: float = 0.1
    enable_metrics: bool = True

    # Rate Limiting
    enable_rate_limiting: bool = True
    rate_limit_storage_uri: str = "memory://"
    global_rate_limit: str = "1000/hour"

    # Production Security Configuration
    enable_docs: bool = True

    @field_validator("allowed_origins", "admin_notification_recipients")
    def validate_comma_list(cls, v):
        """Convert comma-separated string to list."""
        if isinstance(v, list):
            return v
        return [item.strip() for item in v.split(",") if item.strip()]

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def validate_production_config(self) -> List[str]:
        """Validate production configuration and return list of issues."""
        issues = []

        if self.is_production:
            if self.enable_docs:
                issues.append("API documentation should be disabled in production")

            if "localhost" in str(self.allowed_origins):
                issues.append("Localhost origins should be removed in production")

            if self.gateway_provider == "mock":
                issues.append("Payment gateway should be 'flutterwave' in production")

            if not self.flutterwave_secret_key:
                issues.append("Flutterwave secret key is not configured")

            if not self.flutterwave_webhook_hash:
                issues.append("Flutterwave webhook hash is not configured; webhooks will be rejected")

            if self.jwt_secret == DEFAULT_JWT_SECRET:
                issues.append("JWT secret must be changed from default value")

            if len(self.jwt_secret) < 32:
                issues.append("JWT secret should be at least 32 characters long")

            if not self.admin_notification_recipients:
                issues.append("No admin notification recipients configured")

        return issues

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
