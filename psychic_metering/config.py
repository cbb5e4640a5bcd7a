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
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Psychic Chat Metering API"
    api_version: str = "0.1.0"
    api_description: str = "Per-minute credit metering for AI psychic chat sessions"
    cors_allowed_origins: str = "http://localhost:5173"  # Comma-separated

    # Security
    access_token_secret: str = ""  # HS256 secret shared with the identity service
    payment_service_api_key: str = ""  # X-API-Key used by the payment service for top-ups

    @property
    def allowed_origins(self) -> list[str]:
        """Get list of allowed CORS / Socket.IO origins."""
        return [o.strip() for o in self.cors_allowed_origins.split(",") if o.strip()]

    # Metering
    free_trial_seconds: int = 60
    sweep_interval_seconds: float = 1.0
    scheduler_enabled: bool = True

    # Reply generation (OpenAI-compatible completion API)
    reply_api_url: str = "https://api.openai.com/v1"
    reply_api_key: str = ""
    reply_model: str = "gpt-4o-mini"
    reply_timeout_seconds: float = 5.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "psychic-metering-api"

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

        if not self.access_token_secret:
            errors.append("ACCESS_TOKEN_SECRET is required but empty or missing")

        if self.free_trial_seconds <= 0:
            errors.append(f"FREE_TRIAL_SECONDS must be positive, got: {self.free_trial_seconds}")

        if self.sweep_interval_seconds <= 0:
            errors.append(
                f"SWEEP_INTERVAL_SECONDS must be positive, got: {self.sweep_interval_seconds}"
            )

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
