"""
Application Configuration - Pydantic Settings loaded from the environment.

Stripe credentials come in as lists (one entry per selling account), so
several keys and webhook secrets can be configured in a single variable.
Missing or nonsensical critical values stop the process at import time.
"""

import re
import sys
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""


def _split_multi_value(raw: str) -> list[str]:
    """Split a newline or comma separated value into unique, non-empty entries."""
    values: list[str] = []
    for part in re.split(r"[\r\n,]+", raw or ""):
        part = part.strip()
        if part and part not in values:
            values.append(part)
    return values


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database (primary required, replica optional)
    database_url: str = ""
    database_read_url: str | None = None
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    migrate_on_startup: bool = True

    # HTTP surface
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Access Reconciliation API"
    api_version: str = "0.1.0"
    api_description: str = "Per-product access reconciliation for Stripe payment links"
    cors_origins: str = "*"

    # Shared secret for operator endpoints (sync, product gating)
    admin_api_key: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"

    # Metrics and tracing
    metrics_enabled: bool = True
    tracing_enabled: bool = True
    tracing_sample_ratio: float = 1.0
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "access-reconciler"

    # Stripe: keys are tried in order when looking up a session
    stripe_api_keys: str = ""
    stripe_webhook_secrets: str = ""
    stripe_max_network_retries: int = 2

    # Access delivery
    access_mail_policy: Literal["never", "always", "new_users_only"] = "new_users_only"
    access_token_ttl_minutes: int = 30
    access_base_url: str = "http://localhost:8000"

    # Reconciliation
    default_currency: str = "EUR"
    sync_page_size: int = 100

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def _config_errors(self) -> list[str]:
        errors: list[str] = []
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )
        if not 1 <= self.sync_page_size <= 100:
            # Stripe list endpoints cap limit at 100.
            errors.append(f"SYNC_PAGE_SIZE must be between 1 and 100, got: {self.sync_page_size}")
        if self.access_token_ttl_minutes < 1:
            errors.append("ACCESS_TOKEN_TTL_MINUTES must be positive")
        if not 0.0 <= self.tracing_sample_ratio <= 1.0:
            errors.append(
                f"TRACING_SAMPLE_RATIO must be within [0, 1], got: {self.tracing_sample_ratio}"
            )
        return errors

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """Refuse to build settings the service cannot run with."""
        errors = self._config_errors()
        if errors:
            banner = "=" * 60
            error_msg = "\n".join(
                [
                    "",
                    banner,
                    "CRITICAL CONFIGURATION ERROR - ACCESS RECONCILER CANNOT START",
                    banner,
                    *[f"  ✗ {e}" for e in errors],
                    banner,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)
        return self

    @property
    def read_database_url(self) -> str:
        """Replica URL, or the primary when no replica is configured."""
        return self.database_read_url or self.database_url

    @property
    def stripe_api_key_list(self) -> list[str]:
        """Configured Stripe secret keys, in lookup order."""
        return _split_multi_value(self.stripe_api_keys)

    @property
    def stripe_webhook_secret_list(self) -> list[str]:
        """Configured webhook signing secrets, in verification order."""
        return _split_multi_value(self.stripe_webhook_secrets)

    @property
    def cors_origin_list(self) -> list[str]:
        return _split_multi_value(self.cors_origins)


# Validates at import time
settings = Settings()
