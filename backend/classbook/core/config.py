# backend/classbook/core/config.py
import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)


class Settings(BaseSettings):
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Storage
    database_url: str = Field(
        default="sqlite:///./classbook.db",
        alias="DATABASE_URL",
        description="SQLAlchemy URL for the transactional store",
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Stripe
    stripe_secret_key: SecretStr = Field(
        default=SecretStr(""),
        alias="STRIPE_SECRET_KEY",
        description="Stripe secret API key",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        alias="STRIPE_WEBHOOK_SECRET",
        description="Signing secret used to verify Stripe webhook deliveries",
    )
    stripe_timeout_seconds: int = Field(default=8, alias="STRIPE_TIMEOUT_SECONDS")
    stripe_max_network_retries: int = Field(default=1, alias="STRIPE_MAX_NETWORK_RETRIES")
    stripe_webhook_tolerance_seconds: int = Field(
        default=300,
        alias="STRIPE_WEBHOOK_TOLERANCE_SECONDS",
        description="Maximum age of a signed webhook timestamp",
    )

    # Cron-only endpoints
    cron_secret: SecretStr = Field(
        default=SecretStr(""),
        alias="CRON_SECRET",
        description="Shared secret expected in Authorization for scheduled job endpoints",
    )
    service_role_key: SecretStr = Field(
        default=SecretStr(""),
        alias="SERVICE_ROLE_KEY",
        description="Elevated credential accepted by scheduled job endpoints",
    )

    # Booking policy
    cancellation_cutoff_hours: float = Field(default=2.0, alias="CANCELLATION_CUTOFF_HOURS")
    hold_ttl_seconds: int = Field(
        default=900,
        alias="HOLD_TTL_SECONDS",
        description="Lifetime of a capacity hold before the promoter reclaims it",
    )
    inline_waitlist_promotion: bool = Field(default=True, alias="INLINE_WAITLIST_PROMOTION")
    compensation_max_attempts: int = Field(default=3, alias="COMPENSATION_MAX_ATTEMPTS")

    # Idempotency
    idempotency_ttl_seconds: int = Field(default=86400, alias="IDEMPOTENCY_TTL_SECONDS")
    idempotency_pending_timeout_seconds: int = Field(
        default=120,
        alias="IDEMPOTENCY_PENDING_TIMEOUT_SECONDS",
        description="Age after which an unfinished reservation may be taken over",
    )

    # Materializer
    materializer_horizon_days: int = Field(default=120, alias="MATERIALIZER_HORIZON_DAYS")

    # Invoice rail
    invoice_tax_rate: str = Field(default="0.077", alias="INVOICE_TAX_RATE")
    invoice_due_days: int = Field(default=14, alias="INVOICE_DUE_DAYS")

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_namespace: str = Field(default="classbook", alias="RATE_LIMIT_NAMESPACE")

    # Outbox delivery
    outbox_webhook_url: Optional[str] = Field(
        default=None,
        alias="OUTBOX_WEBHOOK_URL",
        description="Endpoint receiving domain events; events are logged when unset",
    )
    outbox_batch_size: int = Field(default=50, alias="OUTBOX_BATCH_SIZE")

    # Payment reconciliation
    payment_reconcile_grace_seconds: int = Field(default=900, alias="PAYMENT_RECONCILE_GRACE_SECONDS")

    # HTTP
    cors_origins_raw: str = Field(default="*", alias="CORS_ORIGINS")

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins_raw.split(",") if origin.strip()]


settings = Settings()
