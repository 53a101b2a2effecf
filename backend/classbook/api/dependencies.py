# backend/classbook/api/dependencies.py
"""
Service layer dependencies for dependency injection.

Factories build each orchestrator around the request-scoped session. Process
wide collaborators (settings, rate limiter, payment rails) are cached singletons
that tests swap through ``app.dependency_overrides``.
"""

from functools import lru_cache
import hmac
import logging
from typing import Generator, Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import UnauthorizedException
from ..database import get_db as original_get_db
from ..payments.registry import RailRegistry
from ..payments.stripe_gateway import StripeGateway
from ..ratelimit.limiter import RateLimiter
from ..services.booking_service import BookingOrchestrator
from ..services.cancellation_service import CancellationOrchestrator
from ..services.materializer_service import OccurrenceMaterializer
from ..services.waitlist_service import WaitlistPromoter
from ..services.webhook_service import WebhookReconciler

logger = logging.getLogger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    Get database session dependency.

    Yields:
        Database session that will be closed after use
    """
    yield from original_get_db()


def get_settings() -> Settings:
    return default_settings


@lru_cache(maxsize=1)
def get_rate_limiter() -> RateLimiter:
    return RateLimiter(settings=default_settings)


@lru_cache(maxsize=1)
def get_stripe_gateway() -> StripeGateway:
    return StripeGateway(default_settings)


def get_rail_registry(
    settings: Settings = Depends(get_settings),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> RailRegistry:
    return RailRegistry(settings, gateway=gateway)


def get_booking_orchestrator(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    rails: RailRegistry = Depends(get_rail_registry),
) -> BookingOrchestrator:
    return BookingOrchestrator(db, settings, rate_limiter=rate_limiter, rails=rails)


def get_cancellation_orchestrator(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    rails: RailRegistry = Depends(get_rail_registry),
) -> CancellationOrchestrator:
    return CancellationOrchestrator(db, settings, rate_limiter=rate_limiter, rails=rails)


def get_waitlist_promoter(
    db: Session = Depends(get_db), settings: Settings = Depends(get_settings)
) -> WaitlistPromoter:
    return WaitlistPromoter(db, settings)


def get_materializer(
    db: Session = Depends(get_db), settings: Settings = Depends(get_settings)
) -> OccurrenceMaterializer:
    return OccurrenceMaterializer(db, settings)


def get_webhook_reconciler(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> WebhookReconciler:
    return WebhookReconciler(db, settings, gateway=gateway)


def _matches(presented: str, secret: str) -> bool:
    if not secret:
        return False
    return hmac.compare_digest(presented.encode(), secret.encode())


def require_cron_auth(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Allow scheduler calls carrying the cron secret or the service-role key.

    Accepts both ``Bearer <secret>`` and the bare secret.
    """
    if not authorization:
        raise UnauthorizedException("Missing Authorization header")
    presented = authorization[7:].strip() if authorization.lower().startswith("bearer ") else authorization.strip()
    cron_secret = settings.cron_secret.get_secret_value()
    service_key = settings.service_role_key.get_secret_value()
    if _matches(presented, cron_secret) or _matches(presented, service_key):
        return
    logger.warning("Rejected scheduler call with invalid credentials")
    raise UnauthorizedException("Unauthorized")
