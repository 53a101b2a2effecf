# backend/tests/conftest.py
"""
Shared fixtures for the Classbook test suite.

Every test gets its own SQLite file so the BEGIN IMMEDIATE locking used by the
capacity ledger behaves as it does in a real deployment. Redis and Stripe are
replaced with in-process fakes; webhook signature checks still run through the
real Stripe SDK.
"""

import os

# Set before any classbook import so module-level settings pick them up
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from datetime import date, time, timedelta
import hashlib
import hmac
import itertools
import math
import threading
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from fastapi.testclient import TestClient
import pytest

from classbook.api.dependencies import get_db, get_rate_limiter, get_settings, get_stripe_gateway
from classbook.core.config import Settings
from classbook.core.enums import OccurrenceStatus
from classbook.database import Base, create_db_engine, create_session_factory
from classbook.database.session_utils import utcnow
from classbook.main import create_app
from classbook.models.occurrence import ClassSeries, Occurrence
from classbook.payments.registry import RailRegistry
from classbook.payments.stripe_gateway import StripeGateway
from classbook.ratelimit.limiter import RateLimiter
from classbook.ratelimit.token_bucket import token_bucket_decide
from classbook.repositories.payment_repository import WalletRepository
from classbook.services.booking_service import BookingOrchestrator
from classbook.services.cancellation_service import CancellationOrchestrator

TENANT_ID = "01J9TENANT0000000000000001"
WEBHOOK_SECRET = "whsec_test_secret"
CRON_SECRET = "cron-test-secret"


# ============================================================================
# Fakes
# ============================================================================


class FakeRedis:
    """Evaluates the token-bucket script with the pure Python decision function."""

    def __init__(self) -> None:
        self.buckets: Dict[str, Any] = {}
        self.calls = 0
        self._lock = threading.Lock()

    def eval(self, script, numkeys, key, capacity, refill, cost, now_ms, ttl_ms):
        with self._lock:
            self.calls += 1
            state, decision = token_bucket_decide(
                int(now_ms),
                self.buckets.get(key),
                cost=int(cost),
                refill_rate_per_second=float(refill),
                capacity=int(capacity),
            )
            if state is not None:
                self.buckets[key] = state
            if decision.allowed:
                return [1, str(decision.remaining), 0]
            retry_ms = -1 if math.isinf(decision.retry_after_s) else math.ceil(decision.retry_after_s * 1000)
            return [0, str(decision.remaining), retry_ms]


class FakeStripeGateway(StripeGateway):
    """
    Records PaymentIntent and Refund calls instead of reaching Stripe.

    ``verify_webhook`` is inherited, so signatures are checked by the SDK.
    """

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self._ids = itertools.count(1)
        self.intents: Dict[str, SimpleNamespace] = {}
        self.intents_by_key: Dict[str, str] = {}
        self.refunds: List[Dict[str, Any]] = []
        self.canceled: List[str] = []
        self.create_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None

    def create_payment_intent(self, *, amount, currency, metadata, idempotency_key, description=""):
        if self.create_error is not None:
            raise self.create_error
        if idempotency_key in self.intents_by_key:
            return self.intents[self.intents_by_key[idempotency_key]]
        intent_id = f"pi_test_{next(self._ids)}"
        intent = SimpleNamespace(
            id=intent_id,
            client_secret=f"{intent_id}_secret",
            status="requires_payment_method",
            amount=amount,
            currency=currency,
            metadata=dict(metadata),
            last_payment_error=None,
        )
        self.intents[intent_id] = intent
        self.intents_by_key[idempotency_key] = intent_id
        return intent

    def retrieve_payment_intent(self, intent_id):
        return self.intents[intent_id]

    def cancel_payment_intent(self, intent_id, *, idempotency_key):
        if self.refund_error is not None:
            raise self.refund_error
        self.canceled.append(intent_id)
        intent = self.intents.get(intent_id)
        if intent is not None:
            intent.status = "canceled"
        return intent

    def create_refund(self, *, payment_intent, amount, idempotency_key, metadata=None):
        if self.refund_error is not None:
            raise self.refund_error
        refund = {"id": f"re_test_{next(self._ids)}", "payment_intent": payment_intent, "amount": amount}
        self.refunds.append(refund)
        return SimpleNamespace(**refund)


def sign_webhook(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe does."""
    ts = int(timestamp if timestamp is not None else utcnow().timestamp())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def engine(tmp_path):
    eng = create_db_engine(f"sqlite:///{tmp_path / 'classbook_test.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============================================================================
# Collaborators
# ============================================================================


@pytest.fixture
def test_settings():
    return Settings(
        ENVIRONMENT="test",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        CRON_SECRET=CRON_SECRET,
        SERVICE_ROLE_KEY="service-role-test-key",
        INLINE_WAITLIST_PROMOTION=False,
        COMPENSATION_MAX_ATTEMPTS=2,
        CANCELLATION_CUTOFF_HOURS=2,
        OUTBOX_WEBHOOK_URL=None,
        RATE_LIMIT_ENABLED=True,
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def rate_limiter(fake_redis, test_settings):
    return RateLimiter(fake_redis, settings=test_settings)


@pytest.fixture
def stripe_gateway(test_settings):
    return FakeStripeGateway(test_settings)


@pytest.fixture
def rails(test_settings, stripe_gateway):
    return RailRegistry(test_settings, gateway=stripe_gateway)


@pytest.fixture
def booking_service(db, test_settings, rate_limiter, rails):
    return BookingOrchestrator(db, test_settings, rate_limiter=rate_limiter, rails=rails)


@pytest.fixture
def cancellation_service(db, test_settings, rate_limiter, rails):
    return CancellationOrchestrator(db, test_settings, rate_limiter=rate_limiter, rails=rails)


# ============================================================================
# Data factories
# ============================================================================


@pytest.fixture
def make_occurrence(db):
    """Create a scheduled occurrence starting ``starts_in`` from now."""

    def _make(
        *,
        capacity: Optional[int] = 10,
        price_minor: int = 0,
        starts_in: timedelta = timedelta(days=2),
        status: str = OccurrenceStatus.SCHEDULED.value,
        title: str = "Morning Flow",
        currency: str = "CHF",
    ) -> Occurrence:
        start = utcnow() + starts_in
        occurrence = Occurrence(
            tenant_id=TENANT_ID,
            title=title,
            start_time=start,
            end_time=start + timedelta(hours=1),
            capacity=capacity,
            booked_count=0,
            price_minor=price_minor,
            currency=currency,
            status=status,
        )
        db.add(occurrence)
        db.commit()
        return occurrence

    return _make


@pytest.fixture
def make_series(db):
    def _make(
        *,
        start_date: date,
        start_time: time = time(18, 0),
        pattern: Optional[Dict[str, Any]] = None,
        end_date: Optional[date] = None,
        end_count: Optional[int] = None,
        blackouts: Optional[List[str]] = None,
        tz: str = "Europe/Zurich",
        capacity: Optional[int] = 12,
        price_minor: int = 2500,
    ) -> ClassSeries:
        series = ClassSeries(
            tenant_id=TENANT_ID,
            title="Evening Vinyasa",
            start_date=start_date,
            start_time=start_time,
            duration_minutes=60,
            timezone=tz,
            recurrence_pattern=pattern or {"frequency": "weekly", "interval": 1},
            recurrence_end_date=end_date,
            recurrence_end_count=end_count,
            blackout_dates=blackouts or [],
            capacity=capacity,
            price_minor=price_minor,
            currency="CHF",
        )
        db.add(series)
        db.commit()
        return series

    return _make


@pytest.fixture
def fund_wallet(db):
    def _fund(customer_id: str, amount: int):
        wallets = WalletRepository(db)
        account = wallets.get_or_create_account(customer_id, TENANT_ID)
        if amount:
            wallets.adjust_balance(account.id, amount, description="Top-up", reference_type="topup")
        db.commit()
        return account

    return _fund


# ============================================================================
# HTTP
# ============================================================================


@pytest.fixture
def client(session_factory, test_settings, rate_limiter, stripe_gateway):
    app = create_app()

    def _get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter
    app.dependency_overrides[get_stripe_gateway] = lambda: stripe_gateway

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def cron_headers():
    return {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest.fixture
def webhook_signer():
    return sign_webhook
