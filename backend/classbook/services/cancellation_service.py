"""
Cancellation orchestrator.

The seat is released in the same transaction that cancels the registration.
The refund runs afterwards against the payment rail; a refund that cannot be
completed right away never undoes the cancellation, it is recorded as pending
and retried by the reconciliation sweep.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import uuid

from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.enums import HoldStatus, PaymentStatus, RailOutcome, RegistrationStatus
from ..core.exceptions import (
    InvalidStateException,
    NotFoundException,
    PolicyViolationException,
    ServiceException,
    ValidationException,
)
from ..database.session_utils import as_utc, utcnow
from ..idempotency.store import IdempotencyStore, request_fingerprint
from ..models.payment import Payment
from ..models.registration import Registration
from ..monitoring.prometheus_metrics import cancellations_total
from ..payments.registry import RailRegistry
from ..ratelimit.limiter import RateLimiter
from ..repositories.event_outbox_repository import EventOutboxRepository
from ..repositories.occurrence_repository import OccurrenceRepository
from ..repositories.payment_repository import PaymentRepository
from ..repositories.registration_repository import CapacityHoldRepository, RegistrationRepository
from .base import BaseService
from .capacity_ledger import CapacityLedger
from .waitlist_service import WaitlistPromoter

CANCEL_OPERATION = "cancel"
DEFAULT_REASON = "User requested cancellation"
REFUND_PENDING_MESSAGE = "Refund will be processed separately"


@dataclass
class CancellationResult:
    registration_id: str
    occurrence_id: str
    customer_id: str
    canceled_at: datetime
    idempotency_key: str
    refund: Optional[Dict[str, Any]] = None
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "registrationId": self.registration_id,
            "occurrenceId": self.occurrence_id,
            "customerId": self.customer_id,
            "status": "cancelled",
            "refund": self.refund,
            "cancelledAt": self.canceled_at.isoformat(),
            "idempotencyKey": self.idempotency_key,
        }


class CancellationOrchestrator(BaseService):
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        rails: Optional[RailRegistry] = None,
    ):
        super().__init__(db, settings)
        self.rate_limiter = rate_limiter or RateLimiter(settings=self.settings)
        self.rails = rails or RailRegistry(self.settings)
        self.idempotency = IdempotencyStore(db, self.settings)
        self.occurrences = OccurrenceRepository(db)
        self.registrations = RegistrationRepository(db)
        self.holds = CapacityHoldRepository(db)
        self.payments = PaymentRepository(db)
        self.outbox = EventOutboxRepository(db)
        self.ledger = CapacityLedger(db, self.occurrences)

    @BaseService.measure_operation("cancel")
    def cancel(
        self,
        registration_id: str,
        *,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        client_ip: str = "unknown",
    ) -> Dict[str, Any]:
        """
        Cancel a confirmed registration and refund whatever it paid.

        Raises:
            RateLimitedException: the per-IP cancel bucket is empty
            NotFoundException: unknown registration
            InvalidStateException: the registration is not confirmed
            PolicyViolationException: the class starts inside the cancellation cutoff
        """
        if not registration_id:
            raise ValidationException("Missing required field: registrationId", code="MISSING_FIELD")

        key = idempotency_key or str(uuid.uuid4())
        reservation = self.idempotency.get_or_reserve(
            CANCEL_OPERATION,
            key,
            request_fingerprint({"registrationId": registration_id, "reason": reason, "actorId": actor_id}),
        )
        if not reservation.is_new:
            stored = reservation.existing_result
            if stored is None:
                raise ServiceException("Idempotent replay without a stored response")
            return stored.body

        try:
            self.rate_limiter.enforce("cancel", client_ip)
            registration = self._cancel_registration(registration_id, reason or DEFAULT_REASON, actor_id)
        except Exception:
            self.db.rollback()
            self.idempotency.release(reservation)
            raise

        refund = self._refund(registration)
        result = CancellationResult(
            registration_id=registration.id,
            occurrence_id=registration.occurrence_id,
            customer_id=registration.customer_id,
            canceled_at=as_utc(registration.canceled_at) or utcnow(),
            idempotency_key=key,
            refund=refund,
        )
        body = result.to_dict()
        with self.transaction():
            self.idempotency.complete(reservation, 200, body)

        cancellations_total.labels(refund=(refund or {}).get("status", "none")).inc()
        self.logger.info(
            "Registration canceled",
            extra={"registration_id": registration.id, "refund_status": (refund or {}).get("status")},
        )
        if self.settings.inline_waitlist_promotion:
            self._promote_inline(registration.occurrence_id)
        return body

    # ------------------------------------------------------------- phases
    def _cancel_registration(self, registration_id: str, reason: str, actor_id: Optional[str]) -> Registration:
        registration = self.registrations.get_by_id(registration_id)
        if registration is None:
            raise NotFoundException("Registration not found", code="REGISTRATION_NOT_FOUND")
        if registration.status != RegistrationStatus.CONFIRMED.value:
            raise InvalidStateException(
                f"Registration cannot be cancelled (current status: {registration.status})",
                details={"status": registration.status},
            )

        occurrence = self.occurrences.get_by_id(registration.occurrence_id)
        now = utcnow()
        if occurrence is not None:
            cutoff = timedelta(hours=self.settings.cancellation_cutoff_hours)
            starts_at = as_utc(occurrence.start_time)
            if starts_at - now < cutoff:
                raise PolicyViolationException(
                    f"Cancellations must be made at least {self.settings.cancellation_cutoff_hours:g} hours before the class starts",
                    code="CANCELLATION_WINDOW_CLOSED",
                    details={"startsAt": starts_at.isoformat()},
                )

        with self.transaction():
            won = self.registrations.transition(
                registration.id,
                from_statuses=[RegistrationStatus.CONFIRMED],
                to_status=RegistrationStatus.CANCELED,
                reason=reason,
                actor_id=actor_id,
                cancellation_reason=reason,
                canceled_at=now,
                canceled_by=actor_id,
            )
            if not won:
                current = self.registrations.refresh_by_id(registration.id)
                raise InvalidStateException(
                    f"Registration cannot be cancelled (current status: {current.status if current else 'unknown'})"
                )
            self.ledger.release(registration.occurrence_id)
            hold = self.holds.for_registration(registration.id)
            if hold is not None:
                self.holds.resolve(hold.id, HoldStatus.RELEASED)
            self.outbox.enqueue(
                "registration.canceled",
                registration.id,
                {
                    "registrationId": registration.id,
                    "occurrenceId": registration.occurrence_id,
                    "customerId": registration.customer_id,
                    "reason": reason,
                    "actorId": actor_id,
                },
                tenant_id=registration.tenant_id,
            )
            # Commits with the cancellation so the sweep owns the refund if we die before it runs
            charge = self.payments.refundable_charge(registration.id)
            if charge is not None:
                self.rails.get(charge.rail, self.db).record_refund(
                    charge, status=PaymentStatus.PENDING, metadata={"reason": reason}
                )
        return registration

    def _refund(self, registration: Registration) -> Optional[Dict[str, Any]]:
        charge = self.payments.refundable_charge(registration.id)
        if charge is None:
            return None

        was_paid = charge.status == PaymentStatus.PAID.value
        rail = self.rails.get(charge.rail, self.db)
        try:
            with self.transaction():
                outcome = rail.refund(charge)
                if was_paid:
                    self.registrations.transition(
                        registration.id,
                        from_statuses=[RegistrationStatus.CANCELED],
                        to_status=RegistrationStatus.REFUNDED,
                        reason="refund completed",
                    )
                self.outbox.enqueue(
                    "refund.completed",
                    charge.id,
                    {
                        "paymentId": charge.id,
                        "registrationId": registration.id,
                        "amount": charge.amount,
                        "currency": charge.currency,
                    },
                    tenant_id=registration.tenant_id,
                )
            refund = outcome.describe()
            refund["status"] = RailOutcome.COMPLETED.value
            return refund
        except ServiceException as exc:
            self.logger.warning(
                "Refund could not be completed; recorded as pending",
                extra={"registration_id": registration.id, "payment_id": charge.id, "error": exc.message},
            )
            error = exc.message
        except Exception as exc:
            self.logger.exception(
                "Payment rail raised unexpectedly during refund; recorded as pending",
                extra={"registration_id": registration.id, "payment_id": charge.id},
            )
            error = str(exc) or type(exc).__name__
        self._record_pending_refund(charge, registration, error)
        return {
            "status": RailOutcome.PENDING.value,
            "message": REFUND_PENDING_MESSAGE,
            "paymentId": charge.id,
        }

    def _record_pending_refund(self, charge: Payment, registration: Registration, error: str) -> None:
        rail = self.rails.get(charge.rail, self.db)
        with self.transaction():
            rail.record_refund(charge, status=PaymentStatus.PENDING, metadata={"lastError": error[:500]})
            self.outbox.enqueue(
                "refund.pending",
                charge.id,
                {"paymentId": charge.id, "registrationId": registration.id, "error": error},
                tenant_id=registration.tenant_id,
            )

    def _promote_inline(self, occurrence_id: str) -> None:
        try:
            WaitlistPromoter(self.db, self.settings).promote_occurrence(occurrence_id)
        except Exception:
            # The scheduled promoter picks the seat up on its next tick
            self.logger.exception("Inline waitlist promotion failed", extra={"occurrence_id": occurrence_id})
