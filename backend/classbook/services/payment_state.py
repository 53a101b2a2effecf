"""
Payment outcome transitions shared by the webhook reconciler and the
reconciliation sweep.

Every method joins the caller's transaction and is safe to repeat: the status
changes are conditional, and outbox rows carry a per-payment idempotency key,
so a redelivered event changes nothing and emits nothing new.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.enums import HoldStatus, PaymentKind, PaymentStatus, RegistrationStatus
from ..database.session_utils import utcnow
from ..models.payment import Payment
from ..repositories.event_outbox_repository import EventOutboxRepository
from ..repositories.payment_repository import PaymentRepository
from ..repositories.registration_repository import CapacityHoldRepository, RegistrationRepository
from .capacity_ledger import CapacityLedger

logger = logging.getLogger(__name__)

PAYMENT_FAILED_REASON = "Payment failed"


class PaymentStateService:
    def __init__(self, db: Session):
        self.db = db
        self.payments = PaymentRepository(db)
        self.registrations = RegistrationRepository(db)
        self.holds = CapacityHoldRepository(db)
        self.outbox = EventOutboxRepository(db)
        self.ledger = CapacityLedger(db)

    def find_charge(self, external_ref: Optional[str], metadata: Optional[Dict[str, Any]] = None) -> Optional[Payment]:
        """Locate a charge by gateway reference, falling back to our id in the intent metadata."""
        payment = self.payments.get_by_external_ref(external_ref) if external_ref else None
        if payment is None and metadata and metadata.get("paymentId"):
            payment = self.payments.get_by_id(metadata["paymentId"])
        return payment

    def mark_paid(self, payment: Payment, external_ref: Optional[str] = None) -> str:
        """
        Record a captured charge.

        Returns ``"paid"`` when the state changed, ``"duplicate"`` when it was
        already paid, and ``"orphaned"`` when the money arrived for a charge we
        had already given up on.
        """
        won = self.payments.transition(
            payment.id,
            from_statuses=[PaymentStatus.PENDING],
            to_status=PaymentStatus.PAID,
            confirmed_at=utcnow(),
            external_ref=external_ref or payment.external_ref,
        )
        registration = self.registrations.get_by_id(payment.registration_id)
        if won:
            self.outbox.enqueue(
                "payment.succeeded",
                payment.id,
                {
                    "paymentId": payment.id,
                    "registrationId": payment.registration_id,
                    "occurrenceId": registration.occurrence_id if registration else None,
                    "externalRef": external_ref or payment.external_ref,
                    "amount": payment.amount,
                    "currency": payment.currency,
                },
                tenant_id=payment.tenant_id,
                idempotency_key=f"payment.succeeded:{payment.id}",
            )
            if registration is not None and not registration.is_active:
                self._flag_orphan(payment, "registration no longer active")
                return "orphaned"
            return "paid"

        self.payments.refresh_by_id(payment.id)
        if payment.status == PaymentStatus.PAID.value:
            return "duplicate"
        self._flag_orphan(payment, f"charge was {payment.status} when capture arrived")
        return "orphaned"

    def mark_failed(self, payment: Payment, reason: str) -> bool:
        """
        Fail a pending charge and undo the booking it was paying for.

        Cancels the registration, gives the seat back, releases any active hold
        and records one ``payment.failed`` outbox event. Returns False when the
        charge was no longer pending.
        """
        won = self.payments.transition(
            payment.id,
            from_statuses=[PaymentStatus.PENDING],
            to_status=PaymentStatus.FAILED,
            failure_reason=(reason or PAYMENT_FAILED_REASON)[:1000],
            failed_at=utcnow(),
        )
        if not won:
            return False

        registration = self.registrations.get_by_id(payment.registration_id)
        occurrence_id = registration.occurrence_id if registration else None
        if registration is not None:
            canceled = self.registrations.transition(
                registration.id,
                from_statuses=[RegistrationStatus.PENDING, RegistrationStatus.CONFIRMED],
                to_status=RegistrationStatus.CANCELED,
                reason=PAYMENT_FAILED_REASON,
                cancellation_reason=PAYMENT_FAILED_REASON,
                canceled_at=utcnow(),
            )
            if canceled:
                self.ledger.release(registration.occurrence_id)
            hold = self.holds.for_registration(registration.id)
            if hold is not None:
                self.holds.resolve(hold.id, HoldStatus.RELEASED)

        self.outbox.enqueue(
            "payment.failed",
            payment.id,
            {
                "paymentId": payment.id,
                "registrationId": payment.registration_id,
                "occurrenceId": occurrence_id,
                "externalRef": payment.external_ref,
                "failureReason": reason,
            },
            tenant_id=payment.tenant_id,
            idempotency_key=f"payment.failed:{payment.id}",
        )
        return True

    def record_gateway_refund(self, charge: Payment, amount_refunded: int, external_ref: Optional[str]) -> int:
        """
        Bring our refund rows in line with the total the gateway reports refunded.

        Returns the amount newly recorded (zero when we already knew about it).
        """
        rows = self.payments.refunds_for(charge.id)
        for row in rows:
            if row.status == PaymentStatus.PENDING.value:
                # A refund we could not confirm earlier went through after all
                self.payments.transition(
                    row.id,
                    from_statuses=[PaymentStatus.PENDING],
                    to_status=PaymentStatus.REFUNDED,
                    confirmed_at=utcnow(),
                    external_ref=row.external_ref or external_ref,
                )
        known = sum(-row.amount for row in self.payments.refunds_for(charge.id) if row.status == PaymentStatus.REFUNDED.value)
        missing = amount_refunded - known
        if missing > 0:
            self.payments.create(
                registration_id=charge.registration_id,
                tenant_id=charge.tenant_id,
                customer_id=charge.customer_id,
                rail=charge.rail,
                kind=PaymentKind.REFUND.value,
                amount=-missing,
                currency=charge.currency,
                status=PaymentStatus.REFUNDED.value,
                external_ref=external_ref,
                parent_payment_id=charge.id,
                payment_metadata={"originalPaymentId": charge.id, "source": "gateway"},
                confirmed_at=utcnow(),
            )
        if amount_refunded >= charge.amount:
            self.payments.transition(
                charge.id,
                from_statuses=[PaymentStatus.PAID, PaymentStatus.PENDING],
                to_status=PaymentStatus.REFUNDED,
            )
        return max(missing, 0)

    def _flag_orphan(self, payment: Payment, why: str) -> None:
        logger.warning(
            "Captured payment has no active booking; manual refund required",
            extra={"payment_id": payment.id, "registration_id": payment.registration_id, "reason": why},
        )
        self.outbox.enqueue(
            "payment.orphaned",
            payment.id,
            {"paymentId": payment.id, "registrationId": payment.registration_id, "reason": why},
            tenant_id=payment.tenant_id,
            idempotency_key=f"payment.orphaned:{payment.id}",
        )
