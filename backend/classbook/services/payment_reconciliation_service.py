"""
Periodic sweep that settles card charges the webhook path never finished and
retries refunds that could not be completed during cancellation.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session
import stripe

from ..core.config import Settings
from ..core.enums import PaymentRailKind, PaymentStatus, RegistrationStatus
from ..core.exceptions import ServiceException
from ..database.session_utils import utcnow
from ..models.payment import Payment
from ..payments.card import CardRail, charge_idempotency_key
from ..payments.registry import RailRegistry
from ..repositories.event_outbox_repository import EventOutboxRepository
from ..repositories.payment_repository import PaymentRepository
from ..repositories.registration_repository import RegistrationRepository
from .base import BaseService
from .payment_state import PaymentStateService

FAILED_INTENT_STATES = {"canceled"}


class PaymentReconciliationService(BaseService):
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        *,
        rails: Optional[RailRegistry] = None,
    ):
        super().__init__(db, settings)
        self.rails = rails or RailRegistry(self.settings)
        self.payments = PaymentRepository(db)
        self.registrations = RegistrationRepository(db)
        self.outbox = EventOutboxRepository(db)
        self.state = PaymentStateService(db)

    @BaseService.measure_operation("payments.sweep")
    def sweep(self) -> Dict[str, Any]:
        cutoff = utcnow() - timedelta(seconds=self.settings.payment_reconcile_grace_seconds)
        # Refunds first: voiding an uncaptured charge settles it before the charge pass sees it
        refunds = self.retry_pending_refunds(older_than=cutoff)
        counts = {"reissued": 0, "paid": 0, "failed": 0, "unchanged": 0, "errors": 0}
        for charge in self.payments.stale_pending_charges(PaymentRailKind.CARD, cutoff):
            try:
                with self.transaction():
                    counts[self._reconcile_charge(charge)] += 1
            except (ServiceException, stripe.StripeError) as exc:
                counts["errors"] += 1
                self.logger.warning(
                    "Could not reconcile pending charge",
                    extra={"payment_id": charge.id, "error": str(exc)},
                )

        summary = {**counts, "refundsRetried": refunds["retried"], "refundsCompleted": refunds["completed"]}
        self.logger.info("Payment reconciliation finished", extra=summary)
        return summary

    def _reconcile_charge(self, charge: Payment) -> str:
        registration = self.registrations.get_by_id(charge.registration_id)
        if registration is None or registration.status != RegistrationStatus.CONFIRMED.value:
            if any(row.status == PaymentStatus.PENDING.value for row in self.payments.refunds_for(charge.id)):
                # A pending refund still has to void the intent at Stripe
                return "unchanged"
            self.payments.transition(
                charge.id,
                from_statuses=[PaymentStatus.PENDING],
                to_status=PaymentStatus.FAILED,
                failure_reason="registration no longer active",
                failed_at=utcnow(),
            )
            return "failed"

        card = self.rails.get(PaymentRailKind.CARD, self.db)
        if not isinstance(card, CardRail):
            raise ServiceException(
                "Card charges can only be reconciled against a Stripe-backed rail",
                details={"rail": type(card).__name__},
            )
        if not charge.external_ref:
            # Same idempotency key as the original attempt, so Stripe returns the
            # intent it may already have created instead of a second one
            intent = card.gateway.create_payment_intent(
                amount=charge.amount,
                currency=charge.currency,
                metadata=card.intent_metadata(charge, registration),
                idempotency_key=charge_idempotency_key(charge.id),
            )
            charge.external_ref = intent.id
            self.db.flush()
            return "reissued"

        intent = card.gateway.retrieve_payment_intent(charge.external_ref)
        status = getattr(intent, "status", None)
        if status == "succeeded":
            self.state.mark_paid(charge, intent.id)
            return "paid"
        if status in FAILED_INTENT_STATES:
            error = getattr(intent, "last_payment_error", None)
            reason = getattr(error, "message", None) or f"Payment intent {status}"
            self.state.mark_failed(charge, reason)
            return "failed"
        return "unchanged"

    def retry_pending_refunds(self, older_than: Optional[datetime] = None) -> Dict[str, int]:
        """
        Re-run the rail refund for every pending refund row.

        ``older_than`` skips rows written inside the grace window, which are
        usually cancellations whose inline refund is still running.
        """
        retried = completed = 0
        for placeholder in self.payments.pending_refunds(older_than):
            charge = self.payments.get_by_id(placeholder.parent_payment_id) if placeholder.parent_payment_id else None
            if charge is None:
                self.logger.error("Pending refund without a charge", extra={"refund_id": placeholder.id})
                continue
            if charge.status not in (PaymentStatus.PAID.value, PaymentStatus.PENDING.value):
                self.logger.warning(
                    "Pending refund on a closed charge; leaving for manual review",
                    extra={"refund_id": placeholder.id, "charge_status": charge.status},
                )
                continue
            retried += 1
            was_paid = charge.status == PaymentStatus.PAID.value
            rail = self.rails.get(charge.rail, self.db)
            try:
                with self.transaction():
                    rail.refund(charge)
                    if was_paid:
                        self.registrations.transition(
                            charge.registration_id,
                            from_statuses=[RegistrationStatus.CANCELED],
                            to_status=RegistrationStatus.REFUNDED,
                            reason="refund completed",
                        )
                    self.outbox.enqueue(
                        "refund.completed",
                        charge.id,
                        {"paymentId": charge.id, "registrationId": charge.registration_id, "amount": charge.amount},
                        tenant_id=charge.tenant_id,
                    )
                completed += 1
            except ServiceException as exc:
                self.logger.warning(
                    "Refund retry failed",
                    extra={"payment_id": charge.id, "refund_id": placeholder.id, "error": exc.message},
                )
        return {"retried": retried, "completed": completed}
