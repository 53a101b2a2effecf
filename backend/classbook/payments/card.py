"""
Card rail backed by Stripe PaymentIntents.

``issue`` commits the pending charge before contacting Stripe, then returns
``pending`` with the client secret; the final state arrives
through the webhook reconciler. A network failure talking to Stripe leaves the
charge pending without an external reference, and the reconciliation sweep
re-issues it later under the same Stripe idempotency key.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session
import stripe

from ..core.config import Settings
from ..core.enums import PaymentRailKind, PaymentStatus, RailOutcome
from ..core.exceptions import PaymentFailedException, RefundFailedException
from ..database.session_utils import utcnow
from ..models.payment import Payment
from ..models.registration import Registration
from .base import PaymentRail, PaymentResult
from .stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


def charge_idempotency_key(payment_id: str) -> str:
    return f"classbook:charge:{payment_id}"


class CardRail(PaymentRail):
    kind = PaymentRailKind.CARD

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        gateway: Optional[StripeGateway] = None,
    ):
        super().__init__(db, settings)
        self.gateway = gateway or StripeGateway(self.settings)

    def intent_metadata(self, payment: Payment, registration: Registration) -> Dict[str, str]:
        return {
            "paymentId": payment.id,
            "registrationId": registration.id,
            "occurrenceId": registration.occurrence_id,
            "tenantId": registration.tenant_id,
        }

    def issue(
        self,
        registration: Registration,
        amount: int,
        currency: str,
        rail_data: Optional[Dict[str, Any]] = None,
        *,
        description: str = "",
    ) -> PaymentResult:
        payment = self._new_charge(registration, amount, currency)
        # No write transaction stays open across the Stripe call; the committed
        # pending charge is what the sweep picks up if we die mid-call
        self.db.commit()
        try:
            intent = self.gateway.create_payment_intent(
                amount=amount,
                currency=currency,
                metadata=self.intent_metadata(payment, registration),
                idempotency_key=charge_idempotency_key(payment.id),
                description=description,
            )
        except stripe.APIConnectionError as exc:
            logger.warning(
                "Stripe unreachable while creating PaymentIntent; leaving payment pending",
                extra={"payment_id": payment.id, "error": str(exc)},
            )
            return PaymentResult(status=RailOutcome.PENDING, payment=payment, details={"reconciling": True})
        except stripe.StripeError as exc:
            message = getattr(exc, "user_message", None) or str(exc)
            self.payments.transition(
                payment.id,
                from_statuses=[PaymentStatus.PENDING],
                to_status=PaymentStatus.FAILED,
                failure_reason=message[:1000],
                failed_at=utcnow(),
            )
            logger.info("Stripe rejected PaymentIntent", extra={"payment_id": payment.id, "error": message})
            raise PaymentFailedException(
                f"Card payment failed: {message}",
                details={"paymentId": payment.id, "rail": self.kind.value},
            )

        payment.external_ref = intent.id
        self.db.flush()
        return PaymentResult(
            status=RailOutcome.PENDING,
            payment=payment,
            external_ref=intent.id,
            details={"clientSecret": getattr(intent, "client_secret", None), "paymentIntentId": intent.id},
        )

    def refund(self, payment: Payment) -> PaymentResult:
        try:
            if payment.status == PaymentStatus.PAID.value:
                refund = self.gateway.create_refund(
                    payment_intent=payment.external_ref,
                    amount=abs(payment.amount),
                    idempotency_key=f"classbook:refund:{payment.id}",
                    metadata={"paymentId": payment.id, "registrationId": payment.registration_id},
                )
                refund_row = self.record_refund(
                    payment, external_ref=refund.id, metadata={"refundId": refund.id}
                )
                return PaymentResult(status=RailOutcome.COMPLETED, payment=refund_row, external_ref=refund.id)

            # Not captured yet: void the intent instead of refunding
            if payment.external_ref:
                self.gateway.cancel_payment_intent(
                    payment.external_ref, idempotency_key=f"classbook:void:{payment.id}"
                )
        except stripe.StripeError as exc:
            logger.warning(
                "Stripe refund failed",
                extra={"payment_id": payment.id, "error": str(exc)},
            )
            raise RefundFailedException(f"Card refund failed: {exc}", details={"paymentId": payment.id})

        self.payments.transition(
            payment.id,
            from_statuses=[PaymentStatus.PENDING],
            to_status=PaymentStatus.FAILED,
            failure_reason="voided before capture",
            failed_at=utcnow(),
        )
        for placeholder in self.payments.refunds_for(payment.id):
            if placeholder.status == PaymentStatus.PENDING.value:
                self.payments.transition(
                    placeholder.id,
                    from_statuses=[PaymentStatus.PENDING],
                    to_status=PaymentStatus.FAILED,
                    failure_reason="charge voided before capture",
                    failed_at=utcnow(),
                )
        return PaymentResult(status=RailOutcome.COMPLETED, payment=payment, details={"voided": True})
