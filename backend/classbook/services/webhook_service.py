"""
Stripe webhook reconciler.

Every delivery is verified, stored in ``webhook_events`` and only then applied.
The ledger row makes redeliveries cheap: an event already processed is
acknowledged without touching payments again.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import stripe

from ..core.config import Settings
from ..core.exceptions import InvalidSignatureException, ServiceException, ValidationException
from ..database.session_utils import utcnow
from ..models.webhook_event import WebhookEvent
from ..monitoring.prometheus_metrics import webhook_events_total
from ..payments.stripe_gateway import StripeGateway
from .base import BaseService
from .payment_state import PaymentStateService

WEBHOOK_SOURCE = "stripe"


@dataclass
class WebhookResult:
    event_id: Optional[str]
    event_type: str
    outcome: str
    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"received": True, "eventId": self.event_id, "type": self.event_type, "outcome": self.outcome}


class WebhookReconciler(BaseService):
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        *,
        gateway: Optional[StripeGateway] = None,
    ):
        super().__init__(db, settings)
        self.gateway = gateway or StripeGateway(self.settings)
        self.state = PaymentStateService(db)
        self._handlers: Dict[str, Callable[[Dict[str, Any]], str]] = {
            "payment_intent.succeeded": self._on_intent_succeeded,
            "payment_intent.payment_failed": self._on_intent_failed,
            "charge.refunded": self._on_charge_refunded,
        }

    @BaseService.measure_operation("webhook.handle")
    def handle(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        headers: Optional[Dict[str, str]] = None,
    ) -> WebhookResult:
        """
        Verify and apply one Stripe event.

        Raises:
            ValidationException: missing signature header or malformed body
            InvalidSignatureException: the signature does not match
            ServiceException: processing failed; Stripe will redeliver
        """
        if not signature_header:
            raise ValidationException("Missing Stripe-Signature header", code="MISSING_SIGNATURE")
        secret = self.settings.stripe_webhook_secret.get_secret_value()
        if not secret:
            self.logger.error("Stripe webhook secret is not configured")
            raise ServiceException("Webhook endpoint is not configured")

        try:
            self.gateway.verify_webhook(raw_body, signature_header)
        except stripe.SignatureVerificationError as exc:
            webhook_events_total.labels(event_type="unknown", outcome="invalid_signature").inc()
            self.logger.warning("Rejected webhook with invalid signature", extra={"error": str(exc)})
            raise InvalidSignatureException("Invalid webhook signature")

        try:
            event = json.loads(raw_body)
        except ValueError:
            raise ValidationException("Webhook body is not valid JSON", code="INVALID_PAYLOAD")
        event_id = event.get("id")
        event_type = event.get("type") or "unknown"

        ledger = self._record_delivery(event, headers)
        if ledger.status == "processed" or ledger.status == "ignored":
            webhook_events_total.labels(event_type=event_type, outcome="duplicate").inc()
            self.logger.info("Duplicate webhook delivery", extra={"event_id": event_id, "event_type": event_type})
            return WebhookResult(event_id, event_type, ledger.status, duplicate=True)

        handler = self._handlers.get(event_type)
        obj = (event.get("data") or {}).get("object") or {}
        try:
            with self.transaction():
                outcome = handler(obj) if handler else "ignored"
                ledger.status = "ignored" if outcome == "ignored" else "processed"
                ledger.related_entity_id = (obj.get("metadata") or {}).get("paymentId")
                ledger.processed_at = utcnow()
                ledger.processing_error = None
        except Exception as exc:
            self._mark_failed(ledger.id, str(exc))
            webhook_events_total.labels(event_type=event_type, outcome="error").inc()
            self.logger.error(
                "Webhook processing failed",
                extra={"event_id": event_id, "event_type": event_type, "error": str(exc)},
                exc_info=True,
            )
            if isinstance(exc, ServiceException):
                raise
            raise ServiceException("Webhook processing failed") from exc

        webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()
        self.logger.info(
            "Webhook processed",
            extra={"event_id": event_id, "event_type": event_type, "outcome": outcome},
        )
        return WebhookResult(event_id, event_type, outcome)

    # ------------------------------------------------------------- ledger
    def _record_delivery(self, event: Dict[str, Any], headers: Optional[Dict[str, str]]) -> WebhookEvent:
        event_id = event.get("id")
        existing = self._find(event_id)
        if existing is not None:
            return existing
        row = WebhookEvent(
            source=WEBHOOK_SOURCE,
            event_type=event.get("type") or "unknown",
            event_id=event_id,
            payload=event,
            headers=headers,
            status="received",
        )
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._find(event_id)
            if existing is None:
                raise ServiceException("Webhook event vanished after conflict")
            return existing
        return row

    def _find(self, event_id: Optional[str]) -> Optional[WebhookEvent]:
        if not event_id:
            return None
        stmt = select(WebhookEvent).where(WebhookEvent.source == WEBHOOK_SOURCE, WebhookEvent.event_id == event_id)
        return self.db.execute(stmt).scalars().first()

    def _mark_failed(self, ledger_id: str, error: str) -> None:
        with self.transaction():
            row = self.db.get(WebhookEvent, ledger_id, populate_existing=True)
            if row is not None:
                row.status = "failed"
                row.processing_error = error[:2000]

    # ------------------------------------------------------------ handlers
    def _on_intent_succeeded(self, intent: Dict[str, Any]) -> str:
        payment = self.state.find_charge(intent.get("id"), intent.get("metadata"))
        if payment is None:
            self.logger.warning("No payment for succeeded intent", extra={"intent_id": intent.get("id")})
            return "ignored"
        return self.state.mark_paid(payment, intent.get("id"))

    def _on_intent_failed(self, intent: Dict[str, Any]) -> str:
        payment = self.state.find_charge(intent.get("id"), intent.get("metadata"))
        if payment is None:
            self.logger.warning("No payment for failed intent", extra={"intent_id": intent.get("id")})
            return "ignored"
        error = intent.get("last_payment_error") or {}
        reason = error.get("message") or "Payment failed"
        return "failed" if self.state.mark_failed(payment, reason) else "duplicate"

    def _on_charge_refunded(self, charge: Dict[str, Any]) -> str:
        intent_id = charge.get("payment_intent")
        payment = self.state.find_charge(intent_id, charge.get("metadata"))
        if payment is None:
            self.logger.warning("No payment for refunded charge", extra={"charge_id": charge.get("id")})
            return "ignored"
        recorded = self.state.record_gateway_refund(payment, int(charge.get("amount_refunded") or 0), charge.get("id"))
        return "refunded" if recorded else "duplicate"
