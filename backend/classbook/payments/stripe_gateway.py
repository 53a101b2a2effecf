"""
Thin wrapper around the Stripe SDK.

Keeps SDK configuration (API key, HTTP timeout, network retries) in one place
and gives the card rail, webhook reconciler and reconciliation sweep a single
object to fake in tests.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import stripe

from ..core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class StripeGateway:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.configured = False
        secret = self.settings.stripe_secret_key.get_secret_value()
        if not secret:
            logger.warning("Stripe secret key not configured - card payments will fail")
            return

        stripe.api_key = secret
        stripe.max_network_retries = self.settings.stripe_max_network_retries
        try:
            stripe.default_http_client = stripe.http_client.RequestsClient(
                timeout=self.settings.stripe_timeout_seconds
            )
        except AttributeError:
            logger.warning("Stripe HTTP client customization unavailable; using SDK default timeout")
        self.configured = True

    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        metadata: Dict[str, Any],
        idempotency_key: str,
        description: str = "",
    ) -> Any:
        return stripe.PaymentIntent.create(
            amount=amount,
            currency=currency.lower(),
            metadata=metadata,
            description=description or None,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )

    def retrieve_payment_intent(self, intent_id: str) -> Any:
        return stripe.PaymentIntent.retrieve(intent_id)

    def cancel_payment_intent(self, intent_id: str, *, idempotency_key: str) -> Any:
        return stripe.PaymentIntent.cancel(intent_id, idempotency_key=idempotency_key)

    def create_refund(
        self,
        *,
        payment_intent: str,
        amount: int,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Any:
        return stripe.Refund.create(
            payment_intent=payment_intent,
            amount=amount,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )

    def verify_webhook(self, payload: bytes, signature_header: str) -> None:
        """
        Check a ``Stripe-Signature`` header against the configured signing secret.

        The SDK compares HMAC-SHA256 digests of ``"{t}.{payload}"`` in constant
        time and rejects timestamps older than the configured tolerance.

        Raises:
            stripe.SignatureVerificationError: on mismatch, malformed header or stale timestamp,
                or a body that is not UTF-8 and so cannot have been signed by Stripe
        """
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise stripe.SignatureVerificationError("Webhook payload is not valid UTF-8", signature_header)
        secret = self.settings.stripe_webhook_secret.get_secret_value()
        stripe.WebhookSignature.verify_header(
            body,
            signature_header,
            secret,
            tolerance=self.settings.stripe_webhook_tolerance_seconds,
        )
