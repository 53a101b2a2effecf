# backend/classbook/services/outbox_publisher.py
"""
Publisher used by the outbox dispatcher.

POSTs each event to ``OUTBOX_WEBHOOK_URL`` with its idempotency key so the
receiver can drop duplicates. Without a configured URL events are logged and
treated as delivered, which keeps local development and tests quiet.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

DELIVERY_TIMEOUT_SECONDS = 10.0


class OutboxDeliveryTemporaryError(RuntimeError):
    """The receiver may accept the event on a later attempt."""


class OutboxDeliveryPermanentError(RuntimeError):
    """The receiver rejected the event; retrying will not help."""


class OutboxPublisher:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.Client] = None):
        self.settings = settings or default_settings
        self._client = client

    def send(self, *, event_type: str, payload: Dict[str, Any], idempotency_key: str, event_id: str) -> None:
        url = self.settings.outbox_webhook_url
        if not url:
            logger.info(
                "Outbox event (no webhook configured)",
                extra={"event_type": event_type, "event_id": event_id, "idempotency_key": idempotency_key},
            )
            return

        body = {"id": event_id, "type": event_type, "data": payload}
        headers = {"Idempotency-Key": idempotency_key, "X-Event-Type": event_type}
        try:
            if self._client is not None:
                response = self._client.post(url, json=body, headers=headers, timeout=DELIVERY_TIMEOUT_SECONDS)
            else:
                response = httpx.post(url, json=body, headers=headers, timeout=DELIVERY_TIMEOUT_SECONDS)
        except httpx.TransportError as exc:
            raise OutboxDeliveryTemporaryError(f"transport error: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise OutboxDeliveryTemporaryError(f"receiver returned {response.status_code}")
        if response.status_code >= 400:
            raise OutboxDeliveryPermanentError(f"receiver returned {response.status_code}: {response.text[:200]}")
