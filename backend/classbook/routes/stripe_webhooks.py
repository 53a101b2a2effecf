# backend/classbook/routes/stripe_webhooks.py
"""
Stripe webhook endpoint.

The raw body is handed to the reconciler untouched; signature verification
needs the exact bytes Stripe signed.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ..api.dependencies import get_webhook_reconciler
from ..errors import envelope_response
from ..schemas.base import Envelope
from ..services.webhook_service import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["stripe-webhooks"])

_KEPT_HEADERS = ("stripe-signature", "user-agent", "content-type")


@router.post("/webhooks-stripe")
async def handle_stripe_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
) -> JSONResponse:
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    headers = {name: request.headers[name] for name in _KEPT_HEADERS if name in request.headers}

    result = await asyncio.to_thread(reconciler.handle, payload, signature, headers)
    return envelope_response(200, Envelope.ok(result.to_dict()))
