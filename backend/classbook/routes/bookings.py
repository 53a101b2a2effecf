# backend/classbook/routes/bookings.py
"""
Booking and cancellation endpoints.

Both are thin: parse the body, resolve the caller's IP for rate limiting, hand
over to the orchestrator and wrap the result in the response envelope. Errors
are raised as DomainException and rendered by the shared handlers.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse

from ..api.dependencies import get_booking_orchestrator, get_cancellation_orchestrator
from ..errors import envelope_response
from ..ratelimit.identity import client_ip
from ..schemas.base import Envelope
from ..schemas.booking import BookRequest, CancelRequest
from ..services.booking_service import BookingOrchestrator
from ..services.cancellation_service import CancellationOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings"])


def _peer(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


@router.post("/book", status_code=status.HTTP_201_CREATED)
def book(
    payload: BookRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> JSONResponse:
    """
    Book a customer onto an occurrence.

    Returns 201 with the registration and payment descriptor. Replays of a
    stored outcome return the same body with ``Idempotent-Replayed: true``.
    """
    result = orchestrator.book(
        payload.occurrence_id,
        payload.customer_id,
        rail=payload.rail,
        rail_data=payload.rail_data,
        idempotency_key=idempotency_key,
        client_ip=client_ip(request.headers, _peer(request)),
    )
    headers = {"Idempotency-Key": result.idempotency_key}
    if result.replayed:
        headers["Idempotent-Replayed"] = "true"
    return envelope_response(status.HTTP_201_CREATED, Envelope.ok(result.to_dict()), headers=headers)


@router.post("/cancel")
def cancel(
    payload: CancelRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    orchestrator: CancellationOrchestrator = Depends(get_cancellation_orchestrator),
) -> JSONResponse:
    """Cancel a confirmed registration and start its refund."""
    body = orchestrator.cancel(
        payload.registration_id,
        reason=payload.reason,
        actor_id=payload.actor_id,
        idempotency_key=idempotency_key,
        client_ip=client_ip(request.headers, _peer(request)),
    )
    headers = {"Idempotency-Key": idempotency_key or body["idempotencyKey"]}
    return envelope_response(status.HTTP_200_OK, Envelope.ok(body), headers=headers)
