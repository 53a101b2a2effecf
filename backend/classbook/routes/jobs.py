# backend/classbook/routes/jobs.py
"""
Scheduler-triggered endpoints.

The same work runs from Celery beat; these endpoints let an external cron
(or an operator) trigger a run on demand. Both require the cron secret.
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from ..api.dependencies import get_materializer, get_waitlist_promoter, require_cron_auth
from ..core.exceptions import ValidationException
from ..errors import envelope_response
from ..schemas.base import Envelope
from ..services.materializer_service import OccurrenceMaterializer
from ..services.waitlist_service import WaitlistPromoter

router = APIRouter(tags=["jobs"], dependencies=[Depends(require_cron_auth)])


def _horizon_days(raw: Any) -> Optional[int]:
    """``horizonDays`` as a positive whole number of days; None keeps the configured horizon."""
    if raw is None:
        return None
    if isinstance(raw, int) and not isinstance(raw, bool):
        horizon = raw
    elif isinstance(raw, str) and raw.strip().isdigit():
        horizon = int(raw)
    else:
        horizon = 0
    if horizon < 1:
        raise ValidationException(
            "horizonDays must be a positive integer",
            code="INVALID_HORIZON",
            details={"horizonDays": raw},
        )
    return horizon


@router.post("/events-generate")
def events_generate(
    payload: Optional[dict] = Body(default=None),
    materializer: OccurrenceMaterializer = Depends(get_materializer),
) -> JSONResponse:
    horizon = _horizon_days((payload or {}).get("horizonDays"))
    summary = materializer.generate(horizon)
    return envelope_response(200, Envelope.ok(summary))


@router.post("/waitlist-promote")
def waitlist_promote(promoter: WaitlistPromoter = Depends(get_waitlist_promoter)) -> JSONResponse:
    return envelope_response(200, Envelope.ok(promoter.tick()))
