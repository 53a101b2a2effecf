# backend/classbook/routes/health.py
"""
Health check endpoint used by load balancers and uptime monitors.
"""

from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..errors import envelope_response
from ..schemas.base import Envelope

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health")
def health_check(db: Session = Depends(get_db)) -> JSONResponse:
    try:
        db.execute(text("SELECT 1"))
        database = True
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        database = False

    data = {
        "status": "healthy" if database else "degraded",
        "database": database,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return envelope_response(200 if database else 503, Envelope(success=database, data=data))
