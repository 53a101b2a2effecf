# backend/classbook/tasks/jobs.py
"""
Periodic maintenance jobs run by Celery beat.

Each job opens its own session and delegates to the same service the cron
endpoints use, so a beat run and an HTTP-triggered run behave identically.
"""

from typing import Any, Dict

from celery.utils.log import get_task_logger

from ..database import SessionLocal, with_db_retry
from ..services.materializer_service import OccurrenceMaterializer
from ..services.payment_reconciliation_service import PaymentReconciliationService
from ..services.waitlist_service import WaitlistPromoter
from .celery_app import celery_app

logger = get_task_logger(__name__)


@celery_app.task(name="jobs.materialize_occurrences", max_retries=0)
def materialize_occurrences(horizon_days: int = 0) -> Dict[str, Any]:
    session = SessionLocal()
    try:
        result = OccurrenceMaterializer(session).generate(horizon_days or None)
        logger.info("Materializer job finished: %s", result["generation"])
        return result
    finally:
        session.close()


@celery_app.task(name="jobs.promote_waitlists", max_retries=0)
def promote_waitlists() -> Dict[str, Any]:
    session = SessionLocal()

    def _tick() -> Dict[str, Any]:
        session.rollback()
        return WaitlistPromoter(session).tick()

    try:
        # SQLite can report "database is locked" under overlapping writers
        return with_db_retry("promote_waitlists", _tick)
    finally:
        session.close()


@celery_app.task(name="jobs.reconcile_payments", max_retries=0)
def reconcile_payments() -> Dict[str, Any]:
    session = SessionLocal()
    try:
        return PaymentReconciliationService(session).sweep()
    finally:
        session.close()
