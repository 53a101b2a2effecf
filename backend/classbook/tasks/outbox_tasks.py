# backend/classbook/tasks/outbox_tasks.py
"""
Celery tasks for dispatching outbox events.

Implements a two-step workflow:
1. `outbox.dispatch_pending` periodically enqueues delivery tasks.
2. `outbox.deliver_event` performs one delivery attempt.

The outbox row is the retry queue: a failed attempt pushes ``next_attempt_at``
out by the backoff and the next dispatch run picks the row up again.
"""

from __future__ import annotations

from contextlib import contextmanager
from time import monotonic
from typing import Iterator, Optional, cast

from celery.utils.log import get_task_logger
from sqlalchemy.orm import Session

from ..database import SessionLocal
from ..monitoring.prometheus_metrics import PrometheusMetrics
from ..repositories.event_outbox_repository import EventOutboxRepository
from ..services.outbox_publisher import (
    OutboxDeliveryPermanentError,
    OutboxDeliveryTemporaryError,
    OutboxPublisher,
)
from .celery_app import celery_app

logger = get_task_logger(__name__)

MAX_DELIVERY_ATTEMPTS = 5
BACKOFF_SECONDS = [30, 120, 600, 1800, 7200]


def _next_backoff(attempt_number: int) -> int:
    """Return backoff delay for the given attempt (1-indexed)."""
    index = max(0, min(attempt_number - 1, len(BACKOFF_SECONDS) - 1))
    return BACKOFF_SECONDS[index]


@contextmanager
def _session_scope() -> Iterator[Session]:
    """Provide transactional scope for use in tasks."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="outbox.dispatch_pending", max_retries=0)
def dispatch_pending(limit: int = 0) -> int:
    """
    Fetch pending outbox events and enqueue delivery tasks.

    Returns the number of events scheduled.
    """
    from ..core.config import settings

    with _session_scope() as session:
        repo = EventOutboxRepository(session)
        pending = repo.fetch_pending(limit=limit or settings.outbox_batch_size)
        event_ids = [event.id for event in pending]
    for event_id in event_ids:
        deliver_event.apply_async((event_id,))
    if event_ids:
        logger.info("Scheduled %s outbox events for delivery", len(event_ids))
    return len(event_ids)


def deliver(session: Session, event_id: str, publisher: Optional[OutboxPublisher] = None) -> Optional[str]:
    """
    One delivery attempt for ``event_id``. Commits the outcome on ``session``.

    Returns the event id when sent, None when skipped or deferred.
    """
    publisher = publisher or OutboxPublisher()
    repo = EventOutboxRepository(session)
    event = repo.get_by_id(event_id, for_update=True)
    if event is None:
        logger.warning("Outbox event %s missing; skipping", event_id)
        return None
    if event.status != "PENDING":
        return None

    attempt_number = event.attempt_count + 1
    PrometheusMetrics.record_outbox_attempt(event.event_type)
    start = monotonic()
    try:
        publisher.send(
            event_type=event.event_type,
            payload=event.payload,
            idempotency_key=event.idempotency_key,
            event_id=event.id,
        )
    except (OutboxDeliveryTemporaryError, OutboxDeliveryPermanentError) as exc:
        PrometheusMetrics.observe_outbox_dispatch(event.event_type, monotonic() - start)
        backoff = _next_backoff(attempt_number)
        terminal = isinstance(exc, OutboxDeliveryPermanentError) or attempt_number >= MAX_DELIVERY_ATTEMPTS
        repo.mark_failed(
            event.id,
            attempt_count=attempt_number,
            backoff_seconds=backoff,
            error=str(exc),
            terminal=terminal,
        )
        session.commit()
        if terminal:
            PrometheusMetrics.record_outbox_outcome(event.event_type, "failed")
            logger.error("Outbox event %s failed after %s attempts: %s", event.id, attempt_number, exc)
        else:
            logger.warning(
                "Outbox event %s attempt=%s failed; retrying in %ss", event.id, attempt_number, backoff
            )
        return None

    PrometheusMetrics.observe_outbox_dispatch(event.event_type, monotonic() - start)
    repo.mark_sent(event.id, attempt_number)
    session.commit()
    PrometheusMetrics.record_outbox_outcome(event.event_type, "sent")
    logger.info(
        "Delivered outbox event %s type=%s attempts=%s", event.id, event.event_type, attempt_number
    )
    return cast(str, event.id)


@celery_app.task(name="outbox.deliver_event", max_retries=0)
def deliver_event(event_id: str) -> Optional[str]:
    """Deliver a single outbox event."""
    session = SessionLocal()
    try:
        return deliver(session, event_id)
    finally:
        session.close()
