# backend/classbook/tasks/__init__.py
"""
Celery tasks package for Classbook.

Run a worker with ``celery -A classbook.tasks worker -B``.
"""

from .celery_app import BaseTask, celery_app
from .jobs import materialize_occurrences, promote_waitlists, reconcile_payments
from .outbox_tasks import deliver_event, dispatch_pending

__all__ = [
    "celery_app",
    "BaseTask",
    "deliver_event",
    "dispatch_pending",
    "materialize_occurrences",
    "promote_waitlists",
    "reconcile_payments",
]
