# backend/classbook/tasks/beat_schedule.py
"""
Celery Beat schedule for Classbook.

The materializer runs nightly; the waitlist promoter and outbox dispatcher run
every minute; the payment sweep every five minutes.
"""

from typing import Any, Dict

from celery.schedules import crontab

CELERYBEAT_SCHEDULE: Dict[str, Dict[str, Any]] = {
    "materialize-occurrences": {
        "task": "jobs.materialize_occurrences",
        "schedule": crontab(hour=2, minute=15),
        "options": {"queue": "maintenance"},
    },
    "promote-waitlists": {
        "task": "jobs.promote_waitlists",
        "schedule": crontab(minute="*"),
        "options": {"queue": "maintenance"},
    },
    "dispatch-outbox": {
        "task": "outbox.dispatch_pending",
        "schedule": crontab(minute="*"),
        "options": {"queue": "notifications"},
    },
    "reconcile-payments": {
        "task": "jobs.reconcile_payments",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": "maintenance"},
    },
}


def get_beat_schedule() -> Dict[str, Dict[str, Any]]:
    return dict(CELERYBEAT_SCHEDULE)
