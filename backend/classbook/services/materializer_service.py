"""
Occurrence materializer.

Expands every active class series into concrete occurrences up to a rolling
horizon. Schedules are local wall-clock times in the series timezone, so a
weekly 18:00 class stays at 18:00 across daylight-saving changes. Inserts skip
(series, start time) pairs that already exist, which makes overlapping runs
harmless.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional

import pytz
from sqlalchemy.orm import Session
import ulid

from ..core.config import Settings
from ..core.enums import OccurrenceStatus
from ..database.session_utils import as_utc, utcnow
from ..idempotency.store import IdempotencyStore
from ..models.occurrence import ClassSeries
from ..monitoring.prometheus_metrics import occurrences_materialized_total
from ..repositories.occurrence_repository import OccurrenceRepository
from .base import BaseService


def _blackouts(series: ClassSeries) -> set[date]:
    out = set()
    for raw in series.blackout_dates or []:
        out.add(raw if isinstance(raw, date) else date.fromisoformat(str(raw)[:10]))
    return out


def iter_series_dates(series: ClassSeries, until: date) -> Iterator[date]:
    """
    Local calendar dates of a series, in order, counted from its start date.

    ``recurrence_end_count`` limits the total number of dates from the first
    one, so repeated runs always agree on where a counted series stops.
    Blackout dates are skipped but still count towards the end count.
    """
    pattern = series.recurrence_pattern or {}
    frequency = pattern.get("frequency", "weekly")
    interval = max(1, int(pattern.get("interval", 1)))
    start = series.start_date
    last = min(until, series.recurrence_end_date) if series.recurrence_end_date else until
    remaining = series.recurrence_end_count
    blackouts = _blackouts(series)

    if frequency == "daily":
        def matches(day: date) -> bool:
            return (day - start).days % interval == 0
    elif frequency == "weekly":
        weekdays = set(pattern.get("weekdays") or [start.weekday()])
        week_zero = start - timedelta(days=start.weekday())

        def matches(day: date) -> bool:
            week = (day - week_zero).days // 7
            return week % interval == 0 and day.weekday() in weekdays
    else:
        raise ValueError(f"Unsupported recurrence frequency: {frequency}")

    day = start
    while day <= last:
        if matches(day):
            if remaining is not None:
                if remaining <= 0:
                    return
                remaining -= 1
            if day not in blackouts:
                yield day
        day += timedelta(days=1)


class OccurrenceMaterializer(BaseService):
    def __init__(self, db: Session, settings: Optional[Settings] = None):
        super().__init__(db, settings)
        self.occurrences = OccurrenceRepository(db)
        self.idempotency = IdempotencyStore(db, self.settings)

    def expand(self, series: ClassSeries, now: datetime, until: datetime) -> List[Dict[str, Any]]:
        """Occurrence rows for ``series`` starting between ``now`` and ``until``."""
        tz = pytz.timezone(series.timezone)
        duration = timedelta(minutes=series.duration_minutes)
        rows = []
        for day in iter_series_dates(series, until.astimezone(tz).date()):
            local_start = tz.localize(datetime.combine(day, series.start_time))
            start = local_start.astimezone(timezone.utc)
            if start < now or start > until:
                continue
            rows.append(
                {
                    "id": str(ulid.ULID()),
                    "tenant_id": series.tenant_id,
                    "series_id": series.id,
                    "title": series.title,
                    "start_time": start,
                    "end_time": start + duration,
                    "capacity": series.capacity,
                    "booked_count": 0,
                    "price_minor": series.price_minor,
                    "currency": series.currency,
                    "status": OccurrenceStatus.SCHEDULED.value,
                    "created_at": now,
                }
            )
        return rows

    @BaseService.measure_operation("materializer.run")
    def run(self, horizon_days: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = as_utc(now) if now else utcnow()
        horizon = horizon_days if horizon_days is not None else self.settings.materializer_horizon_days
        until = now + timedelta(days=horizon)

        processed = created = errors = 0
        for series in self.occurrences.list_active_series():
            series_id = series.id
            try:
                with self.transaction():
                    inserted = self.occurrences.insert_missing(self.expand(series, now, until))
                created += inserted
                processed += 1
            except Exception as exc:
                errors += 1
                self.logger.error(
                    "Failed to materialize series",
                    extra={"series_id": series_id, "error": str(exc)},
                    exc_info=True,
                )

        if created:
            occurrences_materialized_total.inc(created)
        summary: Dict[str, Any] = {
            "seriesProcessed": processed,
            "occurrencesCreated": created,
            "errors": errors,
            "horizonUntil": until.isoformat(),
        }
        self.logger.info("Materializer run finished", extra=summary)
        return summary

    def housekeeping(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Close out past occurrences and drop expired idempotency records."""
        now = now or utcnow()
        try:
            with self.transaction():
                completed = self.occurrences.mark_past_completed(now)
                purged = self.idempotency.purge_expired(now)
        except Exception as exc:
            self.logger.error("Housekeeping failed", extra={"error": str(exc)}, exc_info=True)
            return {"status": "failed", "error": str(exc)}
        return {"status": "success", "occurrencesCompleted": completed, "idempotencyPurged": purged}

    def generate(self, horizon_days: Optional[int] = None) -> Dict[str, Any]:
        """Materialize plus housekeeping, as exposed on the cron endpoint."""
        generation = self.run(horizon_days)
        maintenance = self.housekeeping()
        return {
            "generation": generation,
            "partitionMaintenance": maintenance["status"],
            "maintenance": maintenance,
            "processedAt": utcnow().isoformat(),
        }
