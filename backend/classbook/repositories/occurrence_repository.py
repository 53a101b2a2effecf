"""Data access for occurrences and recurring series."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.orm import Session

from ..core.enums import OccurrenceStatus, RegistrationStatus
from ..database.session_utils import insert_ignoring_conflicts, utcnow
from ..models.occurrence import ClassSeries, Occurrence
from ..models.registration import Registration
from .base_repository import BaseRepository


class OccurrenceRepository(BaseRepository[Occurrence]):
    def __init__(self, db: Session):
        super().__init__(db, Occurrence)

    # ------------------------------------------------------------ capacity
    def increment_if_available(self, occurrence_id: str) -> Optional[int]:
        """
        Take one seat if the occurrence is scheduled and not full.

        Returns the new booked count, or None when no seat was taken.
        """
        stmt = (
            update(Occurrence)
            .where(
                Occurrence.id == occurrence_id,
                Occurrence.status == OccurrenceStatus.SCHEDULED.value,
                or_(Occurrence.capacity.is_(None), Occurrence.booked_count < Occurrence.capacity),
            )
            .values(booked_count=Occurrence.booked_count + 1, updated_at=utcnow())
            .returning(Occurrence.booked_count)
            .execution_options(synchronize_session=False)
        )
        new_count = self.db.execute(stmt).scalar_one_or_none()
        self.expire_cached(occurrence_id)
        return new_count

    def decrement(self, occurrence_id: str) -> Optional[int]:
        """Give one seat back; never drops below zero. Returns the new count or None."""
        stmt = (
            update(Occurrence)
            .where(Occurrence.id == occurrence_id, Occurrence.booked_count > 0)
            .values(booked_count=Occurrence.booked_count - 1, updated_at=utcnow())
            .returning(Occurrence.booked_count)
            .execution_options(synchronize_session=False)
        )
        new_count = self.db.execute(stmt).scalar_one_or_none()
        self.expire_cached(occurrence_id)
        return new_count

    # ------------------------------------------------------------- queries
    def list_promotable(self, now: Optional[datetime] = None, limit: int = 500) -> List[Occurrence]:
        """Future scheduled occurrences with a free seat and at least one waitlisted entry."""
        now = now or utcnow()
        has_waitlist = exists().where(
            and_(
                Registration.occurrence_id == Occurrence.id,
                Registration.status == RegistrationStatus.WAITLISTED.value,
            )
        )
        stmt = (
            select(Occurrence)
            .where(
                Occurrence.status == OccurrenceStatus.SCHEDULED.value,
                Occurrence.start_time > now,
                or_(Occurrence.capacity.is_(None), Occurrence.booked_count < Occurrence.capacity),
                has_waitlist,
            )
            .order_by(Occurrence.start_time.asc(), Occurrence.id.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def mark_past_completed(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        stmt = (
            update(Occurrence)
            .where(Occurrence.status == OccurrenceStatus.SCHEDULED.value, Occurrence.end_time < now)
            .values(status=OccurrenceStatus.COMPLETED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return int(self.db.execute(stmt).rowcount or 0)

    # -------------------------------------------------------------- series
    def list_active_series(self) -> List[ClassSeries]:
        stmt = select(ClassSeries).where(ClassSeries.is_active.is_(True)).order_by(ClassSeries.id)
        return list(self.db.execute(stmt).scalars().all())

    def insert_missing(self, rows: Iterable[dict]) -> int:
        """Insert occurrences skipping any (series, start time) that already exists."""
        return insert_ignoring_conflicts(
            self.db,
            Occurrence.__table__,
            rows,
            conflict_columns=("series_id", "start_time"),
        )
