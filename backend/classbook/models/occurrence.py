# backend/classbook/models/occurrence.py
"""
Class series and occurrence models.

A ClassSeries is the recurring template an instructor publishes; the
materializer expands it into concrete Occurrence rows that customers book.
The occurrence's ``booked_count`` is only ever changed by the capacity ledger's
conditional UPDATE, never by assigning the attribute in application code.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import JSON
import ulid

from ..core.enums import OccurrenceStatus
from ..database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ClassSeries(Base):
    """Recurring class template expanded by the occurrence materializer."""

    __tablename__ = "class_series"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    tenant_id = Column(String(26), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Local wall-clock schedule, interpreted in ``timezone``
    start_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    timezone = Column(String(64), nullable=False, default="Europe/Zurich")

    # {"frequency": "weekly"|"daily", "interval": 1, "weekdays": [0, 2]}
    recurrence_pattern = Column(
        JSONB().with_variant(JSON(), "sqlite"),
        nullable=False,
        default=lambda: {"frequency": "weekly", "interval": 1},
    )
    recurrence_end_date = Column(Date, nullable=True)
    recurrence_end_count = Column(Integer, nullable=True)
    blackout_dates = Column(JSONB().with_variant(JSON(), "sqlite"), nullable=False, default=list)

    capacity = Column(Integer, nullable=True)
    price_minor = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="CHF")
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    occurrences = relationship("Occurrence", back_populates="series")

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_class_series_duration_positive"),
        CheckConstraint("capacity IS NULL OR capacity >= 0", name="ck_class_series_capacity"),
        CheckConstraint("price_minor >= 0", name="ck_class_series_price"),
    )

    def __repr__(self) -> str:
        return f"<ClassSeries {self.id} {self.title!r}>"


class Occurrence(Base):
    """One concrete, bookable instance of a class."""

    __tablename__ = "occurrences"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    tenant_id = Column(String(26), nullable=False, index=True)
    series_id = Column(String(26), ForeignKey("class_series.id"), nullable=True, index=True)
    title = Column(String(255), nullable=False)

    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=False)

    # NULL capacity means unlimited
    capacity = Column(Integer, nullable=True)
    booked_count = Column(Integer, nullable=False, default=0)
    price_minor = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="CHF")

    status = Column(String(20), nullable=False, default=OccurrenceStatus.SCHEDULED.value, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    series = relationship("ClassSeries", back_populates="occurrences")

    __table_args__ = (
        UniqueConstraint("series_id", "start_time", name="uq_occurrences_series_start"),
        CheckConstraint("booked_count >= 0", name="ck_occurrences_booked_nonnegative"),
        CheckConstraint(
            "capacity IS NULL OR booked_count <= capacity",
            name="ck_occurrences_booked_within_capacity",
        ),
        CheckConstraint("end_time > start_time", name="ck_occurrences_time_order"),
    )

    @property
    def is_paid(self) -> bool:
        return (self.price_minor or 0) > 0

    def __repr__(self) -> str:
        return f"<Occurrence {self.id} {self.start_time} {self.booked_count}/{self.capacity}>"
