# backend/classbook/models/registration.py
"""
Registration, status history and capacity hold models.

Registrations are never deleted. Every status change appends a
RegistrationStatusHistory row. The partial unique index below allows at most
one active registration per (occurrence, customer); canceled and refunded rows
fall outside the index so a customer can book again after cancelling.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..core.enums import HoldStatus, RegistrationStatus
from ..database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


_ACTIVE_REGISTRATION_PREDICATE = text("status NOT IN ('canceled', 'refunded')")


class Registration(Base):
    """Binds one customer to one occurrence."""

    __tablename__ = "registrations"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    occurrence_id = Column(String(26), ForeignKey("occurrences.id"), nullable=False, index=True)
    customer_id = Column(String(26), nullable=False, index=True)
    tenant_id = Column(String(26), nullable=False, index=True)

    status = Column(String(20), nullable=False, default=RegistrationStatus.PENDING.value, index=True)
    rail = Column(String(20), nullable=True)
    booked_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)

    # Cancellation tracking
    cancellation_reason = Column(Text, nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    canceled_by = Column(String(26), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    occurrence = relationship("Occurrence")
    history = relationship(
        "RegistrationStatusHistory",
        back_populates="registration",
        order_by="RegistrationStatusHistory.changed_at",
    )
    payments = relationship("Payment", back_populates="registration", order_by="Payment.created_at")

    __table_args__ = (
        Index(
            "uq_registrations_active_customer",
            "occurrence_id",
            "customer_id",
            unique=True,
            postgresql_where=_ACTIVE_REGISTRATION_PREDICATE,
            sqlite_where=_ACTIVE_REGISTRATION_PREDICATE,
        ),
        Index("ix_registrations_waitlist_order", "occurrence_id", "status", "booked_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in {s.value for s in RegistrationStatus.active()}

    def __repr__(self) -> str:
        return f"<Registration {self.id} {self.status}>"


class RegistrationStatusHistory(Base):
    """Append-only log of registration status transitions."""

    __tablename__ = "registration_status_history"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    registration_id = Column(String(26), ForeignKey("registrations.id"), nullable=False, index=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    actor_id = Column(String(64), nullable=True)
    changed_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)

    registration = relationship("Registration", back_populates="history")


class CapacityHold(Base):
    """
    Temporary capacity reservation taken by the booking flow.

    Written in the same transaction as the ledger increment. If the flow never
    reaches ``converted`` or ``released`` (process crash, client disconnect) the
    waitlist promoter expires it after ``expires_at`` and gives the seat back.
    """

    __tablename__ = "capacity_holds"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    occurrence_id = Column(String(26), ForeignKey("occurrences.id"), nullable=False, index=True)
    registration_id = Column(String(26), ForeignKey("registrations.id"), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=HoldStatus.ACTIVE.value, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
