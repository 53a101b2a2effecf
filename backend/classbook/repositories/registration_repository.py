"""Data access for registrations, their history and capacity holds."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..core.enums import HoldStatus, RegistrationStatus
from ..database.session_utils import utcnow
from ..models.registration import CapacityHold, Registration, RegistrationStatusHistory
from .base_repository import BaseRepository


def _values(statuses: Iterable[RegistrationStatus | str]) -> list[str]:
    return [s.value if isinstance(s, RegistrationStatus) else s for s in statuses]


class RegistrationRepository(BaseRepository[Registration]):
    def __init__(self, db: Session):
        super().__init__(db, Registration)

    def find_active(self, occurrence_id: str, customer_id: str) -> Optional[Registration]:
        stmt = select(Registration).where(
            Registration.occurrence_id == occurrence_id,
            Registration.customer_id == customer_id,
            Registration.status.in_(_values(RegistrationStatus.active())),
        )
        return self.db.execute(stmt).scalars().first()

    def transition(
        self,
        registration_id: str,
        *,
        from_statuses: Iterable[RegistrationStatus],
        to_status: RegistrationStatus,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        **values: Any,
    ) -> bool:
        """
        Move a registration to ``to_status`` only if it is currently in ``from_statuses``.

        Appends a history row when the update wins. Returns False when another
        writer changed the status first.
        """
        allowed = _values(from_statuses)
        current = self.db.execute(
            select(Registration.status).where(Registration.id == registration_id)
        ).scalar_one_or_none()

        stmt = (
            update(Registration)
            .where(Registration.id == registration_id, Registration.status.in_(allowed))
            .values(status=to_status.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        won = bool(self.db.execute(stmt).rowcount)
        self.expire_cached(registration_id)
        if won:
            self.add_history(
                registration_id,
                from_status=current,
                to_status=to_status,
                reason=reason,
                actor_id=actor_id,
            )
        return won

    def add_history(
        self,
        registration_id: str,
        *,
        from_status: Optional[str],
        to_status: RegistrationStatus,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> RegistrationStatusHistory:
        entry = RegistrationStatusHistory(
            registration_id=registration_id,
            from_status=from_status,
            to_status=to_status.value,
            reason=reason,
            actor_id=actor_id,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def waitlist_for(self, occurrence_id: str, limit: int = 50) -> List[Registration]:
        """Waitlisted registrations for an occurrence, oldest first."""
        stmt = (
            select(Registration)
            .where(
                Registration.occurrence_id == occurrence_id,
                Registration.status == RegistrationStatus.WAITLISTED.value,
            )
            .order_by(Registration.booked_at.asc(), Registration.id.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def history_for(self, registration_id: str) -> List[RegistrationStatusHistory]:
        stmt = (
            select(RegistrationStatusHistory)
            .where(RegistrationStatusHistory.registration_id == registration_id)
            .order_by(RegistrationStatusHistory.changed_at.asc(), RegistrationStatusHistory.id.asc())
        )
        return list(self.db.execute(stmt).scalars().all())


class CapacityHoldRepository(BaseRepository[CapacityHold]):
    def __init__(self, db: Session):
        super().__init__(db, CapacityHold)

    def for_registration(self, registration_id: str) -> Optional[CapacityHold]:
        stmt = select(CapacityHold).where(CapacityHold.registration_id == registration_id)
        return self.db.execute(stmt).scalars().first()

    def resolve(self, hold_id: str, to_status: HoldStatus) -> bool:
        """Close an active hold. Returns False if it was already converted, released or expired."""
        now = utcnow()
        stmt = (
            update(CapacityHold)
            .where(CapacityHold.id == hold_id, CapacityHold.status == HoldStatus.ACTIVE.value)
            .values(status=to_status.value, resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        won = bool(self.db.execute(stmt).rowcount)
        self.expire_cached(hold_id)
        return won

    def list_expired(self, now: Optional[datetime] = None, limit: int = 200) -> List[CapacityHold]:
        now = now or utcnow()
        stmt = (
            select(CapacityHold)
            .where(CapacityHold.status == HoldStatus.ACTIVE.value, CapacityHold.expires_at <= now)
            .order_by(CapacityHold.expires_at.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
