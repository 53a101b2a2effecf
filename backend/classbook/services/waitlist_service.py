"""Waitlist promotion and capacity-hold expiry."""

from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.enums import HoldStatus, PaymentStatus, RegistrationStatus
from ..database.session_utils import utcnow
from ..models.registration import CapacityHold
from ..monitoring.prometheus_metrics import holds_expired_total, waitlist_promotions_total
from ..repositories.event_outbox_repository import EventOutboxRepository
from ..repositories.occurrence_repository import OccurrenceRepository
from ..repositories.payment_repository import PaymentRepository
from ..repositories.registration_repository import CapacityHoldRepository, RegistrationRepository
from .base import BaseService
from .capacity_ledger import CapacityLedger

HOLD_EXPIRED_REASON = "Payment hold expired"


class _PromotionLost(Exception):
    """Another writer changed the waitlisted registration first."""


class WaitlistPromoter(BaseService):
    """
    Moves waitlisted registrations into freed seats, oldest booking first.

    Each promotion is its own transaction: the seat and the status change
    commit together or not at all. Promotion does not charge; paid classes
    emit ``registration.promoted`` with ``paymentRequired`` so the customer
    can be asked to pay.
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        super().__init__(db, settings)
        self.occurrences = OccurrenceRepository(db)
        self.registrations = RegistrationRepository(db)
        self.holds = CapacityHoldRepository(db)
        self.payments = PaymentRepository(db)
        self.outbox = EventOutboxRepository(db)
        self.ledger = CapacityLedger(db, self.occurrences)

    @BaseService.measure_operation("waitlist.tick")
    def tick(self) -> Dict[str, Any]:
        cleaned = self.expire_holds()
        promotions = 0
        scanned = 0
        for occurrence in self.occurrences.list_promotable():
            scanned += 1
            promotions += self.promote_occurrence(occurrence.id)
        summary = {
            "cleanedHolds": cleaned,
            "promotions": promotions,
            "occurrencesScanned": scanned,
            "processedAt": utcnow().isoformat(),
        }
        self.logger.info("Waitlist tick finished", extra=summary)
        return summary

    def promote_occurrence(self, occurrence_id: str) -> int:
        """Fill free seats on one occurrence from its waitlist. Returns how many were promoted."""
        promoted = 0
        for registration in self.registrations.waitlist_for(occurrence_id):
            try:
                with self.transaction():
                    seat = self.ledger.try_reserve(occurrence_id)
                    if not seat.reserved:
                        break
                    won = self.registrations.transition(
                        registration.id,
                        from_statuses=[RegistrationStatus.WAITLISTED],
                        to_status=RegistrationStatus.CONFIRMED,
                        reason="promoted from waitlist",
                        confirmed_at=utcnow(),
                    )
                    if not won:
                        raise _PromotionLost()
                    occurrence = self.occurrences.get_by_id(occurrence_id)
                    self.outbox.enqueue(
                        "registration.promoted",
                        registration.id,
                        {
                            "registrationId": registration.id,
                            "occurrenceId": occurrence_id,
                            "customerId": registration.customer_id,
                            "paymentRequired": bool(occurrence and occurrence.is_paid),
                            "amount": occurrence.price_minor if occurrence else 0,
                            "currency": occurrence.currency if occurrence else None,
                        },
                        tenant_id=registration.tenant_id,
                    )
            except _PromotionLost:
                self.logger.debug("Waitlist entry changed before promotion", extra={"registration_id": registration.id})
                continue
            promoted += 1
            waitlist_promotions_total.inc()
            self.logger.info(
                "Promoted from waitlist",
                extra={"registration_id": registration.id, "occurrence_id": occurrence_id},
            )
        return promoted

    def expire_holds(self) -> int:
        """Cancel bookings whose payment never settled before the hold ran out."""
        expired = 0
        for hold in self.holds.list_expired(utcnow()):
            if self._expire_hold(hold):
                expired += 1
        if expired:
            holds_expired_total.inc(expired)
        return expired

    def _expire_hold(self, hold: CapacityHold) -> bool:
        now = utcnow()
        with self.transaction():
            if not self.holds.resolve(hold.id, HoldStatus.EXPIRED):
                return False
            canceled = self.registrations.transition(
                hold.registration_id,
                from_statuses=[RegistrationStatus.CONFIRMED, RegistrationStatus.PENDING],
                to_status=RegistrationStatus.CANCELED,
                reason=HOLD_EXPIRED_REASON,
                cancellation_reason=HOLD_EXPIRED_REASON,
                canceled_at=now,
            )
            if canceled:
                self.ledger.release(hold.occurrence_id)
            charge = self.payments.latest_charge(hold.registration_id)
            if charge is not None and charge.status == PaymentStatus.PENDING.value:
                self.payments.transition(
                    charge.id,
                    from_statuses=[PaymentStatus.PENDING],
                    to_status=PaymentStatus.FAILED,
                    failure_reason=HOLD_EXPIRED_REASON,
                    failed_at=now,
                )
            registration = self.registrations.get_by_id(hold.registration_id)
            self.outbox.enqueue(
                "registration.hold_expired",
                hold.registration_id,
                {
                    "registrationId": hold.registration_id,
                    "occurrenceId": hold.occurrence_id,
                    "seatReleased": bool(canceled),
                },
                tenant_id=registration.tenant_id if registration else None,
            )
        self.logger.warning(
            "Capacity hold expired",
            extra={"hold_id": hold.id, "registration_id": hold.registration_id, "seat_released": canceled},
        )
        return True
