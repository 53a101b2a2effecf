from datetime import timedelta

from classbook.core.enums import HoldStatus, PaymentStatus, RegistrationStatus
from classbook.database.session_utils import utcnow
from classbook.models.event_outbox import EventOutbox
from classbook.models.occurrence import Occurrence
from classbook.models.payment import Payment
from classbook.models.registration import CapacityHold, Registration
from classbook.services.waitlist_service import WaitlistPromoter


def _status(db, registration_id):
    db.expire_all()
    return db.get(Registration, registration_id).status


def _promoted_payloads(db):
    rows = db.query(EventOutbox).filter(EventOutbox.event_type == "registration.promoted").all()
    return [row.payload for row in rows]


def test_tick_with_nothing_to_do(db, test_settings):
    summary = WaitlistPromoter(db, test_settings).tick()
    assert summary["cleanedHolds"] == 0
    assert summary["promotions"] == 0
    assert summary["occurrencesScanned"] == 0
    assert summary["processedAt"]


def test_promotes_oldest_waitlisted_first(db, test_settings, booking_service, cancellation_service, make_occurrence):
    occurrence = make_occurrence(capacity=1)
    first = booking_service.book(occurrence.id, "cust-a")
    second = booking_service.book(occurrence.id, "cust-b")
    third = booking_service.book(occurrence.id, "cust-c")
    cancellation_service.cancel(first.registration_id)

    summary = WaitlistPromoter(db, test_settings).tick()

    assert summary["promotions"] == 1
    assert summary["occurrencesScanned"] == 1
    assert _status(db, second.registration_id) == RegistrationStatus.CONFIRMED.value
    assert _status(db, third.registration_id) == RegistrationStatus.WAITLISTED.value
    assert db.get(Occurrence, occurrence.id).booked_count == 1
    payloads = _promoted_payloads(db)
    assert len(payloads) == 1
    assert payloads[0]["registrationId"] == second.registration_id
    assert payloads[0]["paymentRequired"] is False


def test_promotion_never_exceeds_capacity(db, test_settings, booking_service, make_occurrence):
    occurrence = make_occurrence(capacity=0)
    booking_service.book(occurrence.id, "cust-a")
    booking_service.book(occurrence.id, "cust-b")

    promoted = WaitlistPromoter(db, test_settings).promote_occurrence(occurrence.id)

    assert promoted == 0
    db.expire_all()
    assert db.get(Occurrence, occurrence.id).booked_count == 0


def test_paid_promotion_asks_for_payment(db, test_settings, booking_service, cancellation_service, make_occurrence, fund_wallet):
    occurrence = make_occurrence(capacity=1, price_minor=1800)
    fund_wallet("cust-a", 1800)
    first = booking_service.book(occurrence.id, "cust-a", rail="wallet")
    waiting = booking_service.book(occurrence.id, "cust-b", rail="card")
    cancellation_service.cancel(first.registration_id)

    assert WaitlistPromoter(db, test_settings).promote_occurrence(occurrence.id) == 1

    assert _status(db, waiting.registration_id) == RegistrationStatus.CONFIRMED.value
    payload = _promoted_payloads(db)[0]
    assert payload["paymentRequired"] is True
    assert payload["amount"] == 1800
    assert payload["currency"] == "CHF"


def test_expired_hold_frees_seat_for_waitlist(db, test_settings, booking_service, make_occurrence):
    occurrence = make_occurrence(capacity=1, price_minor=2500)
    abandoned = booking_service.book(occurrence.id, "cust-a", rail="card")
    waiting = booking_service.book(occurrence.id, "cust-b", rail="card")

    hold = db.query(CapacityHold).filter_by(registration_id=abandoned.registration_id).one()
    # card bookings keep their hold converted; simulate a crash before conversion
    hold.status = HoldStatus.ACTIVE.value
    hold.expires_at = utcnow() - timedelta(minutes=1)
    db.commit()

    summary = WaitlistPromoter(db, test_settings).tick()

    assert summary["cleanedHolds"] == 1
    assert summary["promotions"] == 1
    registration = db.get(Registration, abandoned.registration_id)
    assert registration.status == RegistrationStatus.CANCELED.value
    assert registration.cancellation_reason == "Payment hold expired"
    assert _status(db, waiting.registration_id) == RegistrationStatus.CONFIRMED.value
    charge = db.query(Payment).filter_by(registration_id=abandoned.registration_id).one()
    assert charge.status == PaymentStatus.FAILED.value
    db.refresh(hold)
    assert hold.status == HoldStatus.EXPIRED.value
    expired_events = db.query(EventOutbox).filter(EventOutbox.event_type == "registration.hold_expired").all()
    assert expired_events[0].payload["seatReleased"] is True


def test_expired_hold_is_processed_once(db, test_settings, booking_service, make_occurrence):
    occurrence = make_occurrence(capacity=2, price_minor=2500)
    booking = booking_service.book(occurrence.id, "cust-a", rail="card")
    hold = db.query(CapacityHold).filter_by(registration_id=booking.registration_id).one()
    hold.status = HoldStatus.ACTIVE.value
    hold.expires_at = utcnow() - timedelta(seconds=1)
    db.commit()

    promoter = WaitlistPromoter(db, test_settings)
    assert promoter.expire_holds() == 1
    assert promoter.expire_holds() == 0
    db.expire_all()
    assert db.get(Occurrence, occurrence.id).booked_count == 0
