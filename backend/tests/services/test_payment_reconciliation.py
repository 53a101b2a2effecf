import pytest
import stripe

from classbook.core.enums import PaymentKind, PaymentRailKind, PaymentStatus, RegistrationStatus
from classbook.models.event_outbox import EventOutbox
from classbook.models.payment import Payment
from classbook.models.registration import Registration
from classbook.payments.invoice import InvoiceRail
from classbook.payments.registry import RailRegistry
from classbook.repositories.registration_repository import RegistrationRepository
from classbook.services.payment_reconciliation_service import PaymentReconciliationService


@pytest.fixture
def sweeper(db, test_settings, rails):
    settings = test_settings.model_copy(update={"payment_reconcile_grace_seconds": 0})
    return PaymentReconciliationService(db, settings, rails=rails)


def _charge_for(db, registration_id):
    db.expire_all()
    return db.query(Payment).filter_by(registration_id=registration_id, kind=PaymentKind.CHARGE.value).one()


def test_reissues_intent_after_stripe_outage(db, sweeper, booking_service, stripe_gateway, make_occurrence):
    occurrence = make_occurrence(price_minor=2500)
    stripe_gateway.create_error = stripe.APIConnectionError("network unreachable")
    booking = booking_service.book(occurrence.id, "cust-a", rail="card")
    stripe_gateway.create_error = None

    summary = sweeper.sweep()

    assert summary["reissued"] == 1
    charge = _charge_for(db, booking.registration_id)
    assert charge.external_ref in stripe_gateway.intents
    assert stripe_gateway.intents[charge.external_ref].metadata["paymentId"] == charge.id


def test_settles_succeeded_intent(db, sweeper, booking_service, stripe_gateway, make_occurrence):
    occurrence = make_occurrence(price_minor=2500)
    booking = booking_service.book(occurrence.id, "cust-a", rail="card")
    stripe_gateway.intents[booking.payment["paymentIntentId"]].status = "succeeded"

    summary = sweeper.sweep()

    assert summary["paid"] == 1
    assert _charge_for(db, booking.registration_id).status == PaymentStatus.PAID.value
    assert db.query(EventOutbox).filter_by(event_type="payment.succeeded").count() == 1


def test_fails_canceled_intent_and_frees_seat(db, sweeper, booking_service, stripe_gateway, make_occurrence):
    occurrence = make_occurrence(capacity=1, price_minor=2500)
    booking = booking_service.book(occurrence.id, "cust-a", rail="card")
    stripe_gateway.intents[booking.payment["paymentIntentId"]].status = "canceled"

    summary = sweeper.sweep()

    assert summary["failed"] == 1
    assert _charge_for(db, booking.registration_id).status == PaymentStatus.FAILED.value
    assert db.get(Registration, booking.registration_id).status == RegistrationStatus.CANCELED.value


def test_leaves_in_progress_intent_alone(db, sweeper, booking_service, make_occurrence):
    occurrence = make_occurrence(price_minor=2500)
    booking = booking_service.book(occurrence.id, "cust-a", rail="card")

    summary = sweeper.sweep()

    assert summary["unchanged"] == 1
    assert _charge_for(db, booking.registration_id).status == PaymentStatus.PENDING.value


def test_fails_charge_for_inactive_registration(db, sweeper, booking_service, make_occurrence):
    occurrence = make_occurrence(price_minor=2500)
    booking = booking_service.book(occurrence.id, "cust-a", rail="card")
    RegistrationRepository(db).transition(
        booking.registration_id,
        from_statuses=[RegistrationStatus.CONFIRMED],
        to_status=RegistrationStatus.CANCELED,
        reason="admin",
    )
    db.commit()

    summary = sweeper.sweep()

    assert summary["failed"] == 1
    assert _charge_for(db, booking.registration_id).failure_reason == "registration no longer active"


def test_recent_charges_are_left_for_the_webhook(db, test_settings, rails, booking_service, make_occurrence):
    occurrence = make_occurrence(price_minor=2500)
    booking_service.book(occurrence.id, "cust-a", rail="card")

    summary = PaymentReconciliationService(db, test_settings, rails=rails).sweep()

    assert summary == {
        "reissued": 0,
        "paid": 0,
        "failed": 0,
        "unchanged": 0,
        "errors": 0,
        "refundsRetried": 0,
        "refundsCompleted": 0,
    }


def test_stripe_errors_are_counted_not_raised(db, sweeper, booking_service, stripe_gateway, make_occurrence, monkeypatch):
    occurrence = make_occurrence(price_minor=2500)
    booking_service.book(occurrence.id, "cust-a", rail="card")

    def boom(intent_id):
        raise stripe.APIConnectionError("timeout")

    monkeypatch.setattr(stripe_gateway, "retrieve_payment_intent", boom)

    assert sweeper.sweep()["errors"] == 1


def test_card_rail_without_stripe_is_counted_as_error(db, test_settings, booking_service, make_occurrence):
    occurrence = make_occurrence(price_minor=2500)
    booking_service.book(occurrence.id, "cust-a", rail="card")
    settings = test_settings.model_copy(update={"payment_reconcile_grace_seconds": 0})
    offline = RailRegistry(
        settings, overrides={PaymentRailKind.CARD: lambda session: InvoiceRail(session, settings)}
    )

    summary = PaymentReconciliationService(db, settings, rails=offline).sweep()

    assert summary["errors"] == 1
    assert summary["unchanged"] == 0


def test_failed_void_keeps_charge_for_refund_retry(
    db, sweeper, booking_service, cancellation_service, stripe_gateway, make_occurrence
):
    occurrence = make_occurrence(price_minor=2500)
    booking = booking_service.book(occurrence.id, "cust-a", rail="card")
    stripe_gateway.refund_error = stripe.APIConnectionError("network unreachable")
    cancellation_service.cancel(booking.registration_id)

    summary = sweeper.sweep()

    assert summary["unchanged"] == 1
    assert summary["refundsRetried"] == 1
    assert summary["refundsCompleted"] == 0
    charge = _charge_for(db, booking.registration_id)
    assert charge.status == PaymentStatus.PENDING.value

    stripe_gateway.refund_error = None
    summary = sweeper.sweep()

    assert summary["refundsCompleted"] == 1
    assert stripe_gateway.canceled == [charge.external_ref]
    assert _charge_for(db, booking.registration_id).status == PaymentStatus.FAILED.value
