import json

import pytest
from pydantic import SecretStr

from classbook.core.enums import PaymentKind, PaymentStatus, RegistrationStatus
from classbook.core.exceptions import InvalidSignatureException, ServiceException, ValidationException
from classbook.database.session_utils import utcnow
from classbook.models.event_outbox import EventOutbox
from classbook.models.occurrence import Occurrence
from classbook.models.payment import Payment
from classbook.models.registration import Registration
from classbook.models.webhook_event import WebhookEvent
from classbook.services.webhook_service import WebhookReconciler


@pytest.fixture
def reconciler(db, test_settings, stripe_gateway):
    return WebhookReconciler(db, test_settings, gateway=stripe_gateway)


@pytest.fixture
def card_booking(db, booking_service, make_occurrence):
    occurrence = make_occurrence(capacity=1, price_minor=2500)
    booking = booking_service.book(occurrence.id, "cust-a", rail="card")
    charge = db.query(Payment).filter_by(registration_id=booking.registration_id).one()
    return occurrence, booking, charge


def _event(event_id, event_type, obj):
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode("utf-8")


def _intent(charge, **extra):
    obj = {"id": charge.external_ref, "object": "payment_intent", "metadata": {"paymentId": charge.id}}
    obj.update(extra)
    return obj


def _outbox(db, event_type):
    return db.query(EventOutbox).filter(EventOutbox.event_type == event_type).all()


def test_payment_failed_cancels_booking_once(db, reconciler, webhook_signer, card_booking):
    occurrence, booking, charge = card_booking
    body = _event(
        "evt_fail_1",
        "payment_intent.payment_failed",
        _intent(charge, last_payment_error={"message": "Your card was declined."}),
    )

    result = reconciler.handle(body, webhook_signer(body))

    assert result.outcome == "failed"
    assert result.to_dict() == {
        "received": True,
        "eventId": "evt_fail_1",
        "type": "payment_intent.payment_failed",
        "outcome": "failed",
    }
    db.expire_all()
    registration = db.get(Registration, booking.registration_id)
    assert registration.status == RegistrationStatus.CANCELED.value
    assert registration.cancellation_reason == "Payment failed"
    assert db.get(Occurrence, occurrence.id).booked_count == 0
    assert db.get(Payment, charge.id).failure_reason == "Your card was declined."

    # Stripe redelivers the same event, then sends a second failure for the same intent
    duplicate = reconciler.handle(body, webhook_signer(body))
    assert duplicate.duplicate is True
    second = _event("evt_fail_2", "payment_intent.payment_failed", _intent(charge))
    assert reconciler.handle(second, webhook_signer(second)).outcome == "duplicate"

    db.expire_all()
    assert db.get(Occurrence, occurrence.id).booked_count == 0
    assert len(_outbox(db, "payment.failed")) == 1
    ledger = db.query(WebhookEvent).filter_by(event_id="evt_fail_1").one()
    assert ledger.status == "processed"
    assert ledger.related_entity_id == charge.id


def test_payment_succeeded_marks_charge_paid(db, reconciler, webhook_signer, card_booking):
    _, booking, charge = card_booking
    body = _event("evt_ok_1", "payment_intent.succeeded", _intent(charge, status="succeeded"))

    assert reconciler.handle(body, webhook_signer(body)).outcome == "paid"

    db.expire_all()
    assert db.get(Payment, charge.id).status == PaymentStatus.PAID.value
    assert db.get(Registration, booking.registration_id).status == RegistrationStatus.CONFIRMED.value
    events = _outbox(db, "payment.succeeded")
    assert len(events) == 1
    assert events[0].payload["amount"] == 2500


def test_capture_after_cancellation_is_flagged(db, reconciler, cancellation_service, webhook_signer, card_booking):
    _, booking, charge = card_booking
    cancellation_service.cancel(booking.registration_id)
    body = _event("evt_late", "payment_intent.succeeded", _intent(charge))

    assert reconciler.handle(body, webhook_signer(body)).outcome == "orphaned"
    assert len(_outbox(db, "payment.orphaned")) == 1


def test_charge_refunded_records_gateway_refund(db, reconciler, webhook_signer, card_booking):
    _, _, charge = card_booking
    paid = _event("evt_ok", "payment_intent.succeeded", _intent(charge))
    reconciler.handle(paid, webhook_signer(paid))

    refunded = _event(
        "evt_refund",
        "charge.refunded",
        {"id": "ch_test_1", "payment_intent": charge.external_ref, "amount_refunded": 2500, "metadata": {}},
    )
    assert reconciler.handle(refunded, webhook_signer(refunded)).outcome == "refunded"

    db.expire_all()
    assert db.get(Payment, charge.id).status == PaymentStatus.REFUNDED.value
    refund = db.query(Payment).filter_by(parent_payment_id=charge.id, kind=PaymentKind.REFUND.value).one()
    assert refund.amount == -2500
    assert refund.payment_metadata["source"] == "gateway"


def test_unhandled_event_type_is_ignored(db, reconciler, webhook_signer):
    body = _event("evt_misc", "customer.created", {"id": "cus_1"})

    result = reconciler.handle(body, webhook_signer(body))

    assert result.outcome == "ignored"
    assert db.query(WebhookEvent).filter_by(event_id="evt_misc").one().status == "ignored"


def test_missing_signature_header(reconciler):
    with pytest.raises(ValidationException) as exc_info:
        reconciler.handle(b"{}", None)
    assert exc_info.value.code == "MISSING_SIGNATURE"


def test_wrong_secret_is_rejected(db, reconciler, webhook_signer):
    body = _event("evt_forged", "payment_intent.succeeded", {"id": "pi_x"})
    with pytest.raises(InvalidSignatureException) as exc_info:
        reconciler.handle(body, webhook_signer(body, secret="whsec_someone_else"))
    assert exc_info.value.status_code == 401
    assert db.query(WebhookEvent).count() == 0


def test_stale_timestamp_is_rejected(reconciler, webhook_signer):
    body = _event("evt_old", "payment_intent.succeeded", {"id": "pi_x"})
    old = int(utcnow().timestamp()) - 3600
    with pytest.raises(InvalidSignatureException):
        reconciler.handle(body, webhook_signer(body, timestamp=old))


def test_tampered_body_is_rejected(reconciler, webhook_signer):
    body = _event("evt_1", "payment_intent.succeeded", {"id": "pi_x"})
    header = webhook_signer(body)
    with pytest.raises(InvalidSignatureException):
        reconciler.handle(body.replace(b"pi_x", b"pi_y"), header)


def test_non_utf8_body_is_rejected_as_unsigned(db, reconciler):
    with pytest.raises(InvalidSignatureException) as exc_info:
        reconciler.handle(b'{"id": "evt_bin"}\xff\xfe', "t=1,v1=deadbeef")
    assert exc_info.value.status_code == 401
    assert db.query(WebhookEvent).count() == 0


def test_unconfigured_secret_is_a_server_error(db, test_settings, stripe_gateway, webhook_signer):
    settings = test_settings.model_copy(update={"stripe_webhook_secret": SecretStr("")})
    body = _event("evt_1", "payment_intent.succeeded", {"id": "pi_x"})
    with pytest.raises(ServiceException):
        WebhookReconciler(db, settings, gateway=stripe_gateway).handle(body, webhook_signer(body))
