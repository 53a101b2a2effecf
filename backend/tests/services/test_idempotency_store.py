from datetime import timedelta

import pytest

from classbook.core.exceptions import IdempotencyInProgressException, ValidationException
from classbook.database.session_utils import utcnow
from classbook.idempotency.store import IdempotencyStore, request_fingerprint
from classbook.models.idempotency import IdempotencyRecord


def test_fingerprint_ignores_key_order():
    assert request_fingerprint({"a": 1, "b": 2}) == request_fingerprint({"b": 2, "a": 1})
    assert request_fingerprint({"a": 1}) != request_fingerprint({"a": 2})


def test_reserve_complete_and_replay(db, test_settings):
    store = IdempotencyStore(db, test_settings)
    fingerprint = request_fingerprint({"occurrenceId": "o1"})

    reservation = store.get_or_reserve("book", "key-1", fingerprint)
    assert reservation.is_new

    store.complete(reservation, 201, {"registrationId": "r1"})
    db.commit()

    replay = store.get_or_reserve("book", "key-1", fingerprint)
    assert not replay.is_new
    assert replay.existing_result.status_code == 201
    assert replay.existing_result.body == {"registrationId": "r1"}


def test_reused_key_with_different_body_is_rejected(db, test_settings):
    store = IdempotencyStore(db, test_settings)
    store.get_or_reserve("book", "key-1", request_fingerprint({"occurrenceId": "o1"}))

    with pytest.raises(ValidationException) as exc_info:
        store.get_or_reserve("book", "key-1", request_fingerprint({"occurrenceId": "o2"}))
    assert exc_info.value.code == "IDEMPOTENCY_KEY_REUSED"


def test_same_key_different_operation_does_not_collide(db, test_settings):
    store = IdempotencyStore(db, test_settings)
    fingerprint = request_fingerprint({"id": "x"})
    assert store.get_or_reserve("book", "shared", fingerprint).is_new
    assert store.get_or_reserve("cancel", "shared", fingerprint).is_new


def test_in_flight_reservation_reports_conflict(db, test_settings):
    store = IdempotencyStore(db, test_settings)
    fingerprint = request_fingerprint({"occurrenceId": "o1"})
    store.get_or_reserve("book", "key-1", fingerprint)

    with pytest.raises(IdempotencyInProgressException) as exc_info:
        store.get_or_reserve("book", "key-1", fingerprint)
    assert exc_info.value.status_code == 409


def test_stale_reservation_is_taken_over(db, test_settings):
    store = IdempotencyStore(db, test_settings)
    fingerprint = request_fingerprint({"occurrenceId": "o1"})
    reservation = store.get_or_reserve("book", "key-1", fingerprint)

    record = db.query(IdempotencyRecord).filter_by(key_hash=reservation.key_hash).one()
    record.created_at = utcnow() - timedelta(seconds=test_settings.idempotency_pending_timeout_seconds + 5)
    db.commit()

    assert store.get_or_reserve("book", "key-1", fingerprint).is_new


def test_release_lets_client_retry(db, test_settings):
    store = IdempotencyStore(db, test_settings)
    fingerprint = request_fingerprint({"occurrenceId": "o1"})
    store.release(store.get_or_reserve("book", "key-1", fingerprint))
    assert store.get_or_reserve("book", "key-1", fingerprint).is_new


def test_expired_records_are_purged(db, test_settings):
    store = IdempotencyStore(db, test_settings)
    reservation = store.get_or_reserve("book", "key-1", request_fingerprint({}))
    store.complete(reservation, 201, {})
    db.commit()

    purged = store.purge_expired(utcnow() + timedelta(seconds=test_settings.idempotency_ttl_seconds + 1))
    db.commit()
    assert purged == 1
    assert db.query(IdempotencyRecord).count() == 0
