from decimal import Decimal

import pytest

from classbook.core.enums import PaymentRailKind, PaymentStatus, RailOutcome, RegistrationStatus
from classbook.core.exceptions import RefundFailedException, ValidationException
from classbook.models.payment import Payment
from classbook.models.registration import Registration
from classbook.payments.invoice import compute_tax, invoice_number
from classbook.payments.mobile_wallet import MobileWalletRail
from classbook.payments.wallet import WalletRail
from classbook.repositories.payment_repository import WalletRepository


@pytest.mark.parametrize(
    "subtotal, expected",
    [(10000, 770), (2500, 193), (65, 5), (0, 0)],
)
def test_compute_tax_rounds_half_up(subtotal, expected):
    assert compute_tax(subtotal, Decimal("0.077")) == expected


def test_invoice_number_format():
    assert invoice_number("01J9REGISTRATION000ABCDEFGH", 1760000000000) == "INV-1760000000000-ABCDEFGH"


@pytest.mark.parametrize(
    "raw, kind",
    [
        ("wallet", PaymentRailKind.WALLET),
        ("Stripe", PaymentRailKind.CARD),
        ("card", PaymentRailKind.CARD),
        ("twint", PaymentRailKind.MOBILE_WALLET),
        (" invoice ", PaymentRailKind.INVOICE),
    ],
)
def test_rail_aliases(raw, kind):
    assert PaymentRailKind.parse(raw) is kind


def test_registry_rejects_unknown_rail(db, rails):
    with pytest.raises(ValidationException) as exc_info:
        rails.get("paypal", db)
    assert exc_info.value.code == "UNSUPPORTED_RAIL"


def test_registry_builds_card_rail_with_shared_gateway(db, rails, stripe_gateway):
    card = rails.get("stripe", db)
    assert card.kind is PaymentRailKind.CARD
    assert card.gateway is stripe_gateway


def test_wallet_round_trip_keeps_ledger(db, test_settings, make_occurrence, fund_wallet):
    occurrence = make_occurrence(price_minor=1200)
    account = fund_wallet("cust-a", 2000)
    registration = Registration(
        occurrence_id=occurrence.id,
        customer_id="cust-a",
        tenant_id=occurrence.tenant_id,
        status=RegistrationStatus.CONFIRMED.value,
    )
    db.add(registration)
    db.flush()
    rail = WalletRail(db, test_settings)

    charged = rail.issue(registration, 1200, "CHF", description="Class booking: Morning Flow")
    refunded = rail.refund(charged.payment)
    db.commit()

    assert charged.status is RailOutcome.COMPLETED
    assert charged.details["balanceAfter"] == 800
    assert refunded.payment.amount == -1200
    db.expire_all()
    assert db.get(Payment, charged.payment.id).status == PaymentStatus.REFUNDED.value
    entries = WalletRepository(db).entries_for(account.id)
    assert [entry.amount for entry in entries] == [2000, -1200, 1200]
    assert entries[-1].balance_after == 2000


def test_record_refund_finalizes_pending_placeholder(db, test_settings, make_occurrence, fund_wallet):
    occurrence = make_occurrence(price_minor=900)
    fund_wallet("cust-a", 900)
    registration = Registration(
        occurrence_id=occurrence.id,
        customer_id="cust-a",
        tenant_id=occurrence.tenant_id,
        status=RegistrationStatus.CANCELED.value,
    )
    db.add(registration)
    db.flush()
    rail = WalletRail(db, test_settings)
    charge = rail.issue(registration, 900, "CHF").payment

    placeholder = rail.record_refund(charge, status=PaymentStatus.PENDING)
    assert rail.record_refund(charge, status=PaymentStatus.PENDING).id == placeholder.id
    final = rail.record_refund(charge, external_ref="manual-1")
    db.commit()

    assert final.id == placeholder.id
    assert final.status == PaymentStatus.REFUNDED.value
    assert final.external_ref == "manual-1"
    assert db.query(Payment).filter_by(parent_payment_id=charge.id).count() == 1


def test_mobile_wallet_refund_is_not_available(db, test_settings):
    payment = Payment(id="01J9PAYMENT000000000000000", rail="mobile_wallet", amount=100)
    with pytest.raises(RefundFailedException) as exc_info:
        MobileWalletRail(db, test_settings).refund(payment)
    assert exc_info.value.code == "RAIL_NOT_IMPLEMENTED"
