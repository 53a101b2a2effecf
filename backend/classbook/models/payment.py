# backend/classbook/models/payment.py
"""
Payment, invoice and wallet models.

Payment rows are append-mostly: a refund is a new row with ``kind='refund'``
and a negative amount rather than an edit of the original charge. Wallet
balances move only through WalletRepository.adjust_balance, which updates the
account and appends the matching ledger entry in one transaction.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import JSON
import ulid

from ..core.enums import InvoiceStatus, PaymentKind, PaymentStatus
from ..database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


_PENDING_CHARGE_PREDICATE = text("kind = 'charge' AND status = 'pending'")


class Payment(Base):
    """One attempt to collect (or return) money for a registration."""

    __tablename__ = "payments"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    registration_id = Column(String(26), ForeignKey("registrations.id"), nullable=False, index=True)
    tenant_id = Column(String(26), nullable=False, index=True)
    customer_id = Column(String(26), nullable=False, index=True)

    rail = Column(String(20), nullable=False)
    kind = Column(String(10), nullable=False, default=PaymentKind.CHARGE.value)
    # Minor units; negative for refunds
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="CHF")
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)

    external_ref = Column(String(255), nullable=True, index=True, comment="Gateway transaction id")
    parent_payment_id = Column(String(26), ForeignKey("payments.id"), nullable=True)
    payment_metadata = Column(
        "metadata",
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"),
        nullable=False,
        default=dict,
    )
    failure_reason = Column(Text, nullable=True)

    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    registration = relationship("Registration", back_populates="payments")
    parent = relationship("Payment", remote_side=[id])

    __table_args__ = (
        Index(
            "uq_payments_one_pending_charge",
            "registration_id",
            unique=True,
            postgresql_where=_PENDING_CHARGE_PREDICATE,
            sqlite_where=_PENDING_CHARGE_PREDICATE,
        ),
        CheckConstraint(
            "(kind = 'charge' AND amount >= 0) OR (kind = 'refund' AND amount <= 0)",
            name="ck_payments_amount_sign",
        ),
    )

    def describe(self) -> dict:
        """Client-facing payment descriptor."""
        return {
            "paymentId": self.id,
            "method": self.rail,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
        }


class Invoice(Base):
    """Deferred-payment obligation created by the invoice rail."""

    __tablename__ = "invoices"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    registration_id = Column(String(26), ForeignKey("registrations.id"), nullable=False, index=True)
    payment_id = Column(String(26), ForeignKey("payments.id"), nullable=True, index=True)
    tenant_id = Column(String(26), nullable=False, index=True)
    customer_id = Column(String(26), nullable=False, index=True)

    invoice_number = Column(String(64), nullable=False, unique=True)
    subtotal = Column(Integer, nullable=False)
    tax_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="CHF")
    due_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default=InvoiceStatus.SENT.value, index=True)
    line_items = Column(JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"), nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    canceled_at = Column(DateTime(timezone=True), nullable=True)


class WalletAccount(Base):
    """Current wallet balance for a customer within a tenant."""

    __tablename__ = "wallet_accounts"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    customer_id = Column(String(26), nullable=False)
    tenant_id = Column(String(26), nullable=False)
    balance = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="CHF")
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)

    __table_args__ = (
        UniqueConstraint("customer_id", "tenant_id", name="uq_wallet_accounts_customer_tenant"),
        CheckConstraint("balance >= 0", name="ck_wallet_accounts_balance_nonnegative"),
    )


class WalletLedgerEntry(Base):
    """Immutable signed movement against a wallet account."""

    __tablename__ = "wallet_ledger_entries"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    account_id = Column(String(26), ForeignKey("wallet_accounts.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    reference_type = Column(String(50), nullable=True)
    reference_id = Column(String(26), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
