"""Data access for payments, invoices and wallets."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..core.enums import InvoiceStatus, PaymentKind, PaymentRailKind, PaymentStatus
from ..database.session_utils import utcnow
from ..models.payment import Invoice, Payment, WalletAccount, WalletLedgerEntry
from .base_repository import BaseRepository


class PaymentRepository(BaseRepository[Payment]):
    def __init__(self, db: Session):
        super().__init__(db, Payment)

    def get_by_external_ref(self, external_ref: str, kind: PaymentKind = PaymentKind.CHARGE) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.external_ref == external_ref, Payment.kind == kind.value)
        return self.db.execute(stmt).scalars().first()

    def refundable_charge(self, registration_id: str) -> Optional[Payment]:
        """Latest charge that still holds or promises money (pending or paid)."""
        stmt = (
            select(Payment)
            .where(
                Payment.registration_id == registration_id,
                Payment.kind == PaymentKind.CHARGE.value,
                Payment.status.in_([PaymentStatus.PENDING.value, PaymentStatus.PAID.value]),
            )
            .order_by(Payment.created_at.desc(), Payment.id.desc())
        )
        return self.db.execute(stmt).scalars().first()

    def transition(self, payment_id: str, *, from_statuses: List[PaymentStatus], to_status: PaymentStatus, **values: Any) -> bool:
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status.in_([s.value for s in from_statuses]))
            .values(status=to_status.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        won = bool(self.db.execute(stmt).rowcount)
        self.expire_cached(payment_id)
        return won

    def stale_pending_charges(self, rail: PaymentRailKind, older_than: datetime, limit: int = 100) -> List[Payment]:
        stmt = (
            select(Payment)
            .where(
                Payment.rail == rail.value,
                Payment.kind == PaymentKind.CHARGE.value,
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at <= older_than,
            )
            .order_by(Payment.created_at.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def refunds_for(self, charge_id: str) -> List[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.parent_payment_id == charge_id, Payment.kind == PaymentKind.REFUND.value)
            .order_by(Payment.created_at.asc(), Payment.id.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def latest_charge(self, registration_id: str) -> Optional[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.registration_id == registration_id, Payment.kind == PaymentKind.CHARGE.value)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
        )
        return self.db.execute(stmt).scalars().first()

    def pending_refunds(self, older_than: Optional[datetime] = None, limit: int = 100) -> List[Payment]:
        stmt = select(Payment).where(
            Payment.kind == PaymentKind.REFUND.value, Payment.status == PaymentStatus.PENDING.value
        )
        if older_than is not None:
            stmt = stmt.where(Payment.created_at <= older_than)
        stmt = stmt.order_by(Payment.created_at.asc()).limit(limit)
        return list(self.db.execute(stmt).scalars().all())


class InvoiceRepository(BaseRepository[Invoice]):
    def __init__(self, db: Session):
        super().__init__(db, Invoice)

    def for_payment(self, payment_id: str) -> Optional[Invoice]:
        stmt = select(Invoice).where(Invoice.payment_id == payment_id)
        return self.db.execute(stmt).scalars().first()

    def cancel(self, invoice_id: str) -> bool:
        stmt = (
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status == InvoiceStatus.SENT.value)
            .values(status=InvoiceStatus.CANCELED.value, canceled_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        won = bool(self.db.execute(stmt).rowcount)
        self.expire_cached(invoice_id)
        return won


class WalletRepository(BaseRepository[WalletAccount]):
    def __init__(self, db: Session):
        super().__init__(db, WalletAccount)

    def get_account(self, customer_id: str, tenant_id: str) -> Optional[WalletAccount]:
        stmt = select(WalletAccount).where(
            WalletAccount.customer_id == customer_id, WalletAccount.tenant_id == tenant_id
        )
        return self.db.execute(stmt).scalars().first()

    def get_or_create_account(self, customer_id: str, tenant_id: str, currency: str = "CHF") -> WalletAccount:
        account = self.get_account(customer_id, tenant_id)
        if account is None:
            account = self.create(customer_id=customer_id, tenant_id=tenant_id, currency=currency, balance=0)
        return account

    def adjust_balance(
        self,
        account_id: str,
        delta: int,
        *,
        description: str,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> Optional[WalletLedgerEntry]:
        """
        Apply ``delta`` to the balance if the result stays non-negative.

        The conditional UPDATE and the ledger append share the caller's
        transaction. Returns None when the balance does not cover a debit.
        """
        stmt = (
            update(WalletAccount)
            .where(WalletAccount.id == account_id, WalletAccount.balance + delta >= 0)
            .values(balance=WalletAccount.balance + delta, updated_at=utcnow())
            .returning(WalletAccount.balance)
            .execution_options(synchronize_session=False)
        )
        balance_after = self.db.execute(stmt).scalar_one_or_none()
        self.expire_cached(account_id)
        if balance_after is None:
            return None

        entry = WalletLedgerEntry(
            account_id=account_id,
            amount=delta,
            balance_after=balance_after,
            description=description,
            reference_type=reference_type,
            reference_id=reference_id,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def entries_for(self, account_id: str) -> List[WalletLedgerEntry]:
        stmt = (
            select(WalletLedgerEntry)
            .where(WalletLedgerEntry.account_id == account_id)
            .order_by(WalletLedgerEntry.created_at.asc(), WalletLedgerEntry.id.asc())
        )
        return list(self.db.execute(stmt).scalars().all())
