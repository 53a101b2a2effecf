"""Invoice rail: deferred payment with Swiss VAT and a fixed due window."""

from __future__ import annotations

from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from ..core.enums import InvoiceStatus, PaymentRailKind, RailOutcome
from ..core.exceptions import RefundFailedException
from ..database.session_utils import utcnow
from ..models.payment import Payment
from ..models.registration import Registration
from ..repositories.payment_repository import InvoiceRepository
from .base import PaymentRail, PaymentResult


def compute_tax(subtotal: int, rate: Decimal) -> int:
    """VAT in minor units, rounded half-up."""
    return int((Decimal(subtotal) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def invoice_number(registration_id: str, now_ms: int) -> str:
    return f"INV-{now_ms}-{registration_id[-8:]}"


class InvoiceRail(PaymentRail):
    kind = PaymentRailKind.INVOICE

    @property
    def invoices(self) -> InvoiceRepository:
        return InvoiceRepository(self.db)

    def issue(
        self,
        registration: Registration,
        amount: int,
        currency: str,
        rail_data: Optional[Dict[str, Any]] = None,
        *,
        description: str = "",
    ) -> PaymentResult:
        now = utcnow()
        tax = compute_tax(amount, Decimal(self.settings.invoice_tax_rate))
        total = amount + tax
        due_date = (now + timedelta(days=self.settings.invoice_due_days)).date()
        number = invoice_number(registration.id, int(now.timestamp() * 1000))

        payment = self._new_charge(registration, total, currency, metadata={"invoiceNumber": number})
        invoice = self.invoices.create(
            registration_id=registration.id,
            payment_id=payment.id,
            tenant_id=registration.tenant_id,
            customer_id=registration.customer_id,
            invoice_number=number,
            subtotal=amount,
            tax_amount=tax,
            total_amount=total,
            currency=currency,
            due_date=due_date,
            status=InvoiceStatus.SENT.value,
            line_items=[
                {
                    "description": description or "Class booking",
                    "quantity": 1,
                    "unitPrice": amount,
                    "total": amount,
                }
            ],
        )
        return PaymentResult(
            status=RailOutcome.PENDING,
            payment=payment,
            external_ref=number,
            details={
                "invoiceId": invoice.id,
                "invoiceNumber": number,
                "dueDate": due_date.isoformat(),
                "taxAmount": tax,
                "totalAmount": total,
            },
        )

    def refund(self, payment: Payment) -> PaymentResult:
        invoice = self.invoices.for_payment(payment.id)
        if invoice is None:
            raise RefundFailedException("Invoice not found for payment", details={"paymentId": payment.id})
        if invoice.status == InvoiceStatus.PAID.value:
            # Money already arrived by bank transfer; returning it is a manual step
            raise RefundFailedException(
                "Paid invoices are refunded manually",
                details={"paymentId": payment.id, "invoiceId": invoice.id},
            )
        self.invoices.cancel(invoice.id)
        refund_row = self.record_refund(payment, metadata={"invoiceId": invoice.id})
        return PaymentResult(
            status=RailOutcome.COMPLETED,
            payment=refund_row,
            details={"invoiceId": invoice.id, "invoiceStatus": InvoiceStatus.CANCELED.value},
        )
