"""
Payment rail contract.

Every rail exposes ``issue`` and ``refund`` with the same shape so the
orchestrators never branch on rail kind. Rails write Payment rows through the
caller's session and leave the transaction boundary to the orchestrator. The
one exception is a rail that calls out to a provider during ``issue``: it
commits its pending charge first so no database lock is held over the network.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.enums import PaymentKind, PaymentRailKind, PaymentStatus, RailOutcome
from ..database.session_utils import utcnow
from ..models.payment import Payment
from ..models.registration import Registration
from ..repositories.payment_repository import PaymentRepository


@dataclass
class PaymentResult:
    status: RailOutcome
    payment: Optional[Payment] = None
    external_ref: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def describe(self) -> Dict[str, Any]:
        """Payment descriptor returned to the client."""
        descriptor: Dict[str, Any] = {"outcome": self.status.value}
        if self.payment is not None:
            descriptor.update(self.payment.describe())
        if self.external_ref:
            descriptor["externalRef"] = self.external_ref
        descriptor.update(self.details)
        return descriptor


class PaymentRail(ABC):
    kind: ClassVar[PaymentRailKind]

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or default_settings
        self.payments = PaymentRepository(db)

    @abstractmethod
    def issue(
        self,
        registration: Registration,
        amount: int,
        currency: str,
        rail_data: Optional[Dict[str, Any]] = None,
        *,
        description: str = "",
    ) -> PaymentResult:
        """
        Start collecting ``amount`` for ``registration``.

        Raises:
            PaymentFailedException: the rail rejected the charge
        """

    @abstractmethod
    def refund(self, payment: Payment) -> PaymentResult:
        """
        Return the money held by ``payment``.

        Raises:
            RefundFailedException: the rail could not complete the refund now
        """

    # ------------------------------------------------------------ helpers
    def _new_charge(
        self,
        registration: Registration,
        amount: int,
        currency: str,
        *,
        status: PaymentStatus = PaymentStatus.PENDING,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        return self.payments.create(
            registration_id=registration.id,
            tenant_id=registration.tenant_id,
            customer_id=registration.customer_id,
            rail=self.kind.value,
            kind=PaymentKind.CHARGE.value,
            amount=amount,
            currency=currency,
            status=status.value,
            payment_metadata=metadata or {},
            confirmed_at=utcnow() if status == PaymentStatus.PAID else None,
        )

    def record_refund(
        self,
        charge: Payment,
        *,
        status: PaymentStatus = PaymentStatus.REFUNDED,
        external_ref: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """
        Append the negative refund row and close the original charge.

        A refund previously recorded as pending for the same charge is
        finalized in place instead of adding a second row.
        """
        pending = next(
            (
                row
                for row in self.payments.refunds_for(charge.id)
                if row.status == PaymentStatus.PENDING.value
            ),
            None,
        )
        if pending is not None and status == PaymentStatus.REFUNDED:
            pending.status = status.value
            pending.external_ref = external_ref or pending.external_ref
            pending.payment_metadata = {**(pending.payment_metadata or {}), **(metadata or {})}
            pending.confirmed_at = utcnow()
            self.db.flush()
            refund_row = pending
        elif pending is not None:
            if metadata:
                pending.payment_metadata = {**(pending.payment_metadata or {}), **metadata}
                self.db.flush()
            return pending
        else:
            refund_row = self.payments.create(
                registration_id=charge.registration_id,
                tenant_id=charge.tenant_id,
                customer_id=charge.customer_id,
                rail=charge.rail,
                kind=PaymentKind.REFUND.value,
                amount=-abs(charge.amount),
                currency=charge.currency,
                status=status.value,
                external_ref=external_ref,
                parent_payment_id=charge.id,
                payment_metadata={"originalPaymentId": charge.id, **(metadata or {})},
                confirmed_at=utcnow() if status == PaymentStatus.REFUNDED else None,
            )
        if status == PaymentStatus.REFUNDED:
            self.payments.transition(
                charge.id,
                from_statuses=[PaymentStatus.PAID, PaymentStatus.PENDING],
                to_status=PaymentStatus.REFUNDED,
            )
        return refund_row
