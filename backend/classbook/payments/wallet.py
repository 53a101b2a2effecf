"""Prepaid wallet rail: synchronous debit and credit against the wallet ledger."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..core.enums import PaymentRailKind, PaymentStatus, RailOutcome
from ..core.exceptions import InsufficientFundsException
from ..models.payment import Payment
from ..models.registration import Registration
from ..repositories.payment_repository import WalletRepository
from .base import PaymentRail, PaymentResult

logger = logging.getLogger(__name__)


class WalletRail(PaymentRail):
    kind = PaymentRailKind.WALLET

    @property
    def wallets(self) -> WalletRepository:
        return WalletRepository(self.db)

    def issue(
        self,
        registration: Registration,
        amount: int,
        currency: str,
        rail_data: Optional[Dict[str, Any]] = None,
        *,
        description: str = "",
    ) -> PaymentResult:
        account = self.wallets.get_account(registration.customer_id, registration.tenant_id)
        balance = account.balance if account is not None else 0
        entry = None
        if account is not None:
            entry = self.wallets.adjust_balance(
                account.id,
                -amount,
                description=description or "Class booking",
                reference_type="registration",
                reference_id=registration.id,
            )
        if entry is None:
            logger.info(
                "Wallet debit rejected",
                extra={"registration_id": registration.id, "amount": amount, "balance": balance},
            )
            raise InsufficientFundsException(
                "Insufficient wallet balance",
                details={"required": amount, "available": balance},
            )

        payment = self._new_charge(
            registration,
            amount,
            currency,
            status=PaymentStatus.PAID,
            metadata={"walletEntryId": entry.id},
        )
        return PaymentResult(
            status=RailOutcome.COMPLETED,
            payment=payment,
            details={"balanceAfter": entry.balance_after},
        )

    def refund(self, payment: Payment) -> PaymentResult:
        account = self.wallets.get_or_create_account(payment.customer_id, payment.tenant_id, payment.currency)
        entry = self.wallets.adjust_balance(
            account.id,
            abs(payment.amount),
            description="Refund for cancelled class",
            reference_type="payment",
            reference_id=payment.id,
        )
        refund_row = self.record_refund(payment, metadata={"walletEntryId": entry.id if entry else None})
        return PaymentResult(
            status=RailOutcome.COMPLETED,
            payment=refund_row,
            details={"balanceAfter": entry.balance_after if entry else None},
        )
