"""TWINT mobile-wallet rail. Not yet connected to a provider."""

from typing import Any, Dict, Optional

from ..core.enums import PaymentRailKind
from ..core.exceptions import RailNotImplementedException, RefundFailedException
from ..models.payment import Payment
from ..models.registration import Registration
from .base import PaymentRail, PaymentResult


class MobileWalletRail(PaymentRail):
    kind = PaymentRailKind.MOBILE_WALLET

    def issue(
        self,
        registration: Registration,
        amount: int,
        currency: str,
        rail_data: Optional[Dict[str, Any]] = None,
        *,
        description: str = "",
    ) -> PaymentResult:
        raise RailNotImplementedException(
            "TWINT payment not yet implemented",
            details={"rail": self.kind.value},
        )

    def refund(self, payment: Payment) -> PaymentResult:
        raise RefundFailedException(
            "TWINT refunds not yet implemented",
            code="RAIL_NOT_IMPLEMENTED",
            details={"paymentId": payment.id},
        )
