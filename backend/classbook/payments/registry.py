"""Rail selection keyed by PaymentRailKind."""

from __future__ import annotations

from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.enums import PaymentRailKind
from ..core.exceptions import ValidationException
from .base import PaymentRail
from .card import CardRail
from .invoice import InvoiceRail
from .mobile_wallet import MobileWalletRail
from .stripe_gateway import StripeGateway
from .wallet import WalletRail

RailFactory = Callable[[Session], PaymentRail]


class RailRegistry:
    """Builds the rail for a request; ``overrides`` swaps in another factory per kind."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        gateway: Optional[StripeGateway] = None,
        overrides: Optional[Dict[PaymentRailKind, RailFactory]] = None,
    ):
        self.settings = settings
        self._gateway = gateway
        self._factories: Dict[PaymentRailKind, RailFactory] = {
            PaymentRailKind.WALLET: lambda db: WalletRail(db, self.settings),
            PaymentRailKind.CARD: lambda db: CardRail(db, self.settings, gateway=self.gateway),
            PaymentRailKind.MOBILE_WALLET: lambda db: MobileWalletRail(db, self.settings),
            PaymentRailKind.INVOICE: lambda db: InvoiceRail(db, self.settings),
        }
        self._factories.update(overrides or {})

    @property
    def gateway(self) -> StripeGateway:
        if self._gateway is None:
            self._gateway = StripeGateway(self.settings)
        return self._gateway

    def get(self, kind: PaymentRailKind | str, db: Session) -> PaymentRail:
        if not isinstance(kind, PaymentRailKind):
            try:
                kind = PaymentRailKind.parse(kind)
            except ValueError:
                raise ValidationException(f"Unsupported payment rail: {kind}", code="UNSUPPORTED_RAIL")
        return self._factories[kind](db)
