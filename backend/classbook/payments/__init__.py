"""Payment rails: wallet, card (Stripe), mobile wallet (TWINT) and invoice."""

from .base import PaymentRail, PaymentResult
from .registry import RailRegistry

__all__ = ["PaymentRail", "PaymentResult", "RailRegistry"]
