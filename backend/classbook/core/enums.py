"""Status and kind enumerations shared by models and services."""

from enum import Enum


class OccurrenceStatus(str, Enum):
    SCHEDULED = "scheduled"
    CANCELED = "canceled"
    COMPLETED = "completed"


class RegistrationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    WAITLISTED = "waitlisted"
    CANCELED = "canceled"
    REFUNDED = "refunded"

    @classmethod
    def active(cls) -> tuple["RegistrationStatus", ...]:
        return (cls.PENDING, cls.CONFIRMED, cls.WAITLISTED)


class PaymentRailKind(str, Enum):
    WALLET = "wallet"
    CARD = "card"
    MOBILE_WALLET = "mobile_wallet"
    INVOICE = "invoice"

    @classmethod
    def parse(cls, raw: str) -> "PaymentRailKind":
        """Accept rail names as sent by clients ("stripe" and "twint" included)."""
        normalized = (raw or "").strip().lower()
        aliases = {"stripe": cls.CARD, "twint": cls.MOBILE_WALLET}
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


class PaymentKind(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class InvoiceStatus(str, Enum):
    SENT = "sent"
    PAID = "paid"
    CANCELED = "canceled"


class HoldStatus(str, Enum):
    ACTIVE = "active"
    CONVERTED = "converted"
    RELEASED = "released"
    EXPIRED = "expired"


class IdempotencyStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class RailOutcome(str, Enum):
    """Outcome of a rail issue/refund call."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
