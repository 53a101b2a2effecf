"""
Database models for the Classbook backend.

The models are organized by functionality:
- Recurring series and bookable occurrences
- Registrations, their status history and capacity holds
- Payments, invoices and wallets
- Idempotency records, the event outbox and raw webhook deliveries
"""

from .event_outbox import EventOutbox, EventOutboxStatus
from .idempotency import IdempotencyRecord
from .occurrence import ClassSeries, Occurrence
from .payment import Invoice, Payment, WalletAccount, WalletLedgerEntry
from .registration import CapacityHold, Registration, RegistrationStatusHistory
from .webhook_event import WebhookEvent

__all__ = [
    "CapacityHold",
    "ClassSeries",
    "EventOutbox",
    "EventOutboxStatus",
    "IdempotencyRecord",
    "Invoice",
    "Occurrence",
    "Payment",
    "Registration",
    "RegistrationStatusHistory",
    "WalletAccount",
    "WalletLedgerEntry",
    "WebhookEvent",
]
