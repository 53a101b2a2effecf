"""
Repository layer for the Classbook backend.

Repositories issue SQL; services decide when to commit.
"""

from .base_repository import BaseRepository
from .event_outbox_repository import EventOutboxRepository
from .occurrence_repository import OccurrenceRepository
from .payment_repository import InvoiceRepository, PaymentRepository, WalletRepository
from .registration_repository import CapacityHoldRepository, RegistrationRepository

__all__ = [
    "BaseRepository",
    "CapacityHoldRepository",
    "EventOutboxRepository",
    "InvoiceRepository",
    "OccurrenceRepository",
    "PaymentRepository",
    "RegistrationRepository",
    "WalletRepository",
]
