# backend/classbook/schemas/__init__.py
"""Request and response models for the HTTP API."""

from .base import Envelope, StandardizedModel
from .booking import BookRequest, CancelRequest

__all__ = ["BookRequest", "CancelRequest", "Envelope", "StandardizedModel"]
