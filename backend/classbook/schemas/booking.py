"""Booking and cancellation request bodies (camelCase on the wire)."""

from typing import Any, Dict, Optional

from pydantic import ConfigDict, Field, field_validator

from .base import StandardizedModel


class BookRequest(StandardizedModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    occurrence_id: str = Field(..., alias="occurrenceId", min_length=1, max_length=64)
    customer_id: str = Field(..., alias="customerId", min_length=1, max_length=64)
    rail: Optional[str] = Field(default=None, max_length=32)
    rail_data: Optional[Dict[str, Any]] = Field(default=None, alias="railData")

    @field_validator("occurrence_id", "customer_id")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class CancelRequest(StandardizedModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    registration_id: str = Field(..., alias="registrationId", min_length=1, max_length=64)
    reason: Optional[str] = Field(default=None, max_length=500)
    actor_id: Optional[str] = Field(default=None, alias="actorId", max_length=64)
