"""Idempotency record persisted for booking and cancellation requests."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON
import ulid

from ..core.enums import IdempotencyStatus
from ..database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    # Namespaced sha256 of the client key; the raw key is never stored
    key_hash = Column(String(128), nullable=False, unique=True)
    operation = Column(String(50), nullable=False)
    request_fingerprint = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default=IdempotencyStatus.PENDING.value)
    response_status = Column(Integer, nullable=True)
    response_body = Column(JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
