"""
Database-backed idempotency store for booking and cancellation requests.

A client key is reserved with a unique-key insert that commits immediately, so
a concurrent retry carrying the same key observes the reservation. The stored
response is written in the same transaction as the side effects it describes,
and replays return it verbatim instead of executing again.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import json
from typing import Any, Dict, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.enums import IdempotencyStatus
from ..core.exceptions import IdempotencyInProgressException, ServiceException, ValidationException
from ..database.session_utils import as_utc, utcnow
from ..models.idempotency import IdempotencyRecord
from ..services.base import BaseService


@dataclass
class StoredResponse:
    status_code: int
    body: Dict[str, Any]


@dataclass
class IdempotencyReservation:
    operation: str
    key: str
    key_hash: str
    is_new: bool
    existing_result: Optional[StoredResponse] = None


def idem_key(namespace: str, operation: str, raw: str) -> str:
    digest = hashlib.sha256(raw.encode()).hexdigest()
    return f"{namespace}:idem:{operation}:{digest}"


def request_fingerprint(payload: Dict[str, Any]) -> str:
    """Stable hash of a request body; key reuse with a different body is rejected."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class IdempotencyStore(BaseService):
    """Reserve, complete and replay idempotency keys."""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        super().__init__(db, settings)

    def _load(self, key_hash: str) -> Optional[IdempotencyRecord]:
        stmt = select(IdempotencyRecord).where(IdempotencyRecord.key_hash == key_hash)
        return self.db.execute(stmt, execution_options={"populate_existing": True}).scalars().first()

    @BaseService.measure_operation("idempotency.get_or_reserve")
    def get_or_reserve(self, operation: str, key: str, fingerprint: str) -> IdempotencyReservation:
        """
        Return the stored outcome for ``key`` or reserve it for this request.

        Raises:
            ValidationException: the key was used before with a different body
            IdempotencyInProgressException: the first request is still running
        """
        now = utcnow()
        key_hash = idem_key(self.settings.rate_limit_namespace, operation, key)

        record = self._load(key_hash)
        if record is not None and as_utc(record.expires_at) <= now:
            self.db.execute(delete(IdempotencyRecord).where(IdempotencyRecord.id == record.id))
            self.db.commit()
            record = None

        if record is None:
            try:
                self.db.add(
                    IdempotencyRecord(
                        key_hash=key_hash,
                        operation=operation,
                        request_fingerprint=fingerprint,
                        status=IdempotencyStatus.PENDING.value,
                        created_at=now,
                        expires_at=now + timedelta(seconds=self.settings.idempotency_ttl_seconds),
                    )
                )
                self.db.commit()
                return IdempotencyReservation(operation, key, key_hash, is_new=True)
            except IntegrityError:
                self.db.rollback()
                record = self._load(key_hash)
                if record is None:
                    raise ServiceException("Idempotency record vanished after conflict")

        if record.request_fingerprint != fingerprint or record.operation != operation:
            raise ValidationException(
                "Idempotency-Key was already used with a different request",
                code="IDEMPOTENCY_KEY_REUSED",
            )

        if record.status == IdempotencyStatus.COMPLETED.value:
            self.logger.info(
                "Replaying stored idempotent response",
                extra={"operation": operation, "key_hash": key_hash},
            )
            return IdempotencyReservation(
                operation,
                key,
                key_hash,
                is_new=False,
                existing_result=StoredResponse(
                    status_code=int(record.response_status or 200),
                    body=dict(record.response_body or {}),
                ),
            )

        return self._take_over_if_stale(record, now, operation, key)

    def _take_over_if_stale(
        self, record: IdempotencyRecord, now: datetime, operation: str, key: str
    ) -> IdempotencyReservation:
        reserved_at = as_utc(record.created_at)
        timeout = timedelta(seconds=self.settings.idempotency_pending_timeout_seconds)
        if reserved_at is not None and now - reserved_at < timeout:
            raise IdempotencyInProgressException()

        stmt = (
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.id == record.id,
                IdempotencyRecord.status == IdempotencyStatus.PENDING.value,
                IdempotencyRecord.created_at == record.created_at,
            )
            .values(created_at=now, expires_at=now + timedelta(seconds=self.settings.idempotency_ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        if not self.db.execute(stmt).rowcount:
            self.db.rollback()
            raise IdempotencyInProgressException()
        self.db.commit()
        self.logger.warning(
            "Took over stale idempotency reservation",
            extra={"operation": operation, "key_hash": record.key_hash},
        )
        return IdempotencyReservation(operation, key, record.key_hash, is_new=True)

    def complete(self, reservation: IdempotencyReservation, status_code: int, body: Dict[str, Any]) -> None:
        """Store the outcome. Joins the caller's transaction."""
        self.db.execute(
            update(IdempotencyRecord)
            .where(IdempotencyRecord.key_hash == reservation.key_hash)
            .values(
                status=IdempotencyStatus.COMPLETED.value,
                response_status=status_code,
                response_body=body,
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    def release(self, reservation: IdempotencyReservation) -> None:
        """Drop an unfinished reservation so the client may retry with the same key."""
        self.db.execute(
            delete(IdempotencyRecord).where(
                IdempotencyRecord.key_hash == reservation.key_hash,
                IdempotencyRecord.status == IdempotencyStatus.PENDING.value,
            )
        )
        self.db.commit()

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        result = self.db.execute(delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= now))
        return int(result.rowcount or 0)
