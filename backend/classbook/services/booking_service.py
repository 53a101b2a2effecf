"""
Booking orchestrator.

A booking runs in up to two short transactions around the payment call so no
database lock is held while a payment provider is contacted:

1. reserve: take a seat (or join the waitlist), create the registration and,
   for paid classes, a capacity hold that expires if the process dies;
2. settle: convert the hold and store the idempotent response, or compensate
   when the rail rejects the charge.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
import time
from typing import Any, Dict, Optional
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.enums import HoldStatus, OccurrenceStatus, PaymentRailKind, PaymentStatus, RegistrationStatus
from ..core.exceptions import (
    AlreadyRegisteredException,
    ConflictException,
    DomainException,
    NotFoundException,
    PaymentFailedException,
    RefundFailedException,
    ServiceException,
    ValidationException,
)
from ..database.session_utils import utcnow
from ..idempotency.store import IdempotencyReservation, IdempotencyStore, request_fingerprint
from ..models.occurrence import Occurrence
from ..models.registration import CapacityHold, Registration
from ..monitoring.prometheus_metrics import bookings_total, compensation_failures_total
from ..payments.base import PaymentRail, PaymentResult
from ..payments.registry import RailRegistry
from ..ratelimit.limiter import RateLimiter
from ..repositories.event_outbox_repository import EventOutboxRepository
from ..repositories.occurrence_repository import OccurrenceRepository
from ..repositories.payment_repository import PaymentRepository
from ..repositories.registration_repository import CapacityHoldRepository, RegistrationRepository
from .base import BaseService
from .capacity_ledger import CapacityLedger
from .payment_state import PAYMENT_FAILED_REASON

BOOK_OPERATION = "book"
COMPENSATION_BACKOFF_SECONDS = 0.2


@dataclass
class BookingResult:
    registration_id: str
    occurrence_id: str
    customer_id: str
    status: str
    idempotency_key: str
    payment: Optional[Dict[str, Any]] = None
    replayed: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "registrationId": self.registration_id,
            "occurrenceId": self.occurrence_id,
            "customerId": self.customer_id,
            "status": self.status,
            "payment": self.payment,
            "idempotencyKey": self.idempotency_key,
        }
        body.update(self.extra)
        return body

    @classmethod
    def from_dict(cls, body: Dict[str, Any], *, replayed: bool = False) -> "BookingResult":
        known = {"registrationId", "occurrenceId", "customerId", "status", "payment", "idempotencyKey"}
        return cls(
            registration_id=body["registrationId"],
            occurrence_id=body["occurrenceId"],
            customer_id=body["customerId"],
            status=body["status"],
            idempotency_key=body["idempotencyKey"],
            payment=body.get("payment"),
            replayed=replayed,
            extra={k: v for k, v in body.items() if k not in known},
        )


class BookingOrchestrator(BaseService):
    """Creates registrations, charging the selected rail when the class is paid."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        rails: Optional[RailRegistry] = None,
    ):
        super().__init__(db, settings)
        self.rate_limiter = rate_limiter or RateLimiter(settings=self.settings)
        self.rails = rails or RailRegistry(self.settings)
        self.idempotency = IdempotencyStore(db, self.settings)
        self.occurrences = OccurrenceRepository(db)
        self.registrations = RegistrationRepository(db)
        self.holds = CapacityHoldRepository(db)
        self.payments = PaymentRepository(db)
        self.outbox = EventOutboxRepository(db)
        self.ledger = CapacityLedger(db, self.occurrences)

    @BaseService.measure_operation("book")
    def book(
        self,
        occurrence_id: str,
        customer_id: str,
        *,
        rail: Optional[str] = None,
        rail_data: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        client_ip: str = "unknown",
    ) -> BookingResult:
        """
        Book ``customer_id`` onto ``occurrence_id``.

        A request without an idempotency key gets a generated one, returned in
        the result so the client can retry safely.

        Raises:
            RateLimitedException: a per-IP or per-customer bucket is empty
            NotFoundException: unknown occurrence
            ValidationException: occurrence not bookable or rail missing
            AlreadyRegisteredException: the customer already holds an active registration
            PaymentFailedException: the rail rejected the charge (booking compensated)
        """
        if not occurrence_id or not customer_id:
            missing = "occurrenceId" if not occurrence_id else "customerId"
            raise ValidationException(f"Missing required field: {missing}", code="MISSING_FIELD")

        key = idempotency_key or str(uuid.uuid4())
        fingerprint = request_fingerprint(
            {"occurrenceId": occurrence_id, "customerId": customer_id, "rail": rail, "railData": rail_data}
        )
        reservation = self.idempotency.get_or_reserve(BOOK_OPERATION, key, fingerprint)
        if not reservation.is_new:
            return self._replay(reservation)

        try:
            self.rate_limiter.enforce("book", client_ip)
            self.rate_limiter.enforce("book:user", customer_id)
            occurrence, rail_kind = self._validate(occurrence_id, rail)
            registration, hold = self._reserve(occurrence, customer_id, rail_kind)
        except Exception:
            # Nothing durable happened; let the client retry with the same key
            self.db.rollback()
            self.idempotency.release(reservation)
            raise

        if registration.status == RegistrationStatus.WAITLISTED.value or not occurrence.is_paid:
            result = BookingResult(
                registration_id=registration.id,
                occurrence_id=occurrence.id,
                customer_id=customer_id,
                status=registration.status,
                idempotency_key=key,
            )
            with self.transaction():
                self.idempotency.complete(reservation, 201, result.to_dict())
            bookings_total.labels(outcome=registration.status).inc()
            self.logger.info(
                "Booking created",
                extra={"registration_id": registration.id, "occurrence_id": occurrence.id, "status": registration.status},
            )
            return result

        return self._settle_payment(reservation, occurrence, registration, hold, rail_kind, rail_data)

    # ------------------------------------------------------------- phases
    def _replay(self, reservation: IdempotencyReservation) -> BookingResult:
        stored = reservation.existing_result
        if stored is None:
            raise ServiceException("Idempotent replay without a stored response")
        bookings_total.labels(outcome="replayed").inc()
        if stored.status_code == PaymentFailedException.status_code:
            body = stored.body
            raise PaymentFailedException(body.get("error", "Payment failed"), code=body.get("code"), details=body.get("details"))
        return BookingResult.from_dict(stored.body, replayed=True)

    def _validate(self, occurrence_id: str, rail: Optional[str]) -> tuple[Occurrence, Optional[PaymentRailKind]]:
        occurrence = self.occurrences.get_by_id(occurrence_id)
        if occurrence is None:
            raise NotFoundException("Occurrence not found", code="OCCURRENCE_NOT_FOUND")
        if occurrence.status != OccurrenceStatus.SCHEDULED.value:
            raise ValidationException(
                "Event is not available for booking",
                code="OCCURRENCE_NOT_BOOKABLE",
                details={"status": occurrence.status},
            )
        if not occurrence.is_paid:
            return occurrence, None
        if not rail:
            raise ValidationException("A payment rail is required for paid classes", code="RAIL_REQUIRED")
        try:
            return occurrence, PaymentRailKind.parse(rail)
        except ValueError:
            raise ValidationException(f"Unsupported payment rail: {rail}", code="UNSUPPORTED_RAIL")

    def _reserve(
        self, occurrence: Occurrence, customer_id: str, rail_kind: Optional[PaymentRailKind]
    ) -> tuple[Registration, Optional[CapacityHold]]:
        now = utcnow()
        with self.transaction():
            existing = self.registrations.find_active(occurrence.id, customer_id)
            if existing is not None:
                raise AlreadyRegisteredException(details={"registrationId": existing.id, "status": existing.status})

            seat = self.ledger.try_reserve(occurrence.id)
            status = RegistrationStatus.CONFIRMED if seat.reserved else RegistrationStatus.WAITLISTED
            try:
                registration = self.registrations.create(
                    occurrence_id=occurrence.id,
                    customer_id=customer_id,
                    tenant_id=occurrence.tenant_id,
                    status=status.value,
                    rail=rail_kind.value if rail_kind else None,
                    booked_at=now,
                    confirmed_at=now if seat.reserved else None,
                )
            except IntegrityError:
                # Lost the race against a concurrent booking for the same customer
                raise AlreadyRegisteredException()
            self.registrations.add_history(registration.id, from_status=None, to_status=status, reason="booked")

            hold = None
            if seat.reserved and occurrence.is_paid:
                hold = self.holds.create(
                    occurrence_id=occurrence.id,
                    registration_id=registration.id,
                    status=HoldStatus.ACTIVE.value,
                    expires_at=now + timedelta(seconds=self.settings.hold_ttl_seconds),
                )

            self.outbox.enqueue(
                "registration.created" if seat.reserved else "registration.waitlisted",
                registration.id,
                {
                    "registrationId": registration.id,
                    "occurrenceId": occurrence.id,
                    "customerId": customer_id,
                    "status": status.value,
                },
                tenant_id=occurrence.tenant_id,
            )
        return registration, hold

    def _settle_payment(
        self,
        reservation: IdempotencyReservation,
        occurrence: Occurrence,
        registration: Registration,
        hold: Optional[CapacityHold],
        rail_kind: Optional[PaymentRailKind],
        rail_data: Optional[Dict[str, Any]],
    ) -> BookingResult:
        if rail_kind is None:
            raise ServiceException("Paid booking reached settlement without a payment rail")
        rail_impl = self.rails.get(rail_kind, self.db)
        try:
            payment = rail_impl.issue(
                registration,
                occurrence.price_minor,
                occurrence.currency,
                rail_data,
                description=f"Class booking: {occurrence.title}",
            )
        except PaymentFailedException as exc:
            return self._fail_payment(reservation, registration, hold, exc)
        except Exception as exc:
            self.logger.exception(
                "Payment rail raised unexpectedly; compensating booking",
                extra={"registration_id": registration.id, "rail": rail_kind.value},
            )
            self.db.rollback()
            self._compensate(registration, hold, reservation=None, response=None)
            self.idempotency.release(reservation)
            if isinstance(exc, DomainException):
                raise
            raise ServiceException("Payment could not be processed") from exc

        converted = True
        if hold is not None:
            converted = self.holds.resolve(hold.id, HoldStatus.CONVERTED)
        if not converted:
            self._void_orphaned_payment(rail_impl, payment, registration)
            self.idempotency.release(reservation)
            raise ConflictException(
                "Booking hold expired before payment completed",
                code="HOLD_EXPIRED",
                details={"registrationId": registration.id},
            )

        result = BookingResult(
            registration_id=registration.id,
            occurrence_id=occurrence.id,
            customer_id=registration.customer_id,
            status=registration.status,
            idempotency_key=reservation.key,
            payment=payment.describe(),
        )
        with self.transaction():
            self.idempotency.complete(reservation, 201, result.to_dict())
        bookings_total.labels(outcome=f"{registration.status}_paid").inc()
        self.logger.info(
            "Paid booking created",
            extra={
                "registration_id": registration.id,
                "rail": rail_kind.value,
                "payment_outcome": payment.status.value,
            },
        )
        return result

    def _fail_payment(
        self,
        reservation: IdempotencyReservation,
        registration: Registration,
        hold: Optional[CapacityHold],
        exc: PaymentFailedException,
    ) -> BookingResult:
        details = {**(exc.details or {}), "registrationId": registration.id}
        response = {"error": exc.message, "code": exc.code, "details": details}
        self.logger.info(
            "Payment rejected; compensating booking",
            extra={"registration_id": registration.id, "code": exc.code},
        )
        self._compensate(registration, hold, reservation=reservation, response=response)
        bookings_total.labels(outcome="payment_failed").inc()
        raise PaymentFailedException(exc.message, code=exc.code, details=details)

    def _compensate(
        self,
        registration: Registration,
        hold: Optional[CapacityHold],
        *,
        reservation: Optional[IdempotencyReservation],
        response: Optional[Dict[str, Any]],
    ) -> bool:
        """
        Undo a confirmed booking whose payment did not go through.

        Retried a bounded number of times. When every attempt fails the hold
        stays active and the waitlist promoter's expiry sweep finishes the job.
        """
        attempts = max(1, self.settings.compensation_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                with self.transaction():
                    canceled = self.registrations.transition(
                        registration.id,
                        from_statuses=[RegistrationStatus.CONFIRMED, RegistrationStatus.PENDING],
                        to_status=RegistrationStatus.CANCELED,
                        reason=PAYMENT_FAILED_REASON,
                        cancellation_reason=PAYMENT_FAILED_REASON,
                        canceled_at=utcnow(),
                    )
                    if canceled:
                        self.ledger.release(registration.occurrence_id)
                    if hold is not None:
                        self.holds.resolve(hold.id, HoldStatus.RELEASED)
                    self.outbox.enqueue(
                        "registration.canceled",
                        registration.id,
                        {
                            "registrationId": registration.id,
                            "occurrenceId": registration.occurrence_id,
                            "reason": PAYMENT_FAILED_REASON,
                        },
                        tenant_id=registration.tenant_id,
                    )
                    if reservation is not None and response is not None:
                        self.idempotency.complete(reservation, PaymentFailedException.status_code, response)
                return True
            except ServiceException as exc:
                self.logger.warning(
                    "Compensation attempt failed",
                    extra={"registration_id": registration.id, "attempt": attempt, "error": exc.message},
                )
                if attempt < attempts:
                    time.sleep(COMPENSATION_BACKOFF_SECONDS * attempt)

        compensation_failures_total.inc()
        self.logger.error(
            "Compensation exhausted; capacity hold left to expire",
            extra={"registration_id": registration.id, "hold_id": hold.id if hold else None},
        )
        return False

    def _void_orphaned_payment(self, rail_impl: PaymentRail, payment: PaymentResult, registration: Registration) -> None:
        """The promoter expired our hold while the rail was working; give the money back."""
        self.logger.error(
            "Capacity hold expired during payment; voiding charge",
            extra={"registration_id": registration.id},
        )
        charge = payment.payment
        with self.transaction():
            if charge is None:
                return
            try:
                rail_impl.refund(charge)
            except RefundFailedException as exc:
                self.logger.error(
                    "Could not void charge for expired hold; queued for retry",
                    extra={"payment_id": charge.id, "error": exc.message},
                )
                rail_impl.record_refund(charge, status=PaymentStatus.PENDING)
                self.outbox.enqueue(
                    "refund.pending",
                    charge.id,
                    {"paymentId": charge.id, "registrationId": registration.id},
                    tenant_id=registration.tenant_id,
                )
