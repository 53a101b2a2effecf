# backend/classbook/core/exceptions.py
"""
Domain-specific exceptions for the Classbook backend.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
Every exception carries a stable ``code`` the calling UI can branch on.
"""

from typing import Any, Dict, Optional

from fastapi import status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code: Optional[str] = None

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.default_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def headers(self) -> Optional[Dict[str, str]]:
        return None


class ValidationException(DomainException):
    """Raised when request input is malformed or incomplete."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "VALIDATION_ERROR"


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND
    default_code = "NOT_FOUND"


class ConflictException(DomainException):
    """Raised for duplicate registrations and invalid state transitions."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "CONFLICT"


class PolicyViolationException(DomainException):
    """Raised when a business policy window is violated."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "POLICY_VIOLATION"


class RateLimitedException(DomainException):
    """Raised when a token bucket denies admission."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_code = "RATE_LIMITED"

    def __init__(
        self,
        message: str = "Too many requests. Please try again later.",
        *,
        retry_after_seconds: int = 60,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.retry_after_seconds = max(1, int(retry_after_seconds))
        super().__init__(message, details=details)

    def headers(self) -> Optional[Dict[str, str]]:
        return {"Retry-After": str(self.retry_after_seconds)}


class PaymentFailedException(DomainException):
    """Raised when a payment rail rejects a charge; the registration has been compensated."""

    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_code = "PAYMENT_FAILED"


class InsufficientFundsException(PaymentFailedException):
    """Raised by the wallet rail when the balance does not cover the charge."""

    default_code = "INSUFFICIENT_FUNDS"


class RailNotImplementedException(PaymentFailedException):
    """Raised by rails that honor the interface but cannot move money yet."""

    default_code = "RAIL_NOT_IMPLEMENTED"


class UnauthorizedException(DomainException):
    """Raised when a caller lacks the credential an endpoint requires."""

    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = "UNAUTHORIZED"


class InvalidSignatureException(UnauthorizedException):
    """Raised when a webhook signature does not verify."""

    default_code = "INVALID_SIGNATURE"


class ServiceException(DomainException):
    """Raised when a service operation fails unexpectedly."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "INTERNAL_ERROR"


class RepositoryException(Exception):
    """Raised when a repository operation fails."""

    pass


# Specific business exceptions


class AlreadyRegisteredException(ConflictException):
    """Raised when a customer already holds an active registration for an occurrence."""

    def __init__(
        self,
        message: str = "Already registered for this class",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code="ALREADY_REGISTERED", details=details)


class InvalidStateException(ConflictException):
    """Raised when an entity is not in a state that allows the requested transition."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="INVALID_STATE", details=details)


class IdempotencyInProgressException(ConflictException):
    """Raised when a request with the same idempotency key is still executing."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str = "A request with this Idempotency-Key is in progress") -> None:
        super().__init__(message, code="IDEMPOTENCY_IN_PROGRESS")


class RefundFailedException(ServiceException):
    """Raised when a rail could not return money; the caller records a pending refund."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_code = "REFUND_FAILED"
