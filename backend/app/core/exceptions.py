# backend/app/core/exceptions.py
"""
Domain-specific exceptions for the HealNest booking service.

Services raise these; routes convert them with ``to_http_exception`` so the
response body always has the shape ``{"message", "code", "details"}``.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.http_status,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when request data fails business validation."""

    http_status = status.HTTP_400_BAD_REQUEST


class UnauthorizedException(DomainException):
    """Raised when credentials are missing or invalid."""

    http_status = status.HTTP_401_UNAUTHORIZED

    def to_http_exception(self) -> HTTPException:
        exc = super().to_http_exception()
        exc.headers = {"WWW-Authenticate": "Bearer"}
        return exc


class ForbiddenException(DomainException):
    """Raised when the caller may not perform the action."""

    http_status = status.HTTP_403_FORBIDDEN


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    http_status = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when the request conflicts with current state."""

    http_status = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    http_status = HTTP_422_UNPROCESSABLE


class ServiceException(DomainException):
    """Raised when a service operation fails unexpectedly."""

    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR


# Booking taxonomy


class SlotUnavailableException(ConflictException):
    """Lost the reservation race; the client has to pick another slot."""

    def __init__(self, slot_id: str, message: Optional[str] = None):
        super().__init__(
            message=message or "This slot is no longer available",
            code="SLOT_UNAVAILABLE",
            details={"slot_id": slot_id},
        )


class TooLateException(ConflictException):
    """Client cancellation inside the notice window."""

    def __init__(self, required_hours: int, hours_until_session: float):
        super().__init__(
            message=f"Sessions can only be cancelled at least {required_hours} hours in advance",
            code="TOO_LATE",
            details={
                "required_hours": required_hours,
                "hours_until_session": round(hours_until_session, 2),
            },
        )


class SlotOverlapException(ConflictException):
    """Raised when a new slot overlaps an existing slot of the same therapist."""

    def __init__(self, new_range: str, conflicting_range: str):
        super().__init__(
            message=f"Slot {new_range} overlaps existing slot {conflicting_range}",
            code="SLOT_OVERLAP",
            details={"new_slot": new_range, "conflicting_slot": conflicting_range},
        )


class GatewayException(DomainException):
    """The payment provider failed or answered with something unusable."""

    http_status = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        provider_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.operation = operation
        self.provider_status = provider_status
        merged = {"operation": operation, "provider_status": provider_status}
        merged.update(details or {})
        super().__init__(message=message, code="GATEWAY_ERROR", details=merged)


class CompensationRequiredException(DomainException):
    """
    Payment was captured but the booking could not be recorded.

    Never retried automatically; an operator reconciles it by hand.
    """

    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, transaction_ref: str, reason: str):
        self.transaction_ref = transaction_ref
        self.reason = reason
        super().__init__(
            message="Payment received but the session could not be booked. Support has been notified.",
            code="COMPENSATION_REQUIRED",
            details={"transaction_ref": transaction_ref},
        )


class StaleHoldException(DomainException):
    """An AwaitingPayment hold outlived the configured timeout."""

    def __init__(self, transaction_ref: str, slot_id: str):
        super().__init__(
            message="Payment hold expired",
            code="STALE_HOLD",
            details={"transaction_ref": transaction_ref, "slot_id": slot_id},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    Wraps SQLAlchemy failures such as connection issues, query failures or
    constraint violations so services never see driver exceptions.
    """


class DuplicateSessionError(RepositoryException):
    """A session already exists for this payment transaction reference."""

    def __init__(self, transaction_ref: str):
        self.transaction_ref = transaction_ref
        super().__init__(f"Session already exists for transaction {transaction_ref}")
