"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes and global exception handlers. Every
failure leaves the API in the same envelope shape:

    {"success": false, "error_kind": "business_rule" | "unexpected",
     "error_code": "...", "message": "...", "details": {...}}

so callers can tell a rule rejection (render the message) from an
unexpected failure (show a generic error and retry later).
"""

import logging
from decimal import Decimal
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from typing import Any, Dict

logger = logging.getLogger("aeroledger.errors")


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class BusinessValidationError(AppException):
    """Raised when input is malformed or violates a field rule before any write."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION_001",
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details
        )


class InsufficientPermissionsError(AppException):
    """Raised when user doesn't have permission to perform an action."""

    def __init__(self, message: str = "Insufficient permissions", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PERM_001",
            status_code=status.HTTP_403_FORBIDDEN,
            details=details
        )


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class AuthenticationError(AppException):
    """Raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            error_code="ERR_AUTH_001",
            status_code=status.HTTP_401_UNAUTHORIZED
        )


class StateConflictError(AppException):
    """Raised when an operation is not valid for the entity's current status."""

    def __init__(self, message: str, details: Dict[str, Any] = None, error_code: str = "ERR_STATE_001"):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class OverpaymentError(StateConflictError):
    """Raised when a payment exceeds the invoice's remaining balance."""

    def __init__(self, balance_due: Decimal):
        super().__init__(
            message="Payment amount cannot exceed the remaining balance",
            details={"balance_due": balance_due},
            error_code="ERR_STATE_OVERPAYMENT",
        )
        self.balance_due = balance_due


class AlreadyPaidError(StateConflictError):
    """Raised when a payment targets an invoice with nothing left to pay."""

    def __init__(self, invoice_id: int):
        super().__init__(
            message="Invoice has no remaining balance",
            details={"invoice_id": invoice_id},
            error_code="ERR_STATE_ALREADY_PAID",
        )


class CheckinAlreadyApprovedError(StateConflictError):
    """Raised when a booking check-in is approved a second time."""

    def __init__(self, booking_id: int):
        super().__init__(
            message="Booking check-in has already been approved",
            details={"booking_id": booking_id},
            error_code="ERR_STATE_ALREADY_APPROVED",
        )


class IdempotencyInProgressError(StateConflictError):
    """Raised when a retry arrives while the first request with its key is still running."""

    def __init__(self, idempotency_key: str):
        super().__init__(
            message="A request with this Idempotency-Key is still in progress",
            details={"idempotency_key": idempotency_key},
            error_code="ERR_STATE_IN_PROGRESS",
        )


class IntegrityFailureError(AppException):
    """Raised when an invariant cannot be established; the whole unit rolls back."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_INTEGRITY_001",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class ImmutabilityViolationError(IntegrityFailureError):
    """Raised by the ORM guards when a locked record would be modified."""

    def __init__(self, entity: str, entity_id: Any, reason: str):
        super().__init__(
            message=f"{entity} {entity_id} is immutable: {reason}",
            details={"entity": entity, "id": entity_id, "reason": reason},
        )
        self.error_code = "ERR_INTEGRITY_002"


class CheckinStepError(AppException):
    """
    Raised when one sub-step of a draft-invoice approval fails.

    The step name tells the caller exactly where the workflow stalled; the
    surrounding transaction is still rolled back as a whole.
    """

    STEPS = ("item_replacement", "totals_recalculation", "status_transition", "booking_lock")

    def __init__(self, step: str, message: str, cause: AppException = None):
        details = {"step": step}
        if cause is not None:
            details["cause"] = {"error_code": cause.error_code, "message": cause.message}
        super().__init__(
            message=message,
            error_code="ERR_CHECKIN_STEP",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )
        self.step = step


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error_kind": "business_rule" if exc.status_code < 500 else "unexpected",
            "error_code": exc.error_code,
            "message": exc.message,
            "details": jsonable_encoder(exc.details)
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error_kind": "business_rule" if exc.status_code < 500 else "unexpected",
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        },
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error_kind": "business_rule",
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": jsonable_encoder(exc.errors())
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception(
        "Unhandled exception on %s %s: %s",
        request.method,
        request.url.path,
        type(exc).__name__,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error_kind": "unexpected",
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
