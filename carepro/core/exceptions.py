"""
Custom exception classes and error handling utilities.
"""
from decimal import Decimal
from typing import Optional, Dict, Any, List
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
import structlog

logger = structlog.get_logger(__name__)


class CareProException(Exception):
    """Base exception class for the CarePro billing service."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class AuthenticationError(CareProException):
    """Authentication related errors."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED
        )


class ValidationError(CareProException):
    """Input validation errors. Every violation is listed in details["errors"]."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        errors = errors or [message]
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"errors": errors}
        )
        self.errors = errors


class NotFoundError(CareProException):
    """Resource not found errors."""

    def __init__(self, resource: str, identifier: str = ""):
        message = f"{resource} not found"
        if identifier:
            message += f": {identifier}"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource}
        )


class ConflictError(CareProException):
    """A state guard rejected the operation."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class UnauthorizedActorError(ConflictError):
    """The caller is not a party allowed to perform the action."""

    def __init__(self, message: str = "You are not allowed to perform this action"):
        super().__init__(message)
        self.status_code = status.HTTP_403_FORBIDDEN


class AmountMismatchError(CareProException):
    """Paid amount does not match the expected total."""

    def __init__(self, transaction_reference: str, expected: Decimal, paid: Decimal):
        super().__init__(
            message="Payment amount does not match the expected total",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"transaction_reference": transaction_reference}
        )
        self.expected = expected
        self.paid = paid


class GatewayError(CareProException):
    """Payment gateway failure."""

    def __init__(self, message: str, retryable: bool = False, operation: str = ""):
        super().__init__(
            message=f"Payment gateway error: {message}",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"retryable": retryable, "operation": operation}
        )
        self.retryable = retryable
        self.operation = operation


class GatewayTimeoutError(GatewayError):
    """Gateway did not answer within the configured timeout; the outcome is unknown."""

    def __init__(self, operation: str = ""):
        super().__init__("request timed out", retryable=True, operation=operation)
        self.status_code = status.HTTP_504_GATEWAY_TIMEOUT


class PersistenceConflictError(CareProException):
    """Optimistic concurrency check failed; the caller should reload and retry."""

    def __init__(self, resource: str, identifier: str = ""):
        message = f"{resource} was modified concurrently"
        if identifier:
            message += f": {identifier}"
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details={"resource": resource, "retry": True}
        )


class PaymentError(CareProException):
    """Payment captured but settlement could not be finished."""

    def __init__(self, message: str, transaction_reference: Optional[str] = None):
        details = {"transaction_reference": transaction_reference} if transaction_reference else {}
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )


# Exception handlers
async def carepro_exception_handler(request: Request, exc: CareProException) -> JSONResponse:
    """Global exception handler for CarePro exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.message,
                "type": exc.__class__.__name__,
                "details": exc.details,
                "status_code": exc.status_code
            }
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render HTTPException in the same envelope as service errors."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.detail,
                "type": "HTTPException",
                "status_code": exc.status_code
            }
        },
        headers=getattr(exc, "headers", None)
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unexpected exceptions."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "message": "Internal server error",
                "type": "InternalServerError",
                "status_code": status.HTTP_500_INTERNAL_SERVER_ERROR
            }
        }
    )
