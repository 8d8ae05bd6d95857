"""Custom exceptions following RFC 9457 Problem Details for HTTP APIs."""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .clock import utcnow

PROBLEM_BASE_URI = "https://trips.example.com/problems"


class ProblemDetailsException(HTTPException):
    """
    Base exception class following RFC 9457 Problem Details for HTTP APIs.

    https://tools.ietf.org/rfc/rfc9457.txt
    """

    def __init__(
        self,
        status_code: int,
        title: str,
        detail: Optional[str] = None,
        type_uri: Optional[str] = None,
        instance: Optional[str] = None,
        extensions: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize Problem Details exception.

        Args:
            status_code: HTTP status code
            title: Short, human-readable summary of the problem type
            detail: Human-readable explanation specific to this occurrence
            type_uri: URI reference that identifies the problem type
            instance: URI reference that identifies the specific occurrence
            extensions: Additional problem-specific information
            headers: HTTP headers to include in response
        """
        self.status_code = status_code
        self.title = title
        self.detail = detail
        self.type_uri = type_uri or f"about:blank#{status_code}"
        self.instance = instance
        self.extensions = extensions or {}

        self.problem_details = {
            "type": self.type_uri,
            "title": self.title,
            "status": self.status_code,
        }

        if self.detail:
            self.problem_details["detail"] = self.detail

        if self.instance:
            self.problem_details["instance"] = self.instance

        self.problem_details.update(self.extensions)

        super().__init__(
            status_code=status_code,
            detail=self.problem_details,
            headers=headers
        )

    @property
    def code(self) -> Optional[str]:
        """Machine-readable error code, when the problem type defines one."""
        return self.problem_details.get("code")


class ValidationError(ProblemDetailsException):
    """Exception for request validation errors."""

    def __init__(
        self,
        detail: str = "The request data failed validation",
        errors: Optional[Dict[str, Any]] = None,
        instance: Optional[str] = None,
    ):
        extensions = {}
        if errors:
            extensions["errors"] = errors

        super().__init__(
            status_code=400,
            title="Validation Error",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/validation-error",
            instance=instance,
            extensions=extensions,
        )


class AuthenticationError(ProblemDetailsException):
    """Exception for authentication errors."""

    def __init__(
        self,
        detail: str = "Authentication credentials are required",
        instance: Optional[str] = None,
    ):
        super().__init__(
            status_code=401,
            title="Authentication Required",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/authentication-required",
            instance=instance,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(ProblemDetailsException):
    """Exception for authorization errors."""

    def __init__(
        self,
        detail: str = "Insufficient permissions to access this resource",
        required_permissions: Optional[list] = None,
        instance: Optional[str] = None,
    ):
        extensions = {}
        if required_permissions:
            extensions["required_permissions"] = required_permissions

        super().__init__(
            status_code=403,
            title="Access Forbidden",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/access-forbidden",
            instance=instance,
            extensions=extensions,
        )


class NotFoundError(ProblemDetailsException):
    """Exception for resource not found errors."""

    def __init__(
        self,
        resource_type: str = "resource",
        resource_id: Optional[str] = None,
        detail: Optional[str] = None,
        instance: Optional[str] = None,
    ):
        if not detail:
            detail = f"The requested {resource_type}"
            if resource_id:
                detail += f" with ID '{resource_id}'"
            detail += " could not be found"

        extensions = {
            "resource_type": resource_type,
        }
        if resource_id:
            extensions["resource_id"] = resource_id

        super().__init__(
            status_code=404,
            title="Resource Not Found",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/resource-not-found",
            instance=instance,
            extensions=extensions,
        )


class ConflictError(ProblemDetailsException):
    """Exception for resource conflict errors."""

    def __init__(
        self,
        detail: str = "The request conflicts with the current state of the resource",
        conflicting_resource: Optional[Dict[str, Any]] = None,
        instance: Optional[str] = None,
    ):
        extensions = {}
        if conflicting_resource:
            extensions["conflicting_resource"] = conflicting_resource

        super().__init__(
            status_code=409,
            title="Resource Conflict",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/resource-conflict",
            instance=instance,
            extensions=extensions,
        )


class GoneError(ProblemDetailsException):
    """Exception for resources that existed but are no longer usable."""

    def __init__(self, title: str, detail: str, slug: str):
        super().__init__(
            status_code=410,
            title=title,
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/{slug}",
        )


class GatewayError(ProblemDetailsException):
    """Exception for failures reported by the payment gateway."""

    def __init__(self, title: str, detail: str, slug: str, upstream_status: Optional[int] = None):
        extensions = {}
        if upstream_status is not None:
            extensions["upstream_status"] = upstream_status
        super().__init__(
            status_code=502,
            title=title,
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/{slug}",
            extensions=extensions,
        )
        self.upstream_status = upstream_status


class InternalServerError(ProblemDetailsException):
    """Exception for internal server errors."""

    def __init__(
        self,
        detail: str = "An unexpected error occurred while processing the request",
        error_id: Optional[str] = None,
        instance: Optional[str] = None,
    ):
        if not error_id:
            error_id = str(uuid.uuid4())

        extensions = {
            "error_id": error_id,
            "timestamp": utcnow().isoformat() + "Z",
        }

        super().__init__(
            status_code=500,
            title="Internal Server Error",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/internal-server-error",
            instance=instance,
            extensions=extensions,
        )


# Availability ledger

class CapacityExceededError(ConflictError):
    """Exception when a hold or capacity change does not fit the occurrence."""

    def __init__(self, occurrence_id: str, requested: int, remaining: int, detail: Optional[str] = None):
        super().__init__(
            detail=detail or (
                f"Occurrence {occurrence_id} has insufficient capacity. "
                f"Requested: {requested}, Remaining: {remaining}"
            ),
            conflicting_resource={
                "occurrence_id": occurrence_id,
                "requested": requested,
                "remaining": remaining,
            }
        )
        self.problem_details.update({
            "code": "CAPACITY_EXCEEDED",
            "retryable": False
        })


class HoldExpiredError(GoneError):
    """Exception when a hold lapsed before it could be used."""

    def __init__(self, hold_id: str, expired_at: datetime):
        super().__init__(
            title="Hold Expired",
            detail=f"Hold {hold_id} expired at {expired_at.isoformat()}Z",
            slug="hold-expired",
        )
        self.problem_details.update({
            "code": "HOLD_EXPIRED",
            "retryable": False,
            "hold_id": hold_id,
            "expired_at": expired_at.isoformat() + "Z"
        })


class CapacityBelowConfirmedError(ConflictError):
    """Exception when capacity would drop below already confirmed seats."""

    def __init__(self, occurrence_id: str, requested_capacity: int, confirmed: int):
        super().__init__(
            detail=(
                f"Capacity of occurrence {occurrence_id} cannot be set to {requested_capacity}: "
                f"{confirmed} seats are already confirmed"
            ),
            conflicting_resource={
                "occurrence_id": occurrence_id,
                "requested_capacity": requested_capacity,
                "confirmed": confirmed,
            }
        )
        self.problem_details.update({
            "code": "CAPACITY_BELOW_CONFIRMED",
            "retryable": False
        })


class LedgerInvariantError(ProblemDetailsException):
    """Raised when a ledger operation would break its own bookkeeping."""

    def __init__(self, detail: str, **context: Any):
        super().__init__(
            status_code=500,
            title="Ledger Invariant Violation",
            detail=detail,
            type_uri=f"{PROBLEM_BASE_URI}/ledger-invariant-violation",
            extensions={"code": "LEDGER_INVARIANT_VIOLATION", "retryable": False, **context},
        )


# Trip series

class EmptyDateSetError(ValidationError):
    """Exception when a series is created without any dates."""

    def __init__(self):
        super().__init__(detail="A trip series needs at least one date range")
        self.problem_details.update({"code": "EMPTY_DATE_SET", "retryable": False})


class NonSharedFieldInBulkEditError(ValidationError):
    """Exception when a bulk edit touches per-occurrence fields."""

    def __init__(self, fields: list[str]):
        super().__init__(
            detail=f"Fields {sorted(fields)} are per-occurrence and cannot be bulk edited",
            errors={"fields": sorted(fields)},
        )
        self.problem_details.update({"code": "NON_SHARED_FIELD_IN_BULK_EDIT", "retryable": False})


# Checkout

class InsufficientAvailabilityError(ConflictError):
    """Exception when any line item of a checkout cannot be held."""

    def __init__(self, occurrence_id: str, requested: int, remaining: int):
        super().__init__(
            detail=(
                f"Not enough seats on occurrence {occurrence_id}. "
                f"Requested: {requested}, Remaining: {remaining}"
            ),
            conflicting_resource={
                "occurrence_id": occurrence_id,
                "requested": requested,
                "remaining": remaining,
            }
        )
        self.problem_details.update({
            "code": "INSUFFICIENT_AVAILABILITY",
            "retryable": True
        })


class OccurrenceNotBookableError(ConflictError):
    """Exception when an occurrence is retired, hidden or already started."""

    def __init__(self, occurrence_id: str, reason: str):
        super().__init__(
            detail=f"Occurrence {occurrence_id} cannot be booked: {reason}",
            conflicting_resource={"occurrence_id": occurrence_id, "reason": reason}
        )
        self.problem_details.update({"code": "OCCURRENCE_NOT_BOOKABLE", "retryable": False})


class BookingLimitExceededError(ConflictError):
    """Exception when a buyer already has the maximum number of upcoming bookings."""

    def __init__(self, buyer_id: str, limit: int):
        super().__init__(
            detail=f"Buyer {buyer_id} already has {limit} upcoming bookings"
        )
        self.problem_details.update({
            "code": "BOOKING_LIMIT_EXCEEDED",
            "retryable": False,
            "limit": limit
        })


class SessionExpiredError(GoneError):
    """Exception when a checkout session passed its deadline."""

    def __init__(self, session_id: str):
        super().__init__(
            title="Checkout Session Expired",
            detail=f"Checkout session {session_id} has expired; no payment was taken",
            slug="session-expired",
        )
        self.problem_details.update({
            "code": "SESSION_EXPIRED",
            "retryable": False,
            "session_id": session_id
        })


class GatewayOrderCreationFailedError(GatewayError):
    """Exception when the gateway refuses to create a payment order."""

    def __init__(self, detail: str, upstream_status: Optional[int] = None):
        super().__init__(
            title="Payment Order Creation Failed",
            detail=detail,
            slug="gateway-order-creation-failed",
            upstream_status=upstream_status,
        )
        self.problem_details.update({"code": "GATEWAY_ORDER_CREATION_FAILED", "retryable": True})


class GatewayCaptureFailedError(GatewayError):
    """Exception when the gateway does not complete a capture."""

    def __init__(self, detail: str, upstream_status: Optional[int] = None):
        super().__init__(
            title="Payment Capture Failed",
            detail=detail,
            slug="gateway-capture-failed",
            upstream_status=upstream_status,
        )
        self.problem_details.update({"code": "GATEWAY_CAPTURE_FAILED", "retryable": False})


class GatewayAuthenticationError(GatewayError):
    """Exception when the gateway rejects our client credentials."""

    def __init__(self, detail: str = "Payment gateway rejected the client credentials",
                 upstream_status: Optional[int] = None):
        super().__init__(
            title="Payment Gateway Authentication Failed",
            detail=detail,
            slug="gateway-authentication-failed",
            upstream_status=upstream_status,
        )
        self.problem_details.update({"code": "GATEWAY_AUTHENTICATION_FAILED", "retryable": True})


# Bookings

class InvalidStateTransitionError(ConflictError):
    """Exception when a booking is moved along an edge the lifecycle does not allow."""

    def __init__(self, booking_id: str, current: str, target: str):
        super().__init__(
            detail=f"Booking {booking_id} cannot move from {current} to {target}",
            conflicting_resource={"booking_id": booking_id, "status": current}
        )
        self.problem_details.update({
            "code": "INVALID_STATE_TRANSITION",
            "retryable": False,
            "target_status": target
        })


class CancellationWindowClosedError(ConflictError):
    """Exception when a refund is requested too close to the trip start."""

    def __init__(self, booking_id: str, days_limit: int):
        super().__init__(
            detail=(
                f"Booking {booking_id} can no longer be cancelled; cancellations close "
                f"{days_limit} days before the trip starts"
            )
        )
        self.problem_details.update({
            "code": "CANCELLATION_WINDOW_CLOSED",
            "retryable": False,
            "cancellation_days_limit": days_limit
        })


async def problem_details_handler(request: Request, exc: ProblemDetailsException) -> JSONResponse:
    """
    Exception handler for Problem Details exceptions.

    Args:
        request: FastAPI request object
        exc: Problem Details exception

    Returns:
        JSONResponse: Problem Details formatted response
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.problem_details,
        headers=exc.headers,
        media_type="application/problem+json",
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report request body validation failures as Problem Details with one violation per field."""
    violations = [
        {
            "path": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg", "Invalid value"),
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={
            "type": f"{PROBLEM_BASE_URI}/validation-error",
            "title": "Validation Error",
            "status": 422,
            "detail": "The request data failed validation",
            "code": "VALIDATION_ERROR",
            "retryable": False,
            "violations": violations,
        },
        media_type="application/problem+json",
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Generic exception handler that converts unhandled exceptions to Problem Details format.

    Args:
        request: FastAPI request object
        exc: Unhandled exception

    Returns:
        JSONResponse: Problem Details formatted response
    """
    error_id = str(uuid.uuid4())

    problem_details = {
        "type": f"{PROBLEM_BASE_URI}/internal-server-error",
        "title": "Internal Server Error",
        "status": 500,
        "detail": "An unexpected error occurred while processing the request",
        "instance": str(request.url),
        "error_id": error_id,
        "timestamp": utcnow().isoformat() + "Z",
    }

    return JSONResponse(
        status_code=500,
        content=problem_details,
        media_type="application/problem+json",
    )
