"""Problem Details (RFC 9457) errors for the HTTP surface.

Policy rejections (quota, conflicts found during admission) are returned as
values, not raised. The exceptions here cover malformed requests, missing
rows, invalid state transitions and store failures.

Each subclass declares its HTTP status, title, problem type slug and an
optional machine readable ``code``; the body is built once in the base
class.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

PROBLEM_BASE_URI = "https://gearbook.dev/problems/"


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def _iso(value: datetime) -> str:
    return value.isoformat() + "Z"


class ProblemDetailsException(HTTPException):
    """
    Base class for errors rendered as ``application/problem+json`` style bodies.

    ``problem_details`` holds the full body: ``type``, ``title``, ``status``,
    ``detail`` and any extension members such as ``code`` or ``errors``.
    """

    status: ClassVar[int] = 500
    title: ClassVar[str] = "Internal Server Error"
    slug: ClassVar[str] = "internal-server-error"
    code: ClassVar[Optional[str]] = None
    retryable: ClassVar[Optional[bool]] = None

    def __init__(
        self,
        detail: Optional[str] = None,
        extensions: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        body: Dict[str, Any] = {
            "type": PROBLEM_BASE_URI + self.slug,
            "title": self.title,
            "status": self.status,
        }
        if detail:
            body["detail"] = detail
        if self.code:
            body["code"] = self.code
        if self.retryable is not None:
            body["retryable"] = self.retryable
        body.update(extensions or {})

        self.problem_details = body
        super().__init__(status_code=self.status, detail=body, headers=headers)


class ValidationError(ProblemDetailsException):
    """The request is malformed or carries values the service cannot accept."""

    status = 400
    title = "Validation Error"
    slug = "validation-error"

    def __init__(
        self,
        detail: str = "The request data failed validation",
        errors: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(detail, {"errors": errors} if errors else None)


class InvalidIntervalError(ValidationError):
    """Start of an interval is not before its end."""

    code = "INVALID_INTERVAL"

    def __init__(self, start: datetime, end: datetime):
        super().__init__(
            detail="Start time must be before end time",
            errors={"start": start.isoformat(), "end": end.isoformat()},
        )


class ForbiddenError(ProblemDetailsException):
    """The caller is identified but may not act on this reservation, transfer or entry."""

    status = 403
    title = "Forbidden"
    slug = "forbidden"
    code = "NOT_PERMITTED"
    retryable = False

    def __init__(self, detail: str, actor_user_id: Optional[int] = None):
        super().__init__(detail, {"actor_user_id": actor_user_id} if actor_user_id is not None else None)


class NotFoundError(ProblemDetailsException):
    status = 404
    title = "Resource Not Found"
    slug = "resource-not-found"

    def __init__(
        self,
        resource_type: str = "resource",
        resource_id: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        extensions: Dict[str, Any] = {"resource_type": resource_type}
        if resource_id:
            extensions["resource_id"] = resource_id
        if detail is None:
            target = f"{resource_type} '{resource_id}'" if resource_id else resource_type
            detail = f"The requested {target} could not be found"
        super().__init__(detail, extensions)


class ConflictError(ProblemDetailsException):
    """The request clashes with the stored state of a reservation, transfer or class."""

    status = 409
    title = "Resource Conflict"
    slug = "resource-conflict"

    def __init__(
        self,
        detail: str = "The request conflicts with the current state of the resource",
        conflicting_resource: Optional[Dict[str, Any]] = None,
        **extensions: Any,
    ):
        if conflicting_resource:
            extensions["conflicting_resource"] = conflicting_resource
        super().__init__(detail, extensions)


class TransferAlreadyPendingError(ConflictError):
    code = "ALREADY_PENDING"
    retryable = False

    def __init__(self, reservation_id: str, transfer_id: str):
        super().__init__(
            f"Reservation {reservation_id} already has a pending transfer",
            {"reservation_id": reservation_id, "transfer_id": transfer_id},
        )


class InvalidTransitionError(ConflictError):
    """Requested state change is not allowed from the current state."""

    code = "INVALID_TRANSITION"
    retryable = False

    def __init__(self, entity: str, entity_id: str, current: Any, requested: Any):
        current = getattr(current, "value", current)
        requested = getattr(requested, "value", requested)
        super().__init__(
            f"Cannot move {entity} {entity_id} from {current} to {requested}",
            current_status=current,
            requested_status=requested,
        )


class AlreadyReturnedError(ConflictError):
    code = "ALREADY_RETURNED"

    def __init__(self, reservation_id: str, returned_at: datetime):
        super().__init__(
            f"Reservation {reservation_id} was already returned",
            returned_at=_iso(returned_at),
        )


class ReturnCorrectionClosedError(ConflictError):
    """The window for undoing a return has passed."""

    code = "RETURN_CORRECTION_CLOSED"
    retryable = False

    def __init__(self, reservation_id: str, deadline: datetime):
        super().__init__(
            f"Return of reservation {reservation_id} can no longer be corrected",
            deadline=_iso(deadline),
        )


class TransferExpiredError(ProblemDetailsException):
    """Transfer request was answered after it expired."""

    status = 410
    title = "Transfer Expired"
    slug = "transfer-expired"
    code = "TRANSFER_EXPIRED"

    def __init__(self, transfer_id: str, expired_at: datetime):
        super().__init__(
            f"Transfer {transfer_id} expired at {_iso(expired_at)}",
            {"transfer_id": transfer_id, "expired_at": _iso(expired_at)},
        )


async def problem_details_handler(request: Request, exc: ProblemDetailsException) -> JSONResponse:
    body = dict(exc.problem_details)
    body.setdefault("instance", str(request.url.path))
    return JSONResponse(status_code=exc.status_code, content=body, headers=exc.headers)


def _unexpected_failure(request: Request, exc: Exception, status: int, title: str, slug: str, detail: str, **extra) -> JSONResponse:
    error_id = str(uuid.uuid4())
    logger.error(
        title,
        extra={"error_id": error_id, "path": request.url.path, "error": str(exc)},
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status,
        content={
            "type": PROBLEM_BASE_URI + slug,
            "title": title,
            "status": status,
            "detail": detail,
            "instance": str(request.url),
            "error_id": error_id,
            "timestamp": _utc_timestamp(),
            **extra,
        },
    )


async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Render store failures as 503 so callers can tell them from policy rejections."""
    return _unexpected_failure(
        request,
        exc,
        503,
        "Store Unavailable",
        "store-unavailable",
        "The reservation store could not complete the operation",
        code="STORE_ERROR",
        retryable=True,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler: anything unexpected becomes a 500 with a correlatable error id."""
    return _unexpected_failure(
        request,
        exc,
        500,
        "Internal Server Error",
        "internal-server-error",
        "An unexpected error occurred while processing the request",
    )
