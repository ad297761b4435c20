import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from portal_jobs.config.logging import get_logger

logger = get_logger(__name__)


# Job outcome taxonomy. These travel from handlers and governors into the
# retry policy; none of them is ever surfaced to a submitter.


class JobError(Exception):
    """Base class for errors that describe a job outcome."""

    category = "error"

    def __init__(self, message: str = "", details: dict[str, Any] | None = None):
        self.message = message or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class TransientFailure(JobError):
    """Network/timeout style failure; the job is retried with backoff."""

    category = "transient"


class PermanentFailure(JobError):
    """The input can never succeed; the job goes straight to DEAD."""

    category = "permanent"


class AdmissionDeferred(JobError):
    """Execution postponed without consuming an attempt."""

    category = "deferred"

    def __init__(
        self,
        message: str = "",
        delay_s: float | None = None,
        run_after: datetime | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.delay_s = delay_s
        self.run_after = run_after


class StaleClaimRecovered(JobError):
    """A claim whose holder stopped heartbeating was reset by the reaper."""

    category = "stale_claim"


# Request-level exceptions


class PortalJobsException(Exception):
    """Base exception for Portal Jobs application."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(PortalJobsException):
    """Raised when input validation fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY, details)


class InvalidJobType(ValidationError):
    """Raised at submission time when no handler is registered for the job type."""

    def __init__(self, job_type: str, details: dict[str, Any] | None = None):
        self.job_type = job_type
        super().__init__(
            f"No handler registered for job type: {job_type}",
            {"job_type": job_type, **(details or {})},
        )


class JobNotFoundError(PortalJobsException):
    """Raised when a job is not found."""

    def __init__(self, job_id: int, details: dict[str, Any] | None = None):
        super().__init__(
            f"Job not found: {job_id}",
            status.HTTP_404_NOT_FOUND,
            {"job_id": job_id, **(details or {})},
        )


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": status_code,
            "details": details or {},
        },
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    """Create standardized success response envelope."""
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


async def portal_jobs_exception_handler(
    request: Request, exc: PortalJobsException
) -> JSONResponse:
    """Handle Portal Jobs specific exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Application exception",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=exc.message,
            details=exc.details,
            request_id=request_id,
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_code=exc.status_code,
            message=str(exc.detail),
            request_id=request_id,
        ),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        request_id=request_id,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            message="Internal server error",
            request_id=request_id,
        ),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Middleware to add request context and correlation IDs."""

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        from portal_jobs.config.logging import add_request_context

        add_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        return response
