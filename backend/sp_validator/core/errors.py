"""
Error taxonomy and FastAPI exception handlers.

Request-level errors are rejected synchronously and rendered as
``{"error": ..., "type": ...}``; nothing that fails here is ever enqueued.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from sp_validator.core.redaction import redact_string
from sp_validator.middleware.request_id import get_request_id

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    error_type: str = "validation_error"

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[List[Any]] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "type": self.error_type}
        if self.details:
            body["details"] = self.details
        return body


class AuthenticationRequired(ServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = "authentication_error"


class ValidationNotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    error_type = "not_found"

    def __init__(self, validation_id: str):
        super().__init__("Validation not found")
        self.validation_id = validation_id


class ValidationInProgress(ServiceError):
    """Distinct 'not ready yet' signal for report queries on non-terminal records."""

    status_code = status.HTTP_425_TOO_EARLY
    error_type = "in_progress"

    def __init__(self, validation_id: str, current_status: str):
        super().__init__("Validation still in progress")
        self.validation_id = validation_id
        self.current_status = current_status

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["status"] = self.current_status
        return body


class RateLimitExceeded(ServiceError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_type = "rate_limited"

    def __init__(self, retry_after: int):
        super().__init__("Too many requests from this IP, please try again later.")
        self.retry_after = retry_after


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "%s %s failed with %d: %s (request %s)",
        request.method,
        request.url.path,
        exc.status_code,
        exc.message,
        get_request_id(request),
    )
    headers = None
    if isinstance(exc, AuthenticationRequired):
        headers = {"WWW-Authenticate": "ApiKey"}
    elif isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = error.get("msg", "invalid value")
        details.append(f"{location}: {message}" if location else message)
    logger.warning("Rejected invalid request data for %s %s (%d errors)", request.method, request.url.path, len(details))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request data", "type": "validation_error", "details": details},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled error on %s %s (request %s): %s",
        request.method,
        request.url.path,
        get_request_id(request),
        redact_string(str(exc)),
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error", "type": "internal_error", "request_id": get_request_id(request)},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
