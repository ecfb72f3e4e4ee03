"""ServiceError and the handlers that render every failure as ``{error, message, details}``."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from milestone_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler

__all__ = ["ServiceError", "register_exception_handlers"]

# Framework-raised HTTP errors mapped onto the service's error kinds.
_HTTP_ERROR_KINDS: dict[int, tuple[str, str]] = {
    404: ("NOT_FOUND", "Resource not found"),
    405: ("METHOD_NOT_ALLOWED", "Method not allowed"),
}


class ServiceError(Exception):
    """
    Failure with a stable kind that callers can branch on.

    Attributes:
        error: Stable error kind, e.g. "INVALID_STATE" or "QUORUM_NOT_MET"
        message: Human-readable reason
        status_code: HTTP status used when the error crosses the API boundary
        details: Structured context such as job_id, milestone_index or the tally
    """

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details: dict[str, Any] = details if details is not None else {}

    def __repr__(self) -> str:
        return f"ServiceError({self.error!r}, {self.message!r}, {self.status_code})"

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error, "message": self.message, "details": self.details}


def _error_response(
    status_code: int, error: str, message: str, details: dict[str, Any] | None = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "details": details or {}},
    )


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    extra: dict[str, Any] = {
        "error_code": exc.error,
        "status_code": exc.status_code,
        "path": request.url.path,
    }
    if "job_id" in exc.details:
        extra["job_id"] = exc.details["job_id"]
    get_logger(__name__).warning("Service error", extra=extra)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    get_logger(__name__).exception("Unhandled exception", extra={"path": request.url.path})
    return _error_response(500, "internal_error", "An unexpected error occurred")


async def http_exception_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Render router-level 404/405 and any other HTTPException in the service shape."""
    error, message = _HTTP_ERROR_KINDS.get(exc.status_code, ("HTTP_ERROR", str(exc.detail)))
    return _error_response(exc.status_code, error, message)


async def validation_exception_handler(
    _request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Path and query parameters that fail to parse (e.g. a non-integer index) are INVALID."""
    messages = [str(error.get("msg", "")) for error in exc.errors()]
    return _error_response(
        400, "INVALID", "Request parameters failed validation", {"errors": messages}
    )


def register_exception_handlers(app: FastAPI) -> None:
    handlers: list[tuple[type[Exception], Any]] = [
        (ServiceError, service_error_handler),
        (StarletteHTTPException, http_exception_handler),
        (RequestValidationError, validation_exception_handler),
        (Exception, unhandled_exception_handler),
    ]
    for exc_class, handler in handlers:
        app.add_exception_handler(exc_class, cast("ExceptionHandler", handler))
