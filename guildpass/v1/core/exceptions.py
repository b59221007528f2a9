import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from guildpass.config.logging import add_request_context, get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class GuildPassException(Exception):
    """Base exception for the GuildPass service.

    Subclasses fix the HTTP status; ``details`` is echoed in the error
    envelope so callers can see which field or id was at fault.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal server error"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(GuildPassException):
    """Input that can never be accepted: bad scope, bad limits."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Validation failed"


class BadRequestError(GuildPassException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Bad request"


class UnauthorizedError(GuildPassException):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Unauthorized"


class NotFoundError(GuildPassException):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class ServiceUnavailableError(GuildPassException):
    """A feature switched off by configuration, e.g. replay without a token."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Service unavailable"


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


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _error_json(
    request_id: str,
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=create_error_response(status_code, message, details, request_id),
        headers=headers,
    )


async def guildpass_exception_handler(
    request: Request, exc: GuildPassException
) -> JSONResponse:
    request_id = _request_id(request)
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Request rejected",
        exception=type(exc).__name__,
        error=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        path=request.url.path,
        request_id=request_id,
    )
    return _error_json(request_id, exc.status_code, exc.message, exc.details)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Framework errors (unknown routes, bad methods) in the same envelope."""
    request_id = _request_id(request)
    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        request_id=request_id,
    )
    return _error_json(
        request_id,
        exc.status_code,
        str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = _request_id(request)
    logger.error(
        "Unhandled exception",
        exception=type(exc).__name__,
        error=str(exc),
        path=request.url.path,
        request_id=request_id,
        exc_info=True,
    )
    return _error_json(
        request_id, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error"
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a correlation id to the log context and echoes it on the response.

    A caller-supplied ``X-Request-ID`` is kept so clients can correlate
    their own logs with the server's.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        add_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
