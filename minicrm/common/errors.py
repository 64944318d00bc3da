"""Error taxonomy shared by the synchronous and asynchronous paths.

Every error carries the HTTP status it maps to, so a failure raised deep in a
downstream call can be re-signalled unchanged by whoever sits at the edge.
"""

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ServiceError(Exception):
    """Base failure with a status code and a caller-facing message."""

    status_code: int | None = 500

    def __init__(self, message: str, status_code: int | None = None, detail: Any = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail


class ValidationError(ServiceError):
    """Malformed or incomplete input. Never retried."""

    status_code = 400


class AuthenticationError(ServiceError):
    status_code = 401


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    """Uniqueness violation surfaced to the synchronous caller."""

    status_code = 409


class TransientServiceError(ServiceError):
    """Network failure, timeout or 5xx; `status_code` is None when nothing came back."""

    status_code = None


class SideEffectError(ServiceError):
    """External channel (SMTP, ...) unreachable or rejected the message."""

    status_code = 502


_STATUS_ERRORS: dict[int, type[ServiceError]] = {
    400: ValidationError,
    401: AuthenticationError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
}


def error_for_status(status_code: int, message: str, detail: Any = None) -> ServiceError:
    """Build the typed error for one downstream HTTP status."""

    if 500 <= status_code < 600:
        return TransientServiceError(message, status_code=status_code, detail=detail)
    error_cls = _STATUS_ERRORS.get(status_code, ServiceError)
    return error_cls(message, status_code=status_code, detail=detail)


async def service_error_handler(_: Request, exc: ServiceError) -> JSONResponse:
    """FastAPI exception handler: status-preserving passthrough, 500 when unknown."""

    return JSONResponse(status_code=exc.status_code or 500, content={"detail": exc.message})
