"""
Domain error taxonomy and its HTTP rendering.

Services raise the exceptions below; the handlers installed by
``install_error_handlers`` translate them into JSON responses of the form
``{"detail": ..., "code": ...}``.  Nothing here retries: every error is
surfaced to the caller as-is.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"


class BadRequestError(AppError):
    status_code = 400
    code = "BAD_REQUEST"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


async def _integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    # Unique / FK violations that slipped past the service-level checks,
    # e.g. two concurrent requests racing on the same email or like row.
    logger.warning("Integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(
        status_code=409,
        content={"detail": "Resource conflicts with existing data", "code": ConflictError.code},
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(IntegrityError, _integrity_error_handler)
