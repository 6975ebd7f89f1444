"""
Error taxonomy shared by the REST routes and the real-time protocol.

Every error carries the HTTP status it maps to; the WebSocket session uses
only the message text and reports it as a ``*_error`` event.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(AppError):
    """Missing or malformed input. Never persisted."""
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(AppError):
    """Unknown user, contact or peer."""
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(AppError):
    """Duplicate contact or other unique field."""
    status_code = status.HTTP_409_CONFLICT


class AuthError(AppError):
    """Bad, expired or missing token."""
    status_code = status.HTTP_401_UNAUTHORIZED


class StoreError(AppError):
    """Backing-store failure. The message is always generic."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(_: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("AppError: %s", exc.message)
        else:
            logger.warning("AppError: %s", exc.message)
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthError) else None
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": jsonable_errors(exc)},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may hold the raw exception object, which JSONResponse cannot encode
    return [
        {key: value for key, value in error.items() if key != "ctx"}
        for error in exc.errors()
    ]
