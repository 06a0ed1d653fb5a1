# pledgr/errors.py
"""Domain errors and their HTTP rendering.

Services raise these; the handlers registered by ``install_error_handlers``
turn them into ``{"detail": ..., "code": ...}`` responses.
"""
from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class PledgrError(Exception):
    code = "error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(PledgrError):
    code = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid input"


class AuthenticationError(PledgrError):
    code = "authentication_failed"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid email or password"


class PaymentError(PledgrError):
    code = "payment_failed"
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_message = "Payment could not be captured"


class PaymentDeclinedError(PaymentError):
    """The provider answered and refused the payment."""
    code = "payment_declined"
    default_message = "Payment was declined"


class AuthorizationError(PledgrError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not allowed"


class NotFoundError(PledgrError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class ConflictError(PledgrError):
    code = "conflict"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Already exists"


class InvalidStateError(PledgrError):
    code = "invalid_state"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Operation not allowed in the current state"


class RateLimitedError(PledgrError):
    code = "rate_limited"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many attempts, please try again later."


class StorageError(PledgrError):
    code = "storage_error"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Database error"


class StorageTimeoutError(StorageError):
    code = "timeout"
    default_message = "Database timed out"


def error_body(code: str, message: str) -> dict:
    return {"detail": message, "code": code}


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(PledgrError)
    async def _pledgr_error(request: Request, exc: PledgrError):
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
        return JSONResponse(error_body(exc.code, exc.message), status_code=exc.status_code, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        # first failing field is enough for a human-readable message
        errors = exc.errors()
        message = "Invalid input"
        if errors:
            loc = ".".join(str(p) for p in errors[0].get("loc", ()) if p != "body")
            message = f"{loc}: {errors[0].get('msg')}" if loc else errors[0].get("msg", message)
        return JSONResponse(
            error_body(ValidationError.code, message),
            status_code=ValidationError.status_code,
        )

    @app.exception_handler(SQLAlchemyError)
    async def _storage_error(request: Request, exc: SQLAlchemyError):
        logger.exception("Unhandled database error on %s %s", request.method, request.url.path)
        return JSONResponse(
            error_body(StorageError.code, StorageError.default_message),
            status_code=StorageError.status_code,
        )
