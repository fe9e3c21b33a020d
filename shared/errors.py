"""
Domain error taxonomy shared by all services.

Services raise these instead of HTTPException so the same code paths can be
driven from the HTTP layer, background jobs and tests. `register_exception_handlers`
turns them into JSON responses on each FastAPI app.
"""
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class AppError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "APP_ERROR"

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "VALIDATION_ERROR"


class AuthError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "AUTH_REQUIRED"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "CONFLICT"


class CouponError(AppError):
    NOT_FOUND = "NotFound"
    NOT_YET_VALID = "NotYetValid"
    EXPIRED = "Expired"
    USAGE_LIMIT_REACHED = "UsageLimitReached"
    MINIMUM_NOT_MET = "MinimumNotMet"

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message or f"Coupon rejected: {reason}", error_code=reason)
        self.reason = reason
        if reason == self.NOT_FOUND:
            self.status_code = status.HTTP_404_NOT_FOUND


class GatewayError(AppError):
    """Transport or protocol failure talking to the bank, or a declined provisioning."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "GATEWAY_ERROR"


class TamperError(AppError):
    """Callback token or amount mismatch. Never rendered to the browser."""

    error_code = "TAMPERED"


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "errorCode": exc.error_code},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed bodies are a 400 for the storefront, not FastAPI's default 422
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors()), "errorCode": ValidationError.error_code},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
