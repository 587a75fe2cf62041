"""Exception handlers that render errors as the API's error envelope."""

import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from rostersync.core.errors import (
    AccessDeniedError,
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    RateLimitError,
    RegistryError,
    ValidationError,
)
from rostersync.schemas.responses import ErrorResponse

logger = logging.getLogger(__name__)

# Checked in order; first match wins
STATUS_BY_ERROR: list[tuple[type[RegistryError], int]] = [
    (ValidationError, 400),
    (AuthenticationError, 401),
    (AccessDeniedError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (RateLimitError, 429),
    (ConfigurationError, 500),
]


def status_for(exc: RegistryError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 502


def _envelope(message: str, errors: list[dict] | None = None) -> dict:
    return ErrorResponse(message=message, errors=errors or []).model_dump()


async def registry_error_handler(request: Request, exc: RegistryError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    errors = exc.errors if isinstance(exc, ValidationError) else []
    return JSONResponse(status_code=status_code, content=_envelope(exc.message, errors))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for error in exc.errors():
        # Drop the "body"/"query"/"path" prefix from the location
        location = [str(part) for part in error.get("loc", ())[1:]]
        errors.append({"field": ".".join(location) or "request", "message": error.get("msg", "invalid")})
    return JSONResponse(status_code=400, content=_envelope("Invalid request", errors))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RegistryError, registry_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
