from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("payguard.request")

_HTTP_STATUS_CODES = {401: "INVALID_TOKEN", 403: "FORBIDDEN", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class ValidationError(ApiError):
    """Malformed or missing input, rejected before any scoring happens."""

    def __init__(self, message: str, *, code: str = "VALIDATION_ERROR"):
        super().__init__(status_code=422, code=code, message=message)


class NotFoundError(ApiError):
    def __init__(self, message: str, *, code: str = "NOT_FOUND"):
        super().__init__(status_code=404, code=code, message=message)


class StateConflictError(ApiError):
    """Action attempted against a record that is not in the required state."""

    def __init__(self, message: str, *, code: str = "STATE_CONFLICT", current_status: str | None = None):
        super().__init__(status_code=409, code=code, message=message)
        self.current_status = current_status


class ExpiredError(ApiError):
    def __init__(self, message: str = "Verification code has expired.", *, code: str = "CODE_EXPIRED"):
        super().__init__(status_code=410, code=code, message=message)


class ChainIntegrityError(ApiError):
    """Audit chain verification mismatch. Read-only: the chain is never repaired."""

    def __init__(self, message: str, *, broken_index: int | None = None, details: dict[str, Any] | None = None):
        super().__init__(status_code=409, code="AUDIT_CHAIN_BROKEN", message=message)
        self.broken_index = broken_index
        self.details = details or {}


class DependencyError(ApiError):
    """An external collaborator (verdict service, geolocation) was unreachable."""

    def __init__(self, message: str, *, dependency: str):
        super().__init__(status_code=503, code="DEPENDENCY_UNAVAILABLE", message=message)
        self.dependency = dependency


class AccountFrozenError(ApiError):
    def __init__(self, message: str):
        super().__init__(status_code=403, code="ACCOUNT_FROZEN", message=message)


class ForbiddenError(ApiError):
    def __init__(self, message: str = "Insufficient permissions."):
        super().__init__(status_code=403, code="FORBIDDEN", message=message)


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)


def install_error_handlers(app: FastAPI) -> None:
    """Render every failure, expected or not, in the same error envelope."""

    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError) -> JSONResponse:
        return error_response(request, status_code=exc.status_code, code=exc.code, message=exc.message)

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
        return error_response(
            request,
            status_code=exc.status_code,
            code=_HTTP_STATUS_CODES.get(exc.status_code, "HTTP_ERROR"),
            message=str(exc.detail) if exc.detail else "Request failed.",
        )

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(request, status_code=422, code="VALIDATION_ERROR", message=str(exc.errors()))

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "unhandled_error",
            extra={
                "request_id": get_request_id(request),
                "path": request.url.path,
                "method": request.method,
            },
        )
        return error_response(request, status_code=500, code="INTERNAL_ERROR", message="Unexpected server error.")
