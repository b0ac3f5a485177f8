"""
Application errors and the FastAPI handlers that render them.

Every error response has the same envelope:
    {"error": {"code", "message", "request_id"}, "detail": message}
and echoes x-request-id.
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from fintrack.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class AuthError(AppError):
    """Credential check failed; the session stays signed out."""
    code = "invalid_credentials"
    status_code = 401


class AccessExpiredError(AuthError):
    """The account exists but its access window has elapsed."""
    code = "access_expired"


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ProfileNotFoundError(NotFoundError):
    """The remote store explicitly reports that no profile exists for the user."""
    code = "profile_not_found"


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


class StoreUnavailableError(AppError):
    """Transient failure talking to the profile store; callers may retry."""
    code = "store_unavailable"
    status_code = 503


class AdminAuditWriteError(AppError):
    code = "admin_audit_failed"
    status_code = 500


logger = logging.getLogger("fintrack")


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or fallback or str(uuid4())


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


def _error_response(status_code: int, code: str, message: str, request_id: str) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=_error_payload(code, message, request_id))
    response.headers["x-request-id"] = request_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _error_response(exc.status_code, exc.code, exc.message, rid)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _error_response(exc.status_code, code, exc.detail or "HTTP error", rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    return _error_response(500, "internal_error", "Unexpected error", rid)
