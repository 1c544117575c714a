"""Error taxonomy and FastAPI exception handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from meterchat.core.logging import get_request_id


GENERIC_RETRY_MESSAGE = "We could not process your request right now. Please try again later."


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details


class AuthenticationError(AppError):
    code = "unauthorized"
    status_code = 401


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class QuotaExceededError(AppError):
    """Raised when the user's plan quota is exhausted.

    Carries the numbers the client needs to render an upgrade prompt.
    """
    code = "quota_exceeded"
    status_code = 429

    def __init__(self, used: int, limit: int, plan: str, *, request_id: Optional[str] = None):
        message = (
            f"You have reached the limit of {limit} messages on the {plan} plan. "
            "Upgrade your plan to keep chatting."
        )
        super().__init__(
            message,
            request_id=request_id,
            details={"used": used, "limit": limit, "plan": plan},
        )
        self.used = used
        self.limit = limit
        self.plan = plan


class UpstreamModelError(AppError):
    """The language-model API failed; detail is logged, never returned."""
    code = "upstream_error"
    status_code = 502

    def __init__(self, message: str = GENERIC_RETRY_MESSAGE, *, cause: Optional[str] = None):
        super().__init__(message)
        self.cause = cause


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    error: Dict[str, Any] = {"code": code, "message": message, "request_id": request_id}
    if details:
        error["details"] = details
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger("meterchat")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("meterchat")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    payload = _error_payload("validation_error", "Invalid request body", rid, {"errors": exc.errors()})
    response = JSONResponse(status_code=400, content=jsonable_errors(payload))
    response.headers["x-request-id"] = rid
    return response


def jsonable_errors(payload: dict) -> dict:
    # pydantic error entries can hold exception instances under "ctx"
    errors = payload["error"].get("details", {}).get("errors", [])
    for entry in errors:
        ctx = entry.get("ctx")
        if ctx:
            entry["ctx"] = {key: str(value) for key, value in ctx.items()}
    return payload


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("meterchat")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
