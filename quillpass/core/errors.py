"""Error taxonomy and normalized FastAPI handlers."""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.requests import Request

from quillpass.core.logging import get_request_id


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


# -- user-correctable (4xx) --------------------------------------------------

class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class InvalidPlanError(ValidationError):
    code = "invalid_plan"


class PaymentNotCompletedError(ValidationError):
    code = "payment_not_completed"


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class AuthenticationError(AppError):
    code = "unauthenticated"
    status_code = 401


class AuthorizationError(AppError):
    """Caller is identified but not allowed to do this (drives upsell/login prompts)."""
    code = "forbidden"
    status_code = 403


class PermissionError(AuthorizationError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class QuotaExceededError(AuthorizationError):
    code = "quota_exceeded"
    status_code = 403


class NoActiveSubscriptionError(AuthorizationError):
    code = "no_active_subscription"
    status_code = 400


# -- payment gateway ---------------------------------------------------------

class ExternalGatewayError(AppError):
    code = "gateway_error"
    status_code = 502


class WebhookSignatureError(ExternalGatewayError):
    code = "invalid_signature"
    status_code = 400


class GatewayUnavailableError(ExternalGatewayError):
    """Transient gateway failure on a synchronous call; the caller should retry."""
    code = "gateway_unavailable"
    status_code = 503


class BillingDisabledError(ExternalGatewayError):
    code = "billing_disabled"
    status_code = 503


# -- local storage -----------------------------------------------------------

class PersistenceError(AppError):
    code = "persistence_error"
    status_code = 500


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if details:
        error["details"] = details
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger("quillpass")
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
    logger = logging.getLogger("quillpass")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    errors = [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]
    payload = _error_payload("validation_error", "Invalid request", rid, {"errors": errors})
    logging.getLogger("quillpass").warning(
        "request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 422}
    )
    response = JSONResponse(status_code=422, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("quillpass")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
