"""
Exception Handler Module
Provides the settlement error taxonomy and the FastAPI handlers that map it
onto HTTP responses
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class SettlementError(Exception):
    """Base class for errors raised by settlement services"""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(SettlementError):
    """Malformed input or a business precondition on the input itself"""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticityError(SettlementError):
    """Webhook signature missing or not matching the shared secret"""
    status_code = 400
    error_code = "INVALID_SIGNATURE"


class AuthenticationError(SettlementError):
    """Missing, expired or malformed bearer token"""
    status_code = 401
    error_code = "UNAUTHENTICATED"


class AuthorizationError(SettlementError):
    """Caller is authenticated but not allowed to act on the resource"""
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(SettlementError):
    """Referenced entity does not exist or is not visible to the caller"""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(SettlementError):
    """Entity is not in a state that permits the operation"""
    status_code = 409
    error_code = "CONFLICT"


class InsufficientBalanceError(SettlementError):
    """Creator balance does not cover the requested amount"""
    status_code = 400
    error_code = "INSUFFICIENT_BALANCE"


class PaymentRequiredError(SettlementError):
    """Content cannot be unlocked before the order is paid"""
    status_code = 402
    error_code = "PAYMENT_REQUIRED"


class GatewayError(SettlementError):
    """Payment gateway rejected or failed the call"""
    status_code = 502
    error_code = "GATEWAY_ERROR"


class GatewayTimeoutError(SettlementError):
    """Payment gateway or ledger store did not answer in time"""
    status_code = 504
    error_code = "GATEWAY_TIMEOUT"


class InternalInconsistencyError(SettlementError):
    """A money invariant was found broken; never auto-corrected"""
    status_code = 500
    error_code = "INTERNAL_INCONSISTENCY"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        logger.critical(f"🚨 INTERNAL_INCONSISTENCY: {message} context={self.details}")


def register_exception_handlers(app: FastAPI) -> None:
    """Map the settlement taxonomy and unexpected failures onto JSON responses"""

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError):
        if exc.status_code >= 500:
            logger.error(f"❌ {exc.error_code}: {request.method} {request.url.path} - {exc.message}")
        else:
            logger.info(f"⚠️ {exc.error_code}: {request.method} {request.url.path} - {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(part) for part in error.get("loc", ())), "message": error.get("msg")}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": ValidationError.error_code,
                "message": "Invalid request",
                "details": {"errors": errors},
            },
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(
            f"❌ UNHANDLED_ERROR: {request.method} {request.url.path} - {type(exc).__name__}: {exc}",
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "INTERNAL_ERROR", "message": "Internal server error"},
        )
