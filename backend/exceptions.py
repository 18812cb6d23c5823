"""
Custom exceptions and error handling
"""
from typing import Optional, Dict, Any
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from logging_config import get_logger

logger = get_logger(__name__)


class ParkAlgoException(Exception):
    """Base exception for application"""
    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        error_code: str = "unexpected_failure"
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.error_code = error_code
        super().__init__(message)


class ExternalAPIException(ParkAlgoException):
    """External API call failed"""
    def __init__(self, service: str, message: str, status_code: int = 503):
        super().__init__(
            f"External service error ({service}): {message}",
            status_code,
            {"service": service},
            "external_service_error"
        )


class DataNotFoundException(ParkAlgoException):
    """Requested data not found"""
    def __init__(self, resource: str, identifier: str):
        super().__init__(
            f"{resource} not found: {identifier}",
            404,
            {"resource": resource, "identifier": identifier},
            f"{resource.lower().replace(' ', '_')}_not_found"
        )


class ValidationException(ParkAlgoException):
    """Input validation failed"""
    def __init__(self, field: str, message: str, error_code: str = "invalid_input"):
        super().__init__(
            f"Validation error for {field}: {message}",
            400,
            {"field": field},
            error_code
        )


class RateLimitException(ParkAlgoException):
    """Rate limit exceeded"""
    def __init__(self, limit: int, window: int):
        super().__init__(
            f"Rate limit exceeded: {limit} requests per {window} seconds",
            429,
            {"limit": limit, "window": window},
            "rate_limited"
        )


class AuthenticationException(ParkAlgoException):
    """No valid user session"""
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, 401, error_code="unauthorized")


class AuthorizationException(ParkAlgoException):
    """Authenticated user lacks the required role or plan"""
    def __init__(self, message: str = "Forbidden", error_code: str = "forbidden"):
        super().__init__(message, 403, error_code=error_code)


class ConflictException(ParkAlgoException):
    """Resource is in a state that prevents the operation"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, 409, details, "conflict")


class PaymentException(ParkAlgoException):
    """Payment processor rejected the request"""
    def __init__(self, message: str, status_code: int = 400, error_code: str = "payment/failed"):
        super().__init__(message, status_code, error_code=error_code)


async def exception_handler(request: Request, exc: ParkAlgoException) -> JSONResponse:
    """Handle custom exceptions"""

    logger.error(
        f"Exception occurred: {exc.message}",
        extra={
            "status_code": exc.status_code,
            "details": exc.details,
            "path": request.url.path,
            "method": request.method
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.message,
                "type": exc.__class__.__name__,
                "code": exc.error_code,
                "details": exc.details
            }
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body or query failed schema validation"""
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "message": "Validation failed",
                "type": "RequestValidationError",
                "code": "invalid_request",
                "details": errors
            }
        }
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Routing errors such as unknown paths and wrong methods"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.detail if isinstance(exc.detail, str) else "Request failed",
                "type": "HTTPException",
                "code": "not_found" if exc.status_code == 404 else "http_error",
                "details": {"path": request.url.path}
            }
        },
        headers=getattr(exc, "headers", None)
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions"""

    logger.exception(
        "Unexpected exception occurred",
        extra={
            "path": request.url.path,
            "method": request.method
        }
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "message": "An unexpected error occurred",
                "type": "InternalServerError",
                "code": "internal_error"
            }
        }
    )
