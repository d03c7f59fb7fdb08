"""
Error taxonomy and exception handlers for the laudos API
"""
import logging
import os
import traceback
from typing import Optional, Dict, Any
from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import sentry_sdk

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception"""
    def __init__(self, message: str, status_code: int = 500, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationException(AppException):
    """Missing or malformed input (conclusion, exam id, mime type...)"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=422, details=details)


class NotFoundException(AppException):
    """Resource not found exception"""
    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=404, details=details)


class UnauthorizedException(AppException):
    """Unauthorized access exception"""
    def __init__(self, message: str = "Unauthorized", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=401, details=details)


class ForbiddenException(AppException):
    """Actor is not allowed to perform the operation on this resource"""
    def __init__(self, message: str = "Forbidden", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=403, details=details)


class ConflictException(AppException):
    """Resource conflict exception"""
    def __init__(self, message: str = "Resource conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=409, details=details)


class CertificateException(AppException):
    """Certificate missing, expired, inactive or unusable for signing"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=422, details=details)


class StorageException(AppException):
    """Both primary and legacy stores failed"""
    def __init__(self, message: str = "Falha ao armazenar documento", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=502, details=details)


class RenderException(AppException):
    """PDF could not be produced"""
    def __init__(self, message: str = "Falha ao gerar PDF do laudo", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=500, details=details)


def is_development() -> bool:
    return os.getenv("ENVIRONMENT", "development") == "development"


def log_error(error: Exception, request: Optional[Request] = None, context: Optional[Dict[str, Any]] = None):
    """
    Log error with context and send to Sentry if configured
    """
    error_context = {
        "error_type": type(error).__name__,
        "error_message": str(error),
    }

    if request:
        error_context.update({
            "path": request.url.path,
            "method": request.method,
            "client": request.client.host if request.client else None,
        })

    if context:
        error_context.update(context)

    logger.error(f"Error occurred: {error_context}")

    try:
        sentry_sdk.capture_exception(error, contexts={"custom": error_context})
    except Exception:
        logger.debug("Sentry capture skipped", exc_info=True)


async def app_exception_handler(request: Request, exc: AppException):
    """Handle application exceptions"""
    if exc.status_code >= 500:
        log_error(exc, request)
    else:
        logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.message}")

    error = {
        "message": exc.message,
        "type": type(exc).__name__,
    }
    # Details may carry storage keys or internal ids, except for input errors
    if is_development() or isinstance(exc, ValidationException):
        error["details"] = exc.details

    return JSONResponse(status_code=exc.status_code, content={"error": error})


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation exceptions with better formatting"""
    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {
                "message": "Validation error",
                "type": "ValidationException",
                "details": {
                    "errors": errors
                }
            }
        }
    )


async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions"""
    log_error(exc, request, {"traceback": traceback.format_exc()})

    # Don't expose internal errors in production
    development = is_development()

    error_detail = {
        "message": str(exc) if development else "Internal server error",
        "type": type(exc).__name__,
    }

    if development:
        error_detail["traceback"] = traceback.format_exc().split("\n")

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": error_detail
        }
    )
