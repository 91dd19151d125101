"""
Exception handlers mapping the application exception taxonomy to JSON
responses of the shape ``{"error": {"code", "message", "details", "type"}}``.
"""

import time

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from mealfund.core.exceptions import AuthenticityFailure, BaseAppException, ErrorCode
from mealfund.core.logging import get_logger
from mealfund.core.middleware import get_request_id

logger = get_logger(__name__)


def _error_body(request: Request, code: str, message: str, details: dict, error_type: str) -> dict:
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "type": error_type,
            "timestamp": int(time.time()),
        }
    }
    request_id = get_request_id(request)
    if request_id:
        body["request_id"] = request_id
    return body


async def handle_application_exception(request: Request, exception: BaseAppException) -> JSONResponse:
    """Handle custom application exceptions"""
    logger.warning(
        f"Application exception: {exception.error_code.value} - {exception.message}",
        extra={
            "error_code": exception.error_code.value,
            "path": request.url.path,
            "method": request.method,
        }
    )

    # A forged callback learns nothing beyond the status code
    if isinstance(exception, AuthenticityFailure):
        return JSONResponse(status_code=exception.status_code, content={"error": {"code": exception.error_code.value}})

    return JSONResponse(
        status_code=exception.status_code,
        content=_error_body(
            request,
            exception.error_code.value,
            exception.message,
            exception.details,
            exception.__class__.__name__,
        ),
    )


async def handle_request_validation_error(request: Request, exception: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors raised while parsing the request"""
    field_errors = {}
    for error in exception.errors():
        field_path = '.'.join(str(x) for x in error['loc'])
        field_errors[field_path] = {
            "message": error['msg'],
            "type": error['type']
        }

    logger.warning(
        f"Validation error: {len(field_errors)} field(s) failed validation",
        extra={"path": request.url.path, "method": request.method}
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(
            request,
            ErrorCode.VALIDATION_ERROR.value,
            "Request validation failed",
            {"field_errors": field_errors, "error_count": len(field_errors)},
            "ValidationError",
        ),
    )


async def handle_database_error(request: Request, exception: SQLAlchemyError) -> JSONResponse:
    """Handle database exceptions"""
    logger.error(
        f"Database error: {type(exception).__name__}",
        exc_info=exception,
        extra={"path": request.url.path, "method": request.method}
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(
            request,
            ErrorCode.DATABASE_ERROR.value,
            "A database error occurred",
            {},
            "DatabaseError",
        ),
    )


async def handle_unexpected_exception(request: Request, exception: Exception) -> JSONResponse:
    """Handle unexpected exceptions"""
    logger.error(
        f"Unhandled exception: {exception}",
        exc_info=exception,
        extra={"path": request.url.path, "method": request.method}
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(
            request,
            ErrorCode.INTERNAL_ERROR.value,
            "An unexpected error occurred",
            {},
            "InternalError",
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BaseAppException, handle_application_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(SQLAlchemyError, handle_database_error)
    app.add_exception_handler(Exception, handle_unexpected_exception)


__all__ = ["register_exception_handlers"]
