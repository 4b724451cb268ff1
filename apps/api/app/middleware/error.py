import logging
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
}


def get_error_code(status_code: int) -> str:
    """Map HTTP status codes to error codes"""
    return ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _validation_details(exc: RequestValidationError) -> List[Dict[str, Any]]:
    return [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]


async def error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global error handler that returns consistent error envelope"""
    headers = None
    details = None

    if isinstance(exc, StarletteHTTPException):
        # Covers fastapi.HTTPException too
        status_code = exc.status_code
        message = exc.detail
        headers = getattr(exc, "headers", None)
    elif isinstance(exc, RequestValidationError):
        status_code = 422
        message = "Request validation failed"
        details = _validation_details(exc)
    else:
        status_code = 500
        message = "An unexpected error occurred"
        logger.exception(f"Unexpected error on {request.method} {request.url.path}: {exc}")

    error: Dict[str, Any] = {"code": get_error_code(status_code), "message": message}
    if details is not None:
        error["details"] = details

    return JSONResponse(status_code=status_code, content={"error": error}, headers=headers)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, error_handler)
    app.add_exception_handler(RequestValidationError, error_handler)
    app.add_exception_handler(Exception, error_handler)
