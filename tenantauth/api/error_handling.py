from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from tenantauth.api.schemas import ErrorBody
from tenantauth.logging import get_logger
from tenantauth.service.errors import ErrorCode, ServiceError
from tenantauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

# Error kind reported for plain HTTP errors raised by the framework
_STATUS_TO_ERROR = {
    400: "invalid_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "invalid_request",
    409: "conflict",
    413: "invalid_request",
    415: "invalid_request",
    501: "not_supported",
    503: "tenant_db_missing",
}

_STATUS_TO_CODE = {
    401: ErrorCode.BEARER_REQUIRED,
    409: ErrorCode.CONFLICT,
    413: ErrorCode.BODY_TOO_LARGE,
    415: ErrorCode.UNSUPPORTED_MEDIA_TYPE,
    501: ErrorCode.NOT_SUPPORTED,
    503: ErrorCode.TENANT_DB_MISSING,
}


def _error_for_status(status_code: int) -> str:
    if status_code >= 500 and status_code not in _STATUS_TO_ERROR:
        return "internal"
    return _STATUS_TO_ERROR.get(status_code, "invalid_request")


def _code_for_status(status_code: int) -> int:
    if status_code >= 500 and status_code not in _STATUS_TO_CODE:
        return ErrorCode.INTERNAL
    return _STATUS_TO_CODE.get(status_code, ErrorCode.MALFORMED_REQUEST)


def error_response(
    status_code: int,
    error: str,
    description: str,
    code: int,
    *,
    headers: Optional[dict] = None,
) -> JSONResponse:
    """Build the ``{error, error_description, code}`` body every failure uses."""
    body = ErrorBody(error=error, error_description=description, code=int(code))
    merged = dict(NO_STORE_HEADERS)
    if headers:
        merged.update(headers)
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=merged)


def service_error_response(exc: ServiceError) -> JSONResponse:
    headers = None
    if exc.status_code == 401 and exc.error == "invalid_client":
        headers = {"WWW-Authenticate": 'Basic realm="token"'}
    elif exc.status_code == 401 and exc.error == "unauthorized":
        headers = {"WWW-Authenticate": "Bearer"}
    return error_response(exc.status_code, exc.error, exc.message, exc.code, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers mapping domain, storage and framework errors to the error body."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(409, "conflict", exc.message, ErrorCode.CONFLICT)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error=exc.error,
            error_code=exc.code,
            message=exc.message,
        )
        return service_error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "invalid request")
        description = f"{location}: {message}" if location else message
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return error_response(400, "invalid_request", description, ErrorCode.MALFORMED_REQUEST)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return error_response(
            exc.status_code,
            _error_for_status(exc.status_code),
            message,
            _code_for_status(exc.status_code),
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(500, "internal", "internal server error", ErrorCode.INTERNAL)
