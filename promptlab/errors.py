import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import metrics
from .store import StoreError

logger = logging.getLogger(__name__)


class AppError(Exception):
    code = "internal_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        self.headers = headers

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}


class ValidationError(AppError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError):
    code = "not_found"
    status_code = 404


class ForbiddenError(AppError):
    code = "forbidden"
    status_code = 403


class RateLimitedError(AppError):
    code = "rate_limited"
    status_code = 429


class InternalError(AppError):
    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, retryable: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.retryable = retryable
        if retryable:
            self.status_code = 503


async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        metrics.error_count.inc()
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=exc.headers)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    error = ValidationError("Invalid request data", details={"errors": jsonable_errors(exc)})
    return JSONResponse(status_code=error.status_code, content=error.to_body())


async def store_error_handler(request: Request, exc: StoreError):
    logger.error("store failure on %s %s: %s", request.method, request.url.path, exc)
    return await app_error_handler(request, InternalError("Storage temporarily unavailable, please retry", retryable=True))


async def unhandled_error_handler(request: Request, exc: Exception):
    metrics.error_count.inc()
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    error = InternalError("An unexpected error occurred")
    return JSONResponse(status_code=error.status_code, content=error.to_body())


def jsonable_errors(exc: RequestValidationError):
    return [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


def install_error_handlers(app: FastAPI):
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
