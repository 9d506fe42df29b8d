from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from watchlist.api.schemas import Envelope, ErrorBody
from watchlist.logging import get_logger
from watchlist.service.errors import ServiceError
from watchlist.storage.errors import ConstraintViolation

logger = get_logger(__name__)

GENERIC_500_MESSAGE = "internal server error"

_CODE_BY_STATUS = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
}


def _error_code_for_status(status_code: int) -> str:
    return _CODE_BY_STATUS.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    envelope = Envelope(status="error", error=body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def _log_rejection(request: Request, status_code: int, event: str, **context: Any) -> None:
    log = logger.error if status_code >= 500 else logger.warning
    log(event, path=request.url.path, method=request.method, status_code=status_code, **context)


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as the ``{status, error, request_id}`` envelope.

    Expected failures keep their message. Anything else becomes a bare 500
    whose text never leaves the server log.
    """

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = [
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            fields=[".".join(d["loc"]) for d in details],
        )
        return _error_response(400, "invalid request", details, code="validation_error")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_rejection(
            request,
            exc.status_code,
            "service_error",
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.detail or None, exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_rejection(request, 409, "constraint_violation", detail=exc.detail)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        error = exc.detail.get("error") if isinstance(exc.detail, dict) else None
        if isinstance(error, dict):
            # raised by routes._http_error with the envelope already shaped
            _log_rejection(request, exc.status_code, "http_error", error_code=error.get("code"))
            return _error_response(
                exc.status_code,
                error.get("message", "http error"),
                error.get("details"),
                error.get("code"),
            )
        # framework-raised (route miss, wrong method); the detail is a fixed phrase
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, GENERIC_500_MESSAGE, code="server_error")
