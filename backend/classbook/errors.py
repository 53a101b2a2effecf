"""
Exception handlers rendering every failure into the response envelope.
"""

import logging
from typing import Any, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.exceptions import DomainException, ServiceException
from .monitoring.prometheus_metrics import errors_total
from .schemas.base import Envelope

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal server error"


def _code_from_status(status_code: int) -> str:
    mapping = {
        400: "VALIDATION_ERROR",
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        429: "RATE_LIMITED",
        500: "INTERNAL_ERROR",
    }
    return mapping.get(status_code, "ERROR")


def _parse_detail(detail: Any) -> Tuple[Optional[str], Optional[str], Optional[Any]]:
    if isinstance(detail, dict):
        code = detail.get("code") if isinstance(detail.get("code"), str) else None
        message = detail.get("message") or detail.get("detail")
        return (message if isinstance(message, str) else None), code, detail.get("details")
    if isinstance(detail, str):
        return detail, None, None
    if detail is None:
        return None, None, None
    return str(detail), None, None


def _missing_field_message(errors: list) -> str:
    for error in errors:
        if error.get("type") == "missing":
            return f"Missing required field: {error['loc'][-1]}"
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "body"
    return f"Invalid field {field}: {first.get('msg', 'invalid value')}"


def envelope_response(
    status_code: int,
    body: Envelope,
    headers: Optional[dict] = None,
) -> JSONResponse:
    return JSONResponse(jsonable_encoder(body.render()), status_code=status_code, headers=headers)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
        errors_total.labels(service="api", operation=request.url.path, error_type=exc.code).inc()
        if exc.status_code >= 500:
            logger.error(
                "Request failed",
                extra={"path": request.url.path, "code": exc.code, "error": exc.message},
                exc_info=exc,
            )
        message = exc.message
        if type(exc) is ServiceException:
            message = INTERNAL_ERROR_MESSAGE
        return envelope_response(
            exc.status_code,
            Envelope.fail(message, exc.code, exc.details),
            headers=exc.headers(),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        message, code, details = _parse_detail(exc.detail)
        return envelope_response(
            exc.status_code,
            Envelope.fail(message or "Request failed", code or _code_from_status(exc.status_code), details),
            headers=exc.headers,
        )

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message, code, details = _parse_detail(exc.detail)
        return envelope_response(
            exc.status_code,
            Envelope.fail(message or "Request failed", code or _code_from_status(exc.status_code), details),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = jsonable_encoder(exc.errors())
        return envelope_response(
            400,
            Envelope.fail(_missing_field_message(errors), "VALIDATION_ERROR", {"errors": errors}),
        )

    @app.exception_handler(ValidationError)
    async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
        errors = jsonable_encoder(exc.errors())
        return envelope_response(
            400,
            Envelope.fail("Validation failed", "VALIDATION_ERROR", {"errors": errors}),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        errors_total.labels(service="api", operation=request.url.path, error_type=type(exc).__name__).inc()
        logger.error("Unhandled error", extra={"path": request.url.path}, exc_info=exc)
        return envelope_response(500, Envelope.fail(INTERNAL_ERROR_MESSAGE, "INTERNAL_ERROR"))
