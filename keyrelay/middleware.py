"""Shared HTTP middleware — correlation IDs, request logging, error formatting."""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from keyrelay.errors import KeyRelayError, StorageError, error_body

logger = logging.getLogger(__name__)


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Attach a unique X-Correlation-Id to every request/response."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get("x-correlation-id") or uuid.uuid4().hex
        request.state.correlation_id = correlation_id
        response = await call_next(request)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration. Never logs bodies."""

    def __init__(self, app, service: str, instance_header: str = "X-Service-Instance") -> None:
        super().__init__(app)
        self.service = service
        self.instance_header = instance_header

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.monotonic()
        response = await call_next(request)
        duration_ms = (time.monotonic() - start) * 1000
        logger.info(
            "[%s] %s %s -> %d (%.0fms)",
            self.service,
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        response.headers.setdefault(self.instance_header, self.service)
        return response


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    msg = str(first.get("msg", "Invalid request body"))
    # pydantic prefixes custom validator messages with "Value error, "
    msg = msg.removeprefix("Value error, ")
    loc = [str(p) for p in first.get("loc", ()) if p not in ("body", "query")]
    if first.get("type") == "missing" and loc:
        return f"{loc[-1]} is required"
    if first.get("type") in ("model_attributes_type", "dict_type", "json_invalid") and not loc:
        return "Request body must be a JSON object"
    return msg


def install_error_handlers(app: FastAPI) -> None:
    """Translate KeyRelay errors and request validation into {"error", "code"} bodies."""

    @app.exception_handler(RequestValidationError)
    async def _validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            {"error": _validation_message(exc), "code": "validation_error"}, status_code=400
        )

    @app.exception_handler(StorageError)
    async def _storage(request: Request, exc: StorageError) -> JSONResponse:
        return JSONResponse({"error": "Internal server error", "code": exc.code}, status_code=500)

    @app.exception_handler(KeyRelayError)
    async def _keyrelay(request: Request, exc: KeyRelayError) -> JSONResponse:
        return JSONResponse(error_body(exc), status_code=exc.status_code)
