"""Request correlation, timing and error serialization for the checkout API.

Every response carries ``X-Request-ID``. Checkout errors are serialized with
``CheckoutError.to_dict()``; anything unexpected becomes a 500 exposing only
a generated error id.
"""
from __future__ import annotations

import logging
import math
import time
from typing import Callable, Dict

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ..exceptions import (
    AuthenticationRequiredError,
    CheckoutError,
    CheckoutValidationError,
    InternalCheckoutError,
    PaymentGatewayError,
    RateLimitExceededError,
)
from ..logging_config import LogContext, generate_error_id, generate_request_id

logger = logging.getLogger("laos_checkout.api")

# Retry hint for gateway errors when the breaker has no recovery estimate
DEFAULT_GATEWAY_RETRY_SECONDS = 30


def get_request_id(request: Request) -> str:
    """Extract request ID from request state or headers."""
    if hasattr(request.state, "request_id"):
        return request.state.request_id
    return request.headers.get("X-Request-ID", "unknown")


def format_validation_errors(errors: list) -> list:
    """Flatten pydantic errors to ``{field, message, type}``."""
    return [
        {
            "field": ".".join(str(loc) for loc in error.get("loc", ()) if loc != "body"),
            "message": error.get("msg", ""),
            "type": error.get("type", ""),
        }
        for error in errors
    ]


def _error_headers(request: Request, exc: CheckoutError) -> Dict[str, str]:
    headers = {"X-Request-ID": get_request_id(request)}

    if isinstance(exc, RateLimitExceededError):
        headers.update({
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(int(time.time() * 1000) + exc.retry_after * 1000),
        })
        if exc.limit is not None:
            headers["X-RateLimit-Limit"] = str(exc.limit)

    elif isinstance(exc, AuthenticationRequiredError):
        headers["WWW-Authenticate"] = "Bearer"

    elif isinstance(exc, PaymentGatewayError):
        retry_after = DEFAULT_GATEWAY_RETRY_SECONDS
        service = getattr(request.app.state, "service", None)
        if service is not None:
            recovery = service.breaker.get_state_info().get("recovery_in_seconds")
            if recovery is not None:
                retry_after = max(1, math.ceil(recovery))
        headers["Retry-After"] = str(retry_after)

    return headers


def checkout_error_response(request: Request, exc: CheckoutError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(
            "Checkout error %s: %s",
            exc.error_code,
            exc.message,
            extra={"path": request.url.path, "error_code": exc.error_code},
        )
    else:
        logger.warning(
            "Checkout error %s: %s",
            exc.error_code,
            exc.message,
            extra={"path": request.url.path, "error_code": exc.error_code},
        )
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict(),
        headers=_error_headers(request, exc),
    )


def internal_error_response(request: Request, exc: Exception) -> JSONResponse:
    error_id = generate_error_id()
    logger.error(
        "Unexpected error %s: %s",
        error_id,
        exc,
        exc_info=(type(exc), exc, exc.__traceback__),
        extra={"error_id": error_id, "path": request.url.path},
    )
    error = InternalCheckoutError(error_id)
    return JSONResponse(
        status_code=error.http_status,
        content=error.to_dict(),
        headers={"X-Request-ID": get_request_id(request)},
    )


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """Converts exceptions that escape the routes into JSON responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except CheckoutError as exc:
            return checkout_error_response(request, exc)
        except Exception as exc:
            return internal_error_response(request, exc)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request id, binds it to the logging context and logs timing.

    Accepts an incoming ``X-Request-ID`` for distributed tracing.
    """

    def __init__(self, app, exclude_paths: list[str] | None = None):
        super().__init__(app)
        self.exclude_paths = set(exclude_paths or ["/health"])

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        request.state.request_id = request_id

        with LogContext(correlation_id=request_id, request_id=request_id):
            start = time.perf_counter()
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start) * 1000

            response.headers["X-Request-ID"] = request_id
            if request.url.path not in self.exclude_paths:
                logger.info(
                    "%s %s -> %d",
                    request.method,
                    request.url.path,
                    response.status_code,
                    extra={
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": response.status_code,
                        "duration_ms": round(duration_ms, 2),
                    },
                )
        return response


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application."""

    app.add_middleware(ExceptionHandlerMiddleware)

    @app.exception_handler(CheckoutError)
    async def checkout_exception_handler(request: Request, exc: CheckoutError) -> JSONResponse:
        return checkout_error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        error = CheckoutValidationError(errors=format_validation_errors(exc.errors()))
        return checkout_error_response(request, error)
