#!/usr/bin/env python3
"""
Tiris Backend
API Middleware

This module provides middleware components for the API Gateway, handling
cross-cutting concerns like request logging, security headers and the
translation of core errors into HTTP responses. Request counts and
latencies are recorded as Prometheus metrics.
"""

import asyncio
import time
import traceback

from fastapi import Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp

from config import Config
from common.logger import get_logger
from common.constants import METRICS_OTHER_LABEL
from common.metrics import MetricsCollector
from common.exceptions import (
    TirisError, RateLimitError, ValidationError, error_payload,
    KIND_VALIDATION, KIND_UNAUTHENTICATED, KIND_FORBIDDEN, KIND_NOT_FOUND, KIND_CONFLICT,
    KIND_INSUFFICIENT_BALANCE, KIND_INVALID_STATE, KIND_RATE_LIMITED, KIND_UNAVAILABLE,
    KIND_CANCELLED, KIND_INTERNAL
)

# Initialize logger
logger = get_logger(__name__)

# Client closed request
HTTP_499_CLIENT_CLOSED_REQUEST = 499

STATUS_BY_KIND = {
    KIND_VALIDATION: status.HTTP_400_BAD_REQUEST,
    KIND_UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    KIND_FORBIDDEN: status.HTTP_403_FORBIDDEN,
    KIND_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    KIND_CONFLICT: status.HTTP_409_CONFLICT,
    KIND_INSUFFICIENT_BALANCE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    KIND_INVALID_STATE: status.HTTP_400_BAD_REQUEST,
    KIND_RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    KIND_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    KIND_CANCELLED: HTTP_499_CLIENT_CLOSED_REQUEST,
    KIND_INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

EXPOSED_HEADERS = [
    "X-Request-ID", "X-Response-Time",
    "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After",
]


def status_for(exc: BaseException) -> int:
    """HTTP status code for an exception."""
    if isinstance(exc, TirisError):
        return STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if isinstance(exc, asyncio.CancelledError):
        return HTTP_499_CLIENT_CLOSED_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def rate_limit_headers(exc: RateLimitError) -> dict:
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    if exc.limit is not None:
        headers["X-RateLimit-Limit"] = str(exc.limit)
        headers["X-RateLimit-Remaining"] = "0"
    if exc.reset_time is not None:
        headers["X-RateLimit-Reset"] = str(int(exc.reset_time.timestamp()))
    return headers


def error_response(request: Request, exc: BaseException) -> JSONResponse:
    """Render ``exc`` as a JSON error response."""
    content = error_payload(exc)
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        content["request_id"] = request_id

    headers = rate_limit_headers(exc) if isinstance(exc, RateLimitError) else None
    return JSONResponse(status_code=status_for(exc), content=content, headers=headers)


def record_error(request: Request, exc: BaseException) -> None:
    metrics = getattr(request.app.state, "metrics", None)
    if metrics is not None:
        tag = exc.tag if isinstance(exc, TirisError) else "unhandled"
        metrics.record_error("api", tag)


async def tiris_error_handler(request: Request, exc: TirisError) -> JSONResponse:
    """Exception handler for core errors."""
    record_error(request, exc)
    code = status_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {str(exc)}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.tag}")
    return error_response(request, exc)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Exception handler for malformed request bodies and parameters."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else "invalid request"
    return error_response(request, ValidationError(message))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler; never leaks internals to the caller."""
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {str(exc)}")
    logger.error(traceback.format_exc())
    record_error(request, exc)
    return error_response(request, exc)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging with request ids."""

    def __init__(self, app: ASGIApp, config: Config):
        """Initialize with app and config."""
        super().__init__(app)
        self.config = config

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Tag the request with an id, time it and log both ends."""
        request_id = request.headers.get("X-Request-ID", f"req_{time.time_ns()}")
        request.state.request_id = request_id
        start_time = time.time()

        client = request.client.host if request.client else "unknown"
        logger.info(
            f"Request: id={request_id} method={request.method} "
            f"path={request.url.path} client={client}"
        )

        try:
            response = await call_next(request)
        except asyncio.CancelledError:
            logger.info(
                f"Response: id={request_id} method={request.method} "
                f"path={request.url.path} status={HTTP_499_CLIENT_CLOSED_REQUEST} cancelled"
            )
            raise
        response_time = time.time() - start_time

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = str(round(response_time * 1000))

        # Successful responses carry the usage recorded by the route's rate limit
        rate_limit = getattr(request.state, "rate_limit", None)
        if rate_limit is not None and "X-RateLimit-Limit" not in response.headers:
            for name, value in rate_limit.headers().items():
                response.headers[name] = value

        logger.info(
            f"Response: id={request_id} method={request.method} "
            f"path={request.url.path} status={response.status_code} "
            f"time={response_time:.4f}s"
        )
        return response


def route_template(request: Request) -> str:
    """Path template of the matched route; unmatched paths share one label."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or METRICS_OTHER_LABEL


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware recording request counts, latencies and requests in flight."""

    def __init__(self, app: ASGIApp, metrics: MetricsCollector):
        super().__init__(app)
        self.metrics = metrics

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time = time.time()
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        with self.metrics.http_requests_in_flight.track_inprogress():
            try:
                response = await call_next(request)
                status_code = response.status_code
                return response
            except asyncio.CancelledError:
                status_code = HTTP_499_CLIENT_CLOSED_REQUEST
                raise
            finally:
                self.metrics.record_http_request(
                    request.method, route_template(request), status_code, time.time() - start_time
                )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware for security headers."""

    def __init__(self, app: ASGIApp, config: Config):
        """Initialize with app and config."""
        super().__init__(app)
        self.config = config

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Cache-Control"] = "no-store"

        if self.config.get("api.use_https", False):
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


def configure_middleware(app, config: Config):
    """Configure middleware and exception handlers for the FastAPI application."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.get("api.cors_origins", ["*"]),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )

    metrics = getattr(app.state, "metrics", None)
    if metrics is not None:
        app.add_middleware(MetricsMiddleware, metrics=metrics)

    # Added last so it runs first and every response carries a request id
    app.add_middleware(SecurityHeadersMiddleware, config=config)
    app.add_middleware(LoggingMiddleware, config=config)

    app.add_exception_handler(TirisError, tiris_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
