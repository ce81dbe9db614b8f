"""
API middleware stack.

- Request ID injection (X-Request-ID header)
- Structured request/response logging
- Typed error rendering and the global exception handler
- CORS configuration
- In-memory rate limiting
"""
from __future__ import annotations

import time
import uuid
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from shared.config import Environment, get_settings
from shared.errors import ScoreBaseError, ServiceUnavailableError, TenantIsolationError
from shared.utils.logging import get_logger

logger = get_logger(__name__)

RATE_LIMIT_WINDOW_S = 60
UNLOGGED_PATHS = ("/health", "/healthz", "/metrics", "/ready")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Injects a unique X-Request-ID header into every request/response."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs structured request/response information."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start = time.monotonic()
        request_id = getattr(request.state, "request_id", "unknown")

        path = request.url.path
        if path in UNLOGGED_PATHS:
            return await call_next(request)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "http_request_error",
                method=request.method,
                path=path,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
                request_id=request_id,
                error=str(exc),
                exc_info=True,
            )
            raise

        logger.info(
            "http_request",
            method=request.method,
            path=path,
            status=response.status_code,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
            request_id=request_id,
            client=request.client.host if request.client else "unknown",
        )
        return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def error_body(code: str, message: str, details: dict[str, Any], request_id: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message, "details": details},
        "request_id": request_id,
    }


def render_error(request: Request, exc: ScoreBaseError) -> JSONResponse:
    """Render a typed engine error. Tenant isolation failures never echo internals."""
    request_id = _request_id(request)
    headers: dict[str, str] = {}

    if isinstance(exc, TenantIsolationError):
        content = error_body(exc.code, "Access denied", {}, request_id)
    else:
        content = error_body(exc.code, exc.message, exc.details, request_id)

    if isinstance(exc, ServiceUnavailableError):
        headers["Retry-After"] = str(exc.retry_after_s)

    log = logger.warning if exc.status_code >= 500 else logger.info
    log(
        "request_failed",
        path=request.url.path,
        status=exc.status_code,
        code=exc.code,
        request_id=request_id,
    )
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers or None)


def setup_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(ScoreBaseError)
    async def scorebase_error_handler(request: Request, exc: ScoreBaseError) -> JSONResponse:
        return render_error(request, exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = {
            ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body": err.get("msg", "")
            for err in exc.errors()
        }
        return JSONResponse(
            status_code=400,
            content=error_body("INVALID_REQUEST", "Request body is invalid", details, _request_id(request)),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        code = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(code, message, {}, _request_id(request)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = _request_id(request)
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            error=str(exc),
            request_id=request_id,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content=error_body("INTERNAL_ERROR", "An unexpected error occurred", {}, request_id),
        )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Simple in-memory sliding-window rate limiter per client IP."""

    def __init__(self, app: FastAPI, rpm: int | None = None) -> None:
        super().__init__(app)
        self._rpm = rpm or get_settings().rate_limit_rpm
        self._buckets: dict[str, list[float]] = {}

    @property
    def rpm(self) -> int:
        return self._rpm

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in UNLOGGED_PATHS:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.monotonic()
        window = self._buckets.setdefault(client_ip, [])
        window[:] = [t for t in window if now - t < RATE_LIMIT_WINDOW_S]

        if len(window) >= self._rpm:
            return JSONResponse(
                status_code=429,
                content=error_body(
                    "RATE_LIMIT_EXCEEDED",
                    f"Max {self._rpm} requests per minute",
                    {},
                    _request_id(request),
                ),
                headers={"Retry-After": str(RATE_LIMIT_WINDOW_S)},
            )

        window.append(now)
        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self._rpm)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self._rpm - len(window)))
        return response


def setup_cors(app: FastAPI) -> None:
    """Configure CORS middleware."""
    settings = get_settings()
    origins = settings.cors_origins
    if settings.environment == Environment.PRODUCTION and origins == ["*"]:
        logger.warning("cors_wildcard_in_production")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    )


def setup_middleware(app: FastAPI) -> None:
    """Apply all middleware to the FastAPI app in the correct order."""
    # 1. CORS (must be outermost for preflight)
    setup_cors(app)
    # 2. Rate limiting
    app.add_middleware(RateLimitMiddleware)
    # 3. Request ID
    app.add_middleware(RequestIDMiddleware)
    # 4. Request logging
    app.add_middleware(RequestLoggingMiddleware)
    # 5. Exception handlers
    setup_exception_handlers(app)
