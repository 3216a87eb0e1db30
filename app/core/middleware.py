"""Middleware configuration for the FastAPI application."""

import os
import time
import uuid
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app import __version__
from app.config import Settings
from app.deps.security import USER_ID_HEADER, verify_api_key
from app.routers import metrics

logger = structlog.get_logger(__name__)

# Skip API key auth for these paths
PUBLIC_PATHS = {"/health", "/metrics", "/docs", "/openapi.json", "/redoc", "/"}


def setup_rate_limiter(app: FastAPI, settings: Settings) -> Limiter:
    """Set up rate limiter and attach to app."""
    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[f"{settings.rate_limit_requests_per_minute}/minute"],
        enabled=settings.rate_limit_enabled,
    )
    app.state.limiter = limiter
    # mypy: slowapi handler signature differs from FastAPI expected type
    app.add_exception_handler(
        RateLimitExceeded, _rate_limit_exceeded_handler  # type: ignore[arg-type]
    )
    return limiter


def setup_cors(app: FastAPI) -> None:
    """Configure CORS middleware."""
    cors_origins_str = os.environ.get("CORS_ORIGINS", "*")
    if cors_origins_str == "*":
        cors_origins = ["*"]
        logger.warning(
            "CORS_ORIGINS not set, allowing all origins (not for production)"
        )
    else:
        cors_origins = [origin.strip() for origin in cors_origins_str.split(",")]
        logger.info("CORS origins configured", origins=cors_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )


async def security_headers_middleware(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

    # Add HSTS if behind TLS (check X-Forwarded-Proto)
    if request.headers.get("X-Forwarded-Proto") == "https":
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )

    return response


def _error_response(
    status_code: int,
    detail: str,
    request_id: str,
    error_code: Optional[str] = None,
    retryable: bool = False,
) -> JSONResponse:
    content = {"detail": detail, "retryable": retryable}
    if error_code:
        content["error_code"] = error_code
    return JSONResponse(
        status_code=status_code,
        content=content,
        headers={"X-Request-ID": request_id, "X-API-Version": __version__},
    )


def _check_api_key(request: Request, settings: Settings, request_id: str):
    """Return an error response when the API key is required and wrong."""
    if not settings.api_key or request.url.path in PUBLIC_PATHS:
        return None

    provided_key = request.headers.get(settings.api_key_header_name)
    if not provided_key:
        logger.warning("API key missing", path=request.url.path)
        return _error_response(
            401,
            f"API key required. Provide key in {settings.api_key_header_name} header",
            request_id,
            error_code="API_KEY_REQUIRED",
        )
    if not verify_api_key(provided_key, settings.api_key):
        logger.warning("Invalid API key", path=request.url.path)
        return _error_response(403, "Invalid API key", request_id, error_code="INVALID_API_KEY")
    return None


def create_request_middleware(settings: Settings):
    """Create request middleware with settings closure."""

    async def request_middleware(request: Request, call_next):
        """Add request ID, timing, size limits, and API key validation to all requests."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        # Bind request context to logger
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        user_id = request.headers.get(USER_ID_HEADER)
        if user_id:
            structlog.contextvars.bind_contextvars(user_id=user_id)

        rejected = _check_api_key(request, settings, request_id)
        if rejected is not None:
            return rejected

        content_length = request.headers.get("content-length")
        if content_length and int(content_length) > settings.max_request_body_size:
            logger.warning(
                "Request body too large",
                content_length=int(content_length),
                max_size=settings.max_request_body_size,
            )
            return _error_response(
                413,
                f"Request body too large. Maximum size is {settings.max_request_body_size} bytes",
                request_id,
            )

        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception("Request failed", error=str(e))
            return _error_response(500, "Internal server error", request_id, retryable=True)

        duration_seconds = time.perf_counter() - start_time
        duration_ms = duration_seconds * 1000

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time-Ms"] = f"{duration_ms:.2f}"
        response.headers["X-API-Version"] = __version__

        # Record metrics (skip /metrics endpoint to avoid recursion)
        if request.url.path != "/metrics":
            route = request.scope.get("route")
            metrics.record_request(
                method=request.method,
                endpoint=getattr(route, "path", request.url.path),
                status_code=response.status_code,
                duration=duration_seconds,
            )

        logger.info(
            "Request completed",
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )

        return response

    return request_middleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Set up all middleware for the application."""
    setup_rate_limiter(app, settings)
    setup_cors(app)

    # Security headers (added first, runs last in middleware stack)
    app.middleware("http")(security_headers_middleware)

    # Request middleware (request ID, timing, auth, size limits)
    app.middleware("http")(create_request_middleware(settings))
