"""Bulk Entity Provisioning Service - FastAPI Application."""

import logging
import sys

import structlog
from fastapi import FastAPI

from app import __version__
from app.api.router import api_router
from app.config import get_settings
from app.core.lifespan import lifespan
from app.core.middleware import setup_middleware
from app.core.sentry import init_sentry

settings = get_settings()

logging.basicConfig(
    format="%(message)s",
    stream=sys.stdout,
    level=settings.log_level.upper(),
)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

# Initialize Sentry (if configured)
init_sentry(settings)

app = FastAPI(
    title="Bulk Entity Provisioning",
    description="Creates campaigns, ad sets and ads in bulk with retry, deferral and rollback",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if settings.docs_enabled else None,
    redoc_url="/redoc" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.docs_enabled else None,
)

if not settings.docs_enabled:
    logger.info("API docs disabled (DOCS_ENABLED=false)")

setup_middleware(app, settings)
app.include_router(api_router)


@app.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "Bulk Entity Provisioning",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }
