"""API router aggregation - includes all application routers."""

from fastapi import APIRouter

from app.routers import failures, health, metrics, provisioning

# Main API router
api_router = APIRouter()

# Health and metrics
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(metrics.router)  # Metrics endpoint (excluded from OpenAPI)

# Provisioning
api_router.include_router(provisioning.router)  # /provisioning prefix
api_router.include_router(failures.router)  # /failures prefix
