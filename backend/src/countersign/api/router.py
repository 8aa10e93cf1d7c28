"""Main API router aggregating all v1 routes."""

from fastapi import APIRouter

from countersign.api.routes import deals, health, signing

# Create main router
api_router = APIRouter()

# Include route modules
api_router.include_router(health.router)
api_router.include_router(signing.router)
api_router.include_router(deals.router)
