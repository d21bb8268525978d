"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from eventrelay.api.ingest import router as ingest_router
from eventrelay.api.webhook_endpoints import router as webhook_endpoints_router
from eventrelay.api.internal import router as internal_router
from eventrelay.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(ingest_router)
api_router.include_router(webhook_endpoints_router)
api_router.include_router(internal_router)
api_router.include_router(health_router)
