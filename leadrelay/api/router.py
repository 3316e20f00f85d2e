"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter

from leadrelay.api.health import router as health_router
from leadrelay.api.jobs import router as jobs_router
from leadrelay.api.products import router as products_router

api_router = APIRouter()
api_router.include_router(jobs_router)
api_router.include_router(products_router)
api_router.include_router(health_router)
