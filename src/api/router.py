"""
Mounts the tracking and health routes.
"""
from fastapi import APIRouter
from src.api.tracking import router as tracking_router
from src.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(tracking_router)
api_router.include_router(health_router)
