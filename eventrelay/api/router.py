"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from eventrelay.api.dead_letters import router as dead_letters_router
from eventrelay.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(dead_letters_router)
api_router.include_router(health_router)
