"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin_sessions import router as admin_sessions_router

router = APIRouter()

router.include_router(admin_sessions_router, prefix="/admin", tags=["admin"])
