"""API router configuration."""

from fastapi import APIRouter

from app.api.endpoints import admin, auth, health, users

api_router = APIRouter()

# Include routers
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(auth.router, prefix="/auth", tags=["Authentication"])
api_router.include_router(users.router, tags=["Users"])
api_router.include_router(admin.router, tags=["Admin"])
