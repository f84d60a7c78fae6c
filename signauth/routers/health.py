"""
Health check endpoint.
"""
from fastapi import APIRouter

from signauth import __version__
from signauth.config import get_settings

router = APIRouter(
    prefix="/health",
    tags=["health"],
)


@router.get("")
async def health_check():
    settings = get_settings()
    return {
        "status": "healthy",
        "version": __version__,
        "environment": settings.environment,
        "storage_backend": settings.storage_backend,
    }
