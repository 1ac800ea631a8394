"""Health check endpoints."""

from fastapi import APIRouter, Request

from usdc_forwarder.config import get_settings

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Basic health check endpoint."""
    service = request.app.state.service
    return {
        "status": "healthy",
        "service": "usdc-forwarder",
        "running": bool(service and service.is_running),
    }


@router.get("/health/detailed")
async def detailed_health():
    """Detailed health check with configuration info."""
    settings = get_settings()
    return {
        "status": "healthy",
        "service": "usdc-forwarder",
        "version": "0.1.0",
        "config": settings.get_safe_dict(),
    }
