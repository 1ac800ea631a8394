"""Forwarder status endpoints."""

from fastapi import APIRouter, HTTPException, Query, Request

from usdc_forwarder.watcher.orchestrator import ForwarderService

router = APIRouter()


def _get_service(request: Request) -> ForwarderService:
    service = request.app.state.service
    if service is None:
        raise HTTPException(status_code=503, detail="Forwarder service not attached")
    return service


@router.get("/status")
async def get_status(request: Request):
    """Per-network cursors, heads, lag and balances."""
    return _get_service(request).get_status().to_dict()


@router.get("/forwards")
async def get_forwards(
    request: Request,
    network: str = Query(None, description="Only this network"),
    limit: int = Query(50, ge=1, le=500),
):
    """Most recent forward attempts from the durable log."""
    service = _get_service(request)
    if not service.persistence_enabled:
        raise HTTPException(status_code=404, detail="Durable state is disabled")
    if network and network not in service.profiles:
        raise HTTPException(status_code=404, detail=f"Unknown network: {network}")
    return {"forwards": await service.get_recent_forwards(network=network, limit=limit)}
