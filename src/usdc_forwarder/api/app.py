"""FastAPI application factory."""

from typing import Optional

from fastapi import FastAPI

from usdc_forwarder.config import get_settings
from usdc_forwarder.watcher.orchestrator import ForwarderService


def create_app(service: Optional[ForwarderService] = None) -> FastAPI:
    """Create the status API.

    Args:
        service: Running forwarder whose status the API reports
    """
    settings = get_settings()

    app = FastAPI(
        title="USDC Forwarder",
        description="Status of the cross-chain USDC escrow forwarder",
        version="0.1.0",
        debug=settings.debug,
    )
    app.state.service = service

    # Register routes
    from usdc_forwarder.api.routes import health, status

    app.include_router(health.router, tags=["Health"])
    app.include_router(status.router, tags=["Status"])

    return app
