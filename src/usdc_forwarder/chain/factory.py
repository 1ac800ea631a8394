"""Factory for creating per-network chain clients."""

import logging
from typing import Optional

from usdc_forwarder.chain.base import ChainClient
from usdc_forwarder.chain.rpc import JsonRpcChainClient
from usdc_forwarder.config import Settings, get_settings
from usdc_forwarder.networks import NetworkProfile

logger = logging.getLogger(__name__)


def get_chain_client(profile: NetworkProfile, settings: Optional[Settings] = None) -> ChainClient:
    """Create a JSON-RPC chain client for one network profile.

    Args:
        profile: Network to connect to
        settings: Application settings (default: cached settings)

    Returns:
        ChainClient for the network
    """
    settings = settings or get_settings()
    return JsonRpcChainClient(
        network=profile.key,
        chain_id=profile.chain_id,
        rpc_url=profile.rpc_url,
        private_key=settings.private_key,
        timeout=settings.rpc_timeout,
        receipt_timeout=settings.receipt_timeout,
        receipt_poll_interval=settings.receipt_poll_interval,
    )


def get_chain_clients(
    profiles: dict[str, NetworkProfile],
    settings: Optional[Settings] = None,
) -> dict[str, ChainClient]:
    """Create one chain client per network profile."""
    clients = {}
    for key, profile in profiles.items():
        clients[key] = get_chain_client(profile, settings)
        logger.debug(f"Created chain client for {profile.name} ({profile.rpc_url})")
    return clients
