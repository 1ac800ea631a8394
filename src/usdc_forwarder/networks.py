"""Network profiles for every chain the escrow is deployed on.

The escrow lives at the same address everywhere; what differs per network
is the RPC endpoint, the chain id and the USDC token address. The service
is driven from a mapping of profile key -> NetworkProfile, never from
per-network branches.
"""

from dataclasses import dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class NetworkProfile:
    """Immutable per-network configuration."""

    key: str
    name: str
    chain_id: int
    rpc_url: str
    usdc_address: str
    explorer_url: Optional[str] = None

    def tx_url(self, tx_hash: str) -> Optional[str]:
        """Explorer link for a transaction, if an explorer is known."""
        if not self.explorer_url:
            return None
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"


# ======================
# Network Profiles
# ======================

NETWORKS: dict[str, NetworkProfile] = {
    "arbitrumSepolia": NetworkProfile(
        key="arbitrumSepolia",
        name="Arbitrum Sepolia",
        chain_id=421614,
        rpc_url="https://sepolia-rollup.arbitrum.io/rpc",
        usdc_address="0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d",
        explorer_url="https://sepolia.arbiscan.io",
    ),
    "optimismSepolia": NetworkProfile(
        key="optimismSepolia",
        name="Optimism Sepolia",
        chain_id=11155420,
        rpc_url="https://sepolia.optimism.io",
        usdc_address="0x5fd84259d66Cd46123540766Be93DFE6D43130D7",
        explorer_url="https://sepolia-optimism.etherscan.io",
    ),
    "baseSepolia": NetworkProfile(
        key="baseSepolia",
        name="Base Sepolia",
        chain_id=84532,
        rpc_url="https://sepolia.base.org",
        usdc_address="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        explorer_url="https://sepolia.basescan.org",
    ),
}


def get_network(key: str) -> Optional[NetworkProfile]:
    """Get a network profile by key."""
    return NETWORKS.get(key)


def get_networks(
    keys: Optional[list[str]] = None,
    rpc_overrides: Optional[dict[str, str]] = None,
) -> dict[str, NetworkProfile]:
    """Resolve the active network profiles.

    Args:
        keys: Profile keys to enable (default: all)
        rpc_overrides: profile key -> RPC URL replacing the default endpoint

    Raises:
        KeyError: If a key is not a known network
    """
    keys = keys if keys is not None else list(NETWORKS)
    rpc_overrides = rpc_overrides or {}

    profiles = {}
    for key in keys:
        if key not in NETWORKS:
            raise KeyError(f"Unknown network: {key}")
        profile = NETWORKS[key]
        if rpc_overrides.get(key):
            profile = replace(profile, rpc_url=rpc_overrides[key])
        profiles[key] = profile
    return profiles
