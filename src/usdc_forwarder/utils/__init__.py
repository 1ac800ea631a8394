"""Utility modules."""

from usdc_forwarder.utils.locks import LockTimeoutError, get_network_lock, network_tx_lock

__all__ = ["LockTimeoutError", "get_network_lock", "network_tx_lock"]
