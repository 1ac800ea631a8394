"""Concurrency control for per-network transaction submission.

All forwards on one network are signed by the same key, so at most one
transaction may be in flight per network. The polling cycle and the sweep
timer both take the network lock around balance-check + submit + confirm.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

logger = logging.getLogger(__name__)

# Global lock registry: network key -> asyncio.Lock
_network_locks: dict[str, asyncio.Lock] = {}


def get_network_lock(network: str) -> asyncio.Lock:
    """Get or create the transaction lock for a network.

    Args:
        network: Network profile key

    Returns:
        asyncio.Lock for the network
    """
    if network not in _network_locks:
        _network_locks[network] = asyncio.Lock()
    return _network_locks[network]


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


@asynccontextmanager
async def network_tx_lock(
    network: str,
    timeout: Optional[float] = None,
    operation: str = "transaction",
):
    """Hold the network's transaction lock.

    Args:
        network: Network profile key
        timeout: Maximum time to wait for lock (None = wait forever)
        operation: Description for logging

    Example:
        async with network_tx_lock("baseSepolia", operation="forward"):
            # one transaction in flight on baseSepolia
            pass
    """
    lock = get_network_lock(network)

    try:
        if timeout:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        else:
            await lock.acquire()
    except asyncio.TimeoutError:
        logger.warning(f"Lock timeout for {network}: {operation}")
        raise LockTimeoutError(
            f"Could not acquire lock for {network} within {timeout}s"
        )

    logger.debug(f"Lock acquired for {network}: {operation}")
    try:
        yield
    finally:
        lock.release()
        logger.debug(f"Lock released for {network}: {operation}")


def clear_network_locks() -> None:
    """Clear all network locks (useful for testing)."""
    _network_locks.clear()
