"""Base interface for per-network chain clients.

A chain client wraps exactly one RPC endpoint of one network and the signing
key used on it. Everything the watcher needs from a chain goes through here:
- current head
- logs of the escrow contract
- read-only calls
- gas estimation
- signed transaction submission and receipt confirmation

Errors are classified so callers can decide whether to retry:
- TransientChainError: node unreachable, timeout, rate limit
- TransactionRejected: the chain refused the call (revert, nonce conflict)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class LogEntry:
    """A raw event log as returned by eth_getLogs."""

    address: str
    topics: list[str]
    data: str
    block_number: int
    transaction_hash: str
    log_index: int = 0
    removed: bool = False


@dataclass
class TxReceipt:
    """Receipt of a mined transaction."""

    transaction_hash: str
    block_number: int
    status: int  # 1 = success, 0 = reverted
    gas_used: int
    logs: list[LogEntry] = field(default_factory=list)
    revert_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainClient(ABC):
    """Abstract base class for a single network's RPC access."""

    def __init__(self, network: str, chain_id: int):
        """Initialize client.

        Args:
            network: Network profile key (e.g. baseSepolia)
            chain_id: EIP-155 chain id used when signing
        """
        self.network = network
        self.chain_id = chain_id

    @property
    @abstractmethod
    def sender_address(self) -> str:
        """Address of the signing key used for transactions."""
        pass

    @abstractmethod
    async def get_block_number(self) -> int:
        """Get the current head block number."""
        pass

    @abstractmethod
    async def get_logs(
        self,
        address: str,
        topics: list[str],
        from_block: int,
        to_block: int,
    ) -> list[LogEntry]:
        """Get logs emitted by address in [from_block, to_block]."""
        pass

    @abstractmethod
    async def call(self, to: str, data: str) -> str:
        """Execute a read-only call and return the hex result."""
        pass

    @abstractmethod
    async def estimate_gas(self, to: str, data: str) -> int:
        """Estimate gas for a transaction from sender_address."""
        pass

    @abstractmethod
    async def send_transaction(self, to: str, data: str, gas_limit: int) -> str:
        """Sign and broadcast a transaction.

        Returns:
            Transaction hash
        """
        pass

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        """Block until the transaction is mined and return its receipt."""
        pass

    async def close(self) -> None:
        """Release any network resources held by the client."""
        return None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(network={self.network}, chain_id={self.chain_id})"


class ChainError(Exception):
    """Base exception for chain client failures."""
    pass


class TransientChainError(ChainError):
    """Network-level failure; the same call may succeed on a later cycle."""
    pass


class TransactionRejected(ChainError):
    """The chain refused the transaction or call."""
    pass


class ContractRevert(TransactionRejected):
    """Execution reverted.

    Attributes:
        reason: Custom error name or revert string, if known
    """

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class NonceConflict(TransactionRejected):
    """Nonce too low / replacement underpriced / already known."""
    pass


class LogDecodeError(ChainError):
    """A single log could not be decoded."""
    pass
