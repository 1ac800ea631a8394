"""Per-network chain access for the forwarder."""

from usdc_forwarder.chain.base import (
    ChainClient,
    ChainError,
    ContractRevert,
    LogDecodeError,
    LogEntry,
    NonceConflict,
    TransactionRejected,
    TransientChainError,
    TxReceipt,
)

__all__ = [
    "ChainClient",
    "ChainError",
    "ContractRevert",
    "LogDecodeError",
    "LogEntry",
    "NonceConflict",
    "TransactionRejected",
    "TransientChainError",
    "TxReceipt",
]
