"""Deposit detection and forwarding."""

from usdc_forwarder.watcher.cursor import BlockCursorTracker
from usdc_forwarder.watcher.dedup import DedupLedger
from usdc_forwarder.watcher.dispatcher import ForwardDispatcher, ForwardResult, ForwardStatus
from usdc_forwarder.watcher.orchestrator import CycleResult, ForwarderService, ServiceStatus
from usdc_forwarder.watcher.scanner import DepositEvent, DepositEventScanner, ScanResult

__all__ = [
    "BlockCursorTracker",
    "CycleResult",
    "DedupLedger",
    "DepositEvent",
    "DepositEventScanner",
    "ForwardDispatcher",
    "ForwardResult",
    "ForwardStatus",
    "ForwarderService",
    "ScanResult",
    "ServiceStatus",
]
