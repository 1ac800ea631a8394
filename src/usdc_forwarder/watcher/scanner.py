"""Deposit event scanner.

Turns the escrow's raw USDCDeposited logs for a block range into decoded
DepositEvent records. RPC failures propagate to the caller so the cycle can
hold its cursor; a log that does not decode is skipped on its own.
"""

import logging
from dataclasses import dataclass, field

from web3 import Web3

from usdc_forwarder.chain.base import LogDecodeError
from usdc_forwarder.contract import abi
from usdc_forwarder.contract.client import EscrowClient

logger = logging.getLogger(__name__)


@dataclass
class DepositEvent:
    """One observed USDCDeposited emission."""

    network: str
    transaction_hash: str
    sender: str
    amount: int
    timestamp: int
    block_number: int
    log_index: int = 0


@dataclass
class ScanResult:
    """Outcome of scanning one block range."""

    network: str
    from_block: int
    to_block: int
    events: list[DepositEvent] = field(default_factory=list)
    decode_errors: int = 0
    skipped: int = 0

    @property
    def total_amount(self) -> int:
        return sum(event.amount for event in self.events)


class DepositEventScanner:
    """Scans one network's escrow for deposit events."""

    def __init__(self, escrow: EscrowClient):
        self.escrow = escrow

    @property
    def network(self) -> str:
        return self.escrow.network

    async def scan(self, from_block: int, to_block: int) -> ScanResult:
        """Enumerate deposits in [from_block, to_block], inclusive.

        Raises:
            ChainError: If the logs query fails
        """
        result = ScanResult(network=self.network, from_block=from_block, to_block=to_block)
        if from_block > to_block:
            return result

        logs = await self.escrow.get_deposit_logs(from_block, to_block)
        logs.sort(key=lambda entry: (entry.block_number, entry.log_index))

        for entry in logs:
            if entry.removed:
                result.skipped += 1
                continue

            try:
                address = Web3.to_checksum_address(entry.address)
            except (TypeError, ValueError):
                logger.warning(
                    f"Ignoring log with malformed address {entry.address!r} on {self.network}"
                )
                result.skipped += 1
                continue

            if address != self.escrow.address:
                logger.warning(
                    f"Ignoring log from unexpected address {entry.address} on {self.network}"
                )
                result.skipped += 1
                continue

            try:
                sender, amount, timestamp = abi.decode_deposit_log(entry.topics, entry.data)
            except LogDecodeError as e:
                logger.warning(
                    f"Skipping undecodable deposit log {entry.transaction_hash}:{entry.log_index} "
                    f"on {self.network}: {e}"
                )
                result.decode_errors += 1
                continue

            result.events.append(
                DepositEvent(
                    network=self.network,
                    transaction_hash=entry.transaction_hash,
                    sender=sender,
                    amount=amount,
                    timestamp=timestamp,
                    block_number=entry.block_number,
                    log_index=entry.log_index,
                )
            )

        if result.events:
            logger.info(
                f"Found {len(result.events)} deposit(s) on {self.network} "
                f"in blocks {from_block}-{to_block}"
            )
        return result
