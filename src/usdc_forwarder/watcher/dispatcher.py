"""Forward dispatcher.

Submits forwardUSDC for one network and reports what happened.

Flow per forward (under the network's transaction lock):
1. Read the escrow balance
2. Refuse when the balance does not cover the amount
3. Estimate gas and add the safety margin (fixed fallback on failure)
4. Submit and wait for the receipt
5. Classify the outcome
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from usdc_forwarder.chain.base import (
    ChainError,
    ContractRevert,
    NonceConflict,
    TransactionRejected,
    TransientChainError,
)
from usdc_forwarder.contract.abi import format_usdc
from usdc_forwarder.contract.client import EscrowClient
from usdc_forwarder.networks import NetworkProfile
from usdc_forwarder.utils.locks import LockTimeoutError, network_tx_lock

logger = logging.getLogger(__name__)


class ForwardStatus(str, Enum):
    """Outcome of a forward attempt."""

    FORWARDED = "forwarded"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    NOTHING_TO_FORWARD = "nothing_to_forward"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class ForwardResult:
    """Result of a forward or sweep."""

    status: ForwardStatus
    network: str
    amount: int
    tx_hash: Optional[str] = None
    gas_limit: Optional[int] = None
    gas_used: Optional[int] = None
    balance: Optional[int] = None
    message: str = ""
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == ForwardStatus.FORWARDED

    @property
    def retryable(self) -> bool:
        """Transient failures hold the cursor so the range is retried."""
        return self.status == ForwardStatus.FAILED


class ForwardDispatcher:
    """Forwards escrowed USDC to the network's recipient."""

    def __init__(
        self,
        escrow: EscrowClient,
        gas_margin_percent: int = 20,
        fallback_gas_limit: int = 150000,
        profile: Optional[NetworkProfile] = None,
        sweep_lock_timeout: Optional[float] = None,
    ):
        """Initialize dispatcher.

        Args:
            escrow: Escrow client for the network
            gas_margin_percent: Added on top of the gas estimate
            fallback_gas_limit: Used when estimation fails
            profile: Network profile, used for explorer links in logs
            sweep_lock_timeout: Longest a sweep waits for the network lock
                (None = wait forever)
        """
        self.escrow = escrow
        self.gas_margin_percent = gas_margin_percent
        self.fallback_gas_limit = fallback_gas_limit
        self.profile = profile
        self.sweep_lock_timeout = sweep_lock_timeout

    @property
    def network(self) -> str:
        return self.escrow.network

    def with_margin(self, estimate: int) -> int:
        return estimate * (100 + self.gas_margin_percent) // 100

    async def estimate_gas(self, amount: int) -> int:
        """Gas limit for forwardUSDC(amount): estimate plus margin, or the fallback."""
        try:
            estimate = await self.escrow.estimate_forward_gas(amount)
        except ChainError as e:
            logger.warning(
                f"Gas estimation failed on {self.network}, using fallback "
                f"{self.fallback_gas_limit}: {e}"
            )
            return self.fallback_gas_limit
        return self.with_margin(estimate)

    async def forward(self, amount: int, reference: str = "") -> ForwardResult:
        """Forward `amount` base units if the escrow balance covers it.

        Args:
            amount: USDC base units to forward
            reference: Deposit transaction hash, for logging
        """
        async with network_tx_lock(self.network, operation=f"forward {reference}".strip()):
            try:
                balance = await self.escrow.get_balance()
            except ChainError as e:
                logger.error(f"Balance check failed on {self.network}: {e}")
                return ForwardResult(
                    status=ForwardStatus.FAILED,
                    network=self.network,
                    amount=amount,
                    message="Balance check failed",
                    error=str(e),
                )

            if balance < amount:
                logger.warning(
                    f"Insufficient escrow balance on {self.network}: have {format_usdc(balance)} USDC, "
                    f"need {format_usdc(amount)} USDC (deposit {reference or 'n/a'})"
                )
                return ForwardResult(
                    status=ForwardStatus.INSUFFICIENT_BALANCE,
                    network=self.network,
                    amount=amount,
                    balance=balance,
                    message="Escrow balance below deposit amount",
                )

            return await self._submit(amount, balance)

    async def sweep(self) -> ForwardResult:
        """Forward the escrow's entire current balance, if any.

        Gives up with FAILED when a forward holds the network lock for longer
        than sweep_lock_timeout; the next status cycle sweeps again.
        """
        try:
            return await self._sweep_locked()
        except LockTimeoutError as e:
            logger.warning(f"Sweep skipped on {self.network}: {e}")
            return ForwardResult(
                status=ForwardStatus.FAILED,
                network=self.network,
                amount=0,
                message="Network busy",
                error=str(e),
            )

    async def _sweep_locked(self) -> ForwardResult:
        async with network_tx_lock(
            self.network, timeout=self.sweep_lock_timeout, operation="sweep"
        ):
            try:
                balance = await self.escrow.get_balance()
            except ChainError as e:
                logger.error(f"Sweep balance check failed on {self.network}: {e}")
                return ForwardResult(
                    status=ForwardStatus.FAILED,
                    network=self.network,
                    amount=0,
                    message="Balance check failed",
                    error=str(e),
                )

            if balance == 0:
                logger.debug(f"Nothing to sweep on {self.network}")
                return ForwardResult(
                    status=ForwardStatus.NOTHING_TO_FORWARD,
                    network=self.network,
                    amount=0,
                    balance=0,
                )

            logger.info(f"Sweeping {format_usdc(balance)} USDC on {self.network}")
            return await self._submit(balance, balance)

    async def _submit(self, amount: int, balance: int) -> ForwardResult:
        # Caller holds the network lock.
        gas_limit = await self.estimate_gas(amount)

        try:
            receipt = await self.escrow.forward_usdc(amount, gas_limit)
        except TransientChainError as e:
            logger.error(f"Forward of {format_usdc(amount)} USDC on {self.network} failed: {e}")
            return ForwardResult(
                status=ForwardStatus.FAILED,
                network=self.network,
                amount=amount,
                gas_limit=gas_limit,
                balance=balance,
                message="Network failure",
                error=str(e),
            )
        except NonceConflict as e:
            logger.error(f"Nonce conflict forwarding on {self.network}, will retry: {e}")
            return ForwardResult(
                status=ForwardStatus.FAILED,
                network=self.network,
                amount=amount,
                gas_limit=gas_limit,
                balance=balance,
                message="Nonce conflict",
                error=str(e),
            )
        except ContractRevert as e:
            logger.error(f"Forward reverted on {self.network}: {e.reason or e}")
            return ForwardResult(
                status=ForwardStatus.REJECTED,
                network=self.network,
                amount=amount,
                gas_limit=gas_limit,
                balance=balance,
                message="Execution reverted",
                error=e.reason or str(e),
            )
        except TransactionRejected as e:
            logger.error(f"Forward rejected on {self.network}: {e}")
            return ForwardResult(
                status=ForwardStatus.REJECTED,
                network=self.network,
                amount=amount,
                gas_limit=gas_limit,
                balance=balance,
                message="Transaction rejected",
                error=str(e),
            )

        if not receipt.succeeded:
            logger.error(
                f"Forward transaction {receipt.transaction_hash} reverted on {self.network}: "
                f"{receipt.revert_reason or 'no reason'}"
            )
            return ForwardResult(
                status=ForwardStatus.REJECTED,
                network=self.network,
                amount=amount,
                tx_hash=receipt.transaction_hash,
                gas_limit=gas_limit,
                gas_used=receipt.gas_used,
                balance=balance,
                message="Transaction reverted",
                error=receipt.revert_reason,
            )

        link = self.profile.tx_url(receipt.transaction_hash) if self.profile else None
        logger.info(
            f"Forwarded {format_usdc(amount)} USDC on {self.network} "
            f"in block {receipt.block_number}: {link or receipt.transaction_hash}"
        )
        return ForwardResult(
            status=ForwardStatus.FORWARDED,
            network=self.network,
            amount=amount,
            tx_hash=receipt.transaction_hash,
            gas_limit=gas_limit,
            gas_used=receipt.gas_used,
            balance=balance - amount,
        )

    async def configure_token(self, token: str, fallback_gas_limit: int = 100000) -> bool:
        """Point the escrow at the network's USDC token.

        A revert (already configured, not the owner) is expected on every
        start after the first and is not an error.

        Returns:
            True if the token was set by this call
        """
        async with network_tx_lock(self.network, operation="setUSDCAddress"):
            try:
                gas_limit = self.with_margin(await self.escrow.estimate_set_usdc_gas(token))
            except ContractRevert as e:
                logger.info(
                    f"USDC token not set on {self.network} ({e.reason or 'reverted'}); "
                    f"assuming it is already configured"
                )
                return False
            except ChainError as e:
                logger.warning(
                    f"setUSDCAddress estimation failed on {self.network}, using fallback "
                    f"{fallback_gas_limit}: {e}"
                )
                gas_limit = fallback_gas_limit

            try:
                receipt = await self.escrow.set_usdc_address(token, gas_limit)
            except ChainError as e:
                logger.warning(f"setUSDCAddress failed on {self.network}: {e}")
                return False

            if not receipt.succeeded:
                logger.info(
                    f"setUSDCAddress reverted on {self.network}: {receipt.revert_reason or 'no reason'}"
                )
                return False

            logger.info(f"USDC token {token} configured on {self.network}")
            return True
