"""Typed access to the escrow contract through a chain client."""

import logging

from eth_abi.exceptions import DecodingError
from web3 import Web3

from usdc_forwarder.chain.base import ChainClient, LogEntry, TransientChainError, TxReceipt
from usdc_forwarder.contract import abi

logger = logging.getLogger(__name__)


class EscrowClient:
    """Escrow calls for one network.

    Wraps ABI encoding so callers deal in integers and addresses only.
    """

    def __init__(self, chain: ChainClient, address: str):
        self.chain = chain
        self.address = Web3.to_checksum_address(address)

    @property
    def network(self) -> str:
        return self.chain.network

    async def get_balance(self) -> int:
        """Read the escrow's USDC balance (base units).

        Raises:
            ChainError: If the call fails. Undecodable return data, such as
                "0x" from a network where the escrow is not deployed yet, is
                reported as TransientChainError.
        """
        result = await self.chain.call(self.address, abi.encode_call("getBalance"))
        try:
            (balance,) = abi.decode_result("getBalance", result)
        except (DecodingError, ValueError) as e:
            raise TransientChainError(
                f"Undecodable getBalance result {result!r} from {self.address} on {self.network}: {e}"
            ) from e
        return balance

    async def get_deposit_logs(self, from_block: int, to_block: int) -> list[LogEntry]:
        """Fetch raw USDCDeposited logs in [from_block, to_block]."""
        return await self.chain.get_logs(
            self.address,
            [abi.DEPOSIT_TOPIC],
            from_block,
            to_block,
        )

    async def estimate_forward_gas(self, amount: int) -> int:
        return await self.chain.estimate_gas(
            self.address, abi.encode_call("forwardUSDC", amount)
        )

    async def forward_usdc(self, amount: int, gas_limit: int) -> TxReceipt:
        """Submit forwardUSDC(amount) and wait for the receipt."""
        tx_hash = await self.chain.send_transaction(
            self.address, abi.encode_call("forwardUSDC", amount), gas_limit
        )
        logger.info(f"Forward transaction submitted on {self.network}: {tx_hash}")
        return await self.chain.wait_for_receipt(tx_hash)

    async def estimate_set_usdc_gas(self, token: str) -> int:
        return await self.chain.estimate_gas(
            self.address,
            abi.encode_call("setUSDCAddress", Web3.to_checksum_address(token)),
        )

    async def set_usdc_address(self, token: str, gas_limit: int) -> TxReceipt:
        """Submit setUSDCAddress(token) and wait for the receipt."""
        tx_hash = await self.chain.send_transaction(
            self.address,
            abi.encode_call("setUSDCAddress", Web3.to_checksum_address(token)),
            gas_limit,
        )
        return await self.chain.wait_for_receipt(tx_hash)
