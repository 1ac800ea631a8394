"""Simulated network for testing (no real blockchain queries).

SimulatedChain hosts escrow and token contracts in memory, mines one block
per transaction and records logs in the exact shape a JSON-RPC node returns
them, so the scanner decodes them through the same ABI path as real logs.

SimulatedChainClient exposes a SimulatedChain through the ChainClient
interface and supports failure injection per method.
"""

import logging
from collections import defaultdict
from typing import Any, Optional

from eth_account import Account
from web3 import Web3

from usdc_forwarder.chain.base import (
    ChainClient,
    ContractRevert,
    LogEntry,
    TransientChainError,
    TxReceipt,
)
from usdc_forwarder.contract import abi
from usdc_forwarder.contract.deployment import compute_create2_address
from usdc_forwarder.contract.escrow import EscrowContract, EscrowError
from usdc_forwarder.contract.token import StablecoinToken, TokenError

logger = logging.getLogger(__name__)

# Stand-in for the escrow creation bytecode; only its hash matters
SIMULATED_ESCROW_INIT_CODE = bytes(Web3.keccak(text="usdc_forwarder.EscrowContract"))

GAS_COSTS = {
    "depositUSDC": 62000,
    "forwardUSDC": 54000,
    "setUSDCAddress": 46000,
    "updateRecipient": 33000,
    "getBalance": 24000,
}


class SimulatedChain:
    """In-memory EVM network with one block per transaction."""

    def __init__(
        self,
        network: str,
        chain_id: int,
        start_block: int = 1000,
        genesis_timestamp: int = 1_700_000_000,
        block_time: int = 2,
    ):
        self.network = network
        self.chain_id = chain_id
        self.block_number = start_block
        self.timestamp = genesis_timestamp
        self.block_time = block_time
        self.tokens: dict[str, StablecoinToken] = {}
        self.escrows: dict[str, EscrowContract] = {}
        self.logs: list[LogEntry] = []
        self.receipts: dict[str, TxReceipt] = {}
        self._tx_count = 0

    def now(self) -> int:
        return self.timestamp

    def mine(self, blocks: int = 1) -> int:
        """Advance the chain by `blocks` empty blocks."""
        self.block_number += blocks
        self.timestamp += self.block_time * blocks
        return self.block_number

    # ---- deployment -------------------------------------------------------

    def deploy_token(
        self,
        symbol: str = "USDC",
        decimals: int = 6,
        address: Optional[str] = None,
    ) -> StablecoinToken:
        if address is None:
            digest = bytes(Web3.keccak(text=f"{self.network}:{symbol}:{len(self.tokens)}"))
            address = Web3.to_checksum_address(digest[12:])
        token = StablecoinToken(address, symbol=symbol, decimals=decimals)
        self.tokens[token.address.lower()] = token
        return token

    def deploy_escrow(
        self,
        deployer: str,
        recipient: str,
        salt: Any = 0,
        init_code: bytes = SIMULATED_ESCROW_INIT_CODE,
    ) -> EscrowContract:
        """Deploy the escrow at its CREATE2 address."""
        address = compute_create2_address(deployer, salt, init_code, recipient)
        if address.lower() in self.escrows:
            raise ValueError(f"Escrow already deployed at {address} on {self.network}")

        escrow = EscrowContract(
            address=address,
            owner=deployer,
            recipient=recipient,
            token_resolver=self.get_token,
            clock=self.now,
        )
        self.escrows[address.lower()] = escrow
        logger.debug(f"Deployed escrow at {address} on {self.network}")
        return escrow

    def get_token(self, address: str) -> StablecoinToken:
        token = self.tokens.get(address.lower())
        if token is None:
            raise TokenError(f"No token contract at {address}")
        return token

    def get_escrow(self, address: str) -> EscrowContract:
        escrow = self.escrows.get(address.lower())
        if escrow is None:
            raise KeyError(f"No escrow contract at {address} on {self.network}")
        return escrow

    # ---- execution --------------------------------------------------------

    def _next_tx_hash(self, sender: str) -> str:
        self._tx_count += 1
        digest = Web3.keccak(text=f"{self.network}:{sender.lower()}:{self._tx_count}")
        return "0x" + bytes(digest).hex()

    @staticmethod
    def _invoke(escrow: EscrowContract, sender: str, function: str, args: tuple) -> None:
        handlers = {
            "depositUSDC": escrow.deposit_usdc,
            "forwardUSDC": escrow.forward_usdc,
            "setUSDCAddress": escrow.set_usdc_address,
            "updateRecipient": escrow.update_recipient,
        }
        handlers[function](sender, *args)

    def execute(
        self,
        sender: str,
        escrow_address: str,
        function: str,
        *args: Any,
        gas_limit: Optional[int] = None,
    ) -> TxReceipt:
        """Mine a block containing one escrow transaction."""
        escrow = self.get_escrow(escrow_address)
        self.mine()
        tx_hash = self._next_tx_hash(sender)
        required_gas = GAS_COSTS[function]

        status, reason, logs = 1, None, []
        gas_used = required_gas

        if gas_limit is not None and gas_limit < required_gas:
            status, reason, gas_used = 0, "out of gas", gas_limit
        else:
            try:
                self._invoke(escrow, sender, function, args)
            except EscrowError as e:
                status, reason = 0, e.name
            else:
                logs = self._record_logs(escrow, tx_hash)

        receipt = TxReceipt(
            transaction_hash=tx_hash,
            block_number=self.block_number,
            status=status,
            gas_used=gas_used,
            logs=logs,
            revert_reason=reason,
        )
        self.receipts[tx_hash] = receipt
        return receipt

    def _record_logs(self, escrow: EscrowContract, tx_hash: str) -> list[LogEntry]:
        logs = []
        for index, event in enumerate(escrow.pop_events()):
            topics, data = abi.encode_event(event.name, event.args)
            logs.append(LogEntry(
                address=escrow.address,
                topics=topics,
                data=data,
                block_number=self.block_number,
                transaction_hash=tx_hash,
                log_index=index,
            ))
        self.logs.extend(logs)
        return logs

    def simulate(self, sender: str, escrow_address: str, function: str, *args: Any) -> None:
        """Run a call against current state and discard its effects."""
        escrow = self.get_escrow(escrow_address)
        snapshot = escrow.snapshot()
        try:
            self._invoke(escrow, sender, function, args)
        finally:
            escrow.restore(snapshot)

    # ---- helpers for tests and local runs ---------------------------------

    def deposit(self, escrow_address: str, sender: str, amount: int) -> TxReceipt:
        """Mint, approve and deposit `amount` from sender in one go."""
        escrow = self.get_escrow(escrow_address)
        token = self.get_token(escrow.token_address)
        token.mint(sender, amount)
        token.approve(sender, escrow.address, amount)
        return self.execute(sender, escrow_address, "depositUSDC", amount)

    def inject_log(self, log: LogEntry) -> None:
        """Append an arbitrary (possibly malformed) log."""
        self.logs.append(log)


class SimulatedChainClient(ChainClient):
    """ChainClient backed by a SimulatedChain."""

    def __init__(self, chain: SimulatedChain, sender: str):
        super().__init__(chain.network, chain.chain_id)
        self.chain = chain
        self._sender = Web3.to_checksum_address(sender)
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self.sent_transactions: list[tuple[str, str, int]] = []

    @classmethod
    def from_private_key(cls, chain: SimulatedChain, private_key: str) -> "SimulatedChainClient":
        return cls(chain, Account.from_key(private_key).address)

    @property
    def sender_address(self) -> str:
        return self._sender

    def fail_next(self, method: str, error: Exception, times: int = 1) -> None:
        """Make the next `times` calls of `method` raise `error`."""
        self._failures[method].extend([error] * times)

    def _maybe_fail(self, method: str) -> None:
        if self._failures[method]:
            raise self._failures[method].pop(0)

    def _escrow(self, address: str) -> EscrowContract:
        try:
            return self.chain.get_escrow(address)
        except KeyError as e:
            raise ContractRevert(str(e)) from e

    async def get_block_number(self) -> int:
        self._maybe_fail("get_block_number")
        return self.chain.block_number

    async def get_logs(
        self,
        address: str,
        topics: list[str],
        from_block: int,
        to_block: int,
    ) -> list[LogEntry]:
        self._maybe_fail("get_logs")

        def matches(log: LogEntry) -> bool:
            if log.address.lower() != address.lower():
                return False
            if not from_block <= log.block_number <= to_block:
                return False
            for position, topic in enumerate(topics):
                if topic is None:
                    continue
                if position >= len(log.topics) or log.topics[position].lower() != topic.lower():
                    return False
            return True

        return [log for log in self.chain.logs if matches(log)]

    async def call(self, to: str, data: str) -> str:
        self._maybe_fail("call")
        escrow = self._escrow(to)
        name, args = abi.decode_call(data)
        if name == "getBalance":
            return abi.encode_result("getBalance", escrow.get_balance())

        try:
            self.chain.simulate(self._sender, to, name, *args)
        except EscrowError as e:
            raise ContractRevert(f"execution reverted: {e.name}", reason=e.name) from e
        return "0x"

    async def estimate_gas(self, to: str, data: str) -> int:
        self._maybe_fail("estimate_gas")
        self._escrow(to)
        name, args = abi.decode_call(data)
        try:
            self.chain.simulate(self._sender, to, name, *args)
        except EscrowError as e:
            raise ContractRevert(f"execution reverted: {e.name}", reason=e.name) from e
        return GAS_COSTS[name]

    async def send_transaction(self, to: str, data: str, gas_limit: int) -> str:
        self._maybe_fail("send_transaction")
        self._escrow(to)
        name, args = abi.decode_call(data)
        receipt = self.chain.execute(self._sender, to, name, *args, gas_limit=gas_limit)
        self.sent_transactions.append((name, receipt.transaction_hash, gas_limit))
        return receipt.transaction_hash

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        self._maybe_fail("wait_for_receipt")
        receipt = self.chain.receipts.get(tx_hash)
        if receipt is None:
            raise TransientChainError(f"Unknown transaction {tx_hash} on {self.network}")
        return receipt
