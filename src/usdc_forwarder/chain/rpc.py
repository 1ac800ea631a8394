"""EVM JSON-RPC chain client.

Talks plain JSON-RPC over httpx and signs legacy transactions locally with
eth_account. One client per network; the signing key is shared across
networks.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx
from eth_account import Account
from web3 import Web3

from usdc_forwarder.chain.base import (
    ChainClient,
    ChainError,
    ContractRevert,
    LogEntry,
    NonceConflict,
    TransactionRejected,
    TransientChainError,
    TxReceipt,
)
from usdc_forwarder.contract.abi import decode_revert

logger = logging.getLogger(__name__)

NONCE_ERRORS = (
    "nonce too low",
    "nonce too high",
    "replacement transaction underpriced",
    "already known",
    "known transaction",
)


def _to_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


def _parse_log(raw: dict) -> LogEntry:
    return LogEntry(
        address=raw.get("address", ""),
        topics=list(raw.get("topics", [])),
        data=raw.get("data", "0x"),
        block_number=_to_int(raw.get("blockNumber")),
        transaction_hash=raw.get("transactionHash", ""),
        log_index=_to_int(raw.get("logIndex")),
        removed=bool(raw.get("removed", False)),
    )


class JsonRpcChainClient(ChainClient):
    """Chain client backed by a single JSON-RPC endpoint."""

    def __init__(
        self,
        network: str,
        chain_id: int,
        rpc_url: str,
        private_key: str,
        timeout: float = 30.0,
        receipt_timeout: float = 120.0,
        receipt_poll_interval: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            network: Network profile key
            chain_id: EIP-155 chain id
            rpc_url: JSON-RPC endpoint
            private_key: Hex private key used to sign transactions
            timeout: Per-request HTTP timeout in seconds
            receipt_timeout: How long to wait for a transaction to be mined
            receipt_poll_interval: Seconds between receipt polls
            transport: Optional httpx transport (tests)
        """
        super().__init__(network, chain_id)
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.receipt_timeout = receipt_timeout
        self.receipt_poll_interval = receipt_poll_interval
        self._account = Account.from_key(private_key)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._request_id = 0

    @property
    def sender_address(self) -> str:
        return self._account.address

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        """Perform one JSON-RPC request and return its result."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._request_id,
        }

        try:
            response = await self._get_client().post(self.rpc_url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientChainError(f"{method} timed out on {self.network}: {e}") from e
        except httpx.TransportError as e:
            raise TransientChainError(f"{method} failed on {self.network}: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientChainError(
                f"{method} on {self.network} returned HTTP {response.status_code}"
            )
        if response.status_code != 200:
            raise ChainError(f"{method} on {self.network} returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise TransientChainError(f"{method} on {self.network} returned invalid JSON") from e

        if data.get("error"):
            raise self._classify_error(method, data["error"])

        return data.get("result")

    def _classify_error(self, method: str, error: dict) -> ChainError:
        """Map a JSON-RPC error object onto the chain error taxonomy."""
        message = str(error.get("message", ""))
        lowered = message.lower()
        revert_data = error.get("data")
        if isinstance(revert_data, dict):
            revert_data = revert_data.get("data")

        text = f"{method} on {self.network}: {message}"
        reason = decode_revert(revert_data) if isinstance(revert_data, str) else None

        if reason or "revert" in lowered:
            return ContractRevert(text, reason=reason or message)
        if any(marker in lowered for marker in NONCE_ERRORS):
            return NonceConflict(text)
        if "insufficient funds" in lowered:
            return TransactionRejected(text)
        return TransientChainError(text)

    async def get_block_number(self) -> int:
        return _to_int(await self._rpc("eth_blockNumber", []))

    async def get_logs(
        self,
        address: str,
        topics: list[str],
        from_block: int,
        to_block: int,
    ) -> list[LogEntry]:
        result = await self._rpc(
            "eth_getLogs",
            [{
                "address": address,
                "topics": topics,
                "fromBlock": hex(from_block),
                "toBlock": hex(to_block),
            }],
        )
        return [_parse_log(raw) for raw in result or []]

    async def call(self, to: str, data: str) -> str:
        return await self._rpc("eth_call", [{"to": to, "data": data}, "latest"])

    async def estimate_gas(self, to: str, data: str) -> int:
        result = await self._rpc(
            "eth_estimateGas",
            [{"from": self.sender_address, "to": to, "data": data}],
        )
        return _to_int(result)

    async def _get_nonce(self) -> int:
        return _to_int(
            await self._rpc("eth_getTransactionCount", [self.sender_address, "pending"])
        )

    async def _get_gas_price(self) -> int:
        return _to_int(await self._rpc("eth_gasPrice", []))

    async def send_transaction(self, to: str, data: str, gas_limit: int) -> str:
        nonce = await self._get_nonce()
        gas_price = await self._get_gas_price()

        tx = {
            "nonce": nonce,
            "gasPrice": gas_price,
            "gas": gas_limit,
            "to": Web3.to_checksum_address(to),
            "value": 0,
            "data": data,
            "chainId": self.chain_id,
        }
        signed_tx = self._account.sign_transaction(tx)
        raw_tx = signed_tx.raw_transaction.hex()
        if not raw_tx.startswith("0x"):
            raw_tx = "0x" + raw_tx

        logger.debug(
            f"Broadcasting tx on {self.network}: nonce={nonce} gas={gas_limit} "
            f"gasPrice={gas_price}"
        )
        return await self._rpc("eth_sendRawTransaction", [raw_tx])

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.receipt_timeout

        while True:
            result = await self._rpc("eth_getTransactionReceipt", [tx_hash])
            if result:
                return TxReceipt(
                    transaction_hash=result.get("transactionHash", tx_hash),
                    block_number=_to_int(result.get("blockNumber")),
                    status=_to_int(result.get("status")),
                    gas_used=_to_int(result.get("gasUsed")),
                    logs=[_parse_log(raw) for raw in result.get("logs", [])],
                )

            if loop.time() >= deadline:
                raise TransientChainError(
                    f"Transaction {tx_hash} not mined on {self.network} "
                    f"within {self.receipt_timeout}s"
                )
            await asyncio.sleep(self.receipt_poll_interval)
