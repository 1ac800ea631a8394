"""Tests for the JSON-RPC chain client against a mocked transport."""

import json

import httpx
import pytest
from eth_account import Account
from web3 import Web3

from usdc_forwarder.chain.base import (
    ChainError,
    ContractRevert,
    NonceConflict,
    TransactionRejected,
    TransientChainError,
)
from usdc_forwarder.chain.rpc import JsonRpcChainClient
from usdc_forwarder.contract import abi
from usdc_forwarder.contract.client import EscrowClient

from conftest import DEPOSITOR, OWNER, OWNER_KEY

ESCROW = Web3.to_checksum_address("0x" + "ee" * 20)


def make_client(handler, **kwargs) -> JsonRpcChainClient:
    return JsonRpcChainClient(
        network="baseSepolia",
        chain_id=84532,
        rpc_url="https://rpc.test",
        private_key=OWNER_KEY,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def rpc_result(result):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})
    return handler


def rpc_error(message, data=None, code=-32000):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        error = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": error})
    return handler


class TestRequests:
    """Tests for request encoding and result parsing."""

    @pytest.mark.asyncio
    async def test_block_number(self):
        client = make_client(rpc_result("0x10d4f"))

        assert await client.get_block_number() == 68943
        await client.close()

    @pytest.mark.asyncio
    async def test_get_logs_params_and_parsing(self):
        seen = {}
        topics, data = abi.encode_event(
            "USDCDeposited", {"sender": DEPOSITOR, "amount": 5_000_000, "timestamp": 1_700_000_000}
        )

        def handler(request):
            body = json.loads(request.content)
            seen.update(body)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": [{
                "address": ESCROW,
                "topics": topics,
                "data": data,
                "blockNumber": "0x64",
                "transactionHash": "0x" + "aa" * 32,
                "logIndex": "0x2",
                "removed": False,
            }]})

        client = make_client(handler)
        logs = await EscrowClient(client, ESCROW).get_deposit_logs(100, 200)

        assert seen["method"] == "eth_getLogs"
        assert seen["params"][0]["fromBlock"] == "0x64"
        assert seen["params"][0]["toBlock"] == "0xc8"
        assert seen["params"][0]["topics"] == [abi.DEPOSIT_TOPIC]
        assert logs[0].block_number == 100
        assert logs[0].log_index == 2
        assert abi.decode_deposit_log(logs[0].topics, logs[0].data) == (
            DEPOSITOR, 5_000_000, 1_700_000_000
        )

    @pytest.mark.asyncio
    async def test_get_balance_decodes_result(self):
        client = make_client(rpc_result(abi.encode_result("getBalance", 42_000_000)))

        assert await EscrowClient(client, ESCROW).get_balance() == 42_000_000

    @pytest.mark.asyncio
    async def test_send_transaction_signs_for_chain(self):
        """Forwards are signed locally and broadcast raw."""
        calls = []

        def handler(request):
            body = json.loads(request.content)
            calls.append(body)
            results = {
                "eth_getTransactionCount": "0x7",
                "eth_gasPrice": "0x3b9aca00",
                "eth_sendRawTransaction": "0x" + "cd" * 32,
            }
            return httpx.Response(200, json={
                "jsonrpc": "2.0", "id": body["id"], "result": results[body["method"]],
            })

        client = make_client(handler)
        tx_hash = await client.send_transaction(ESCROW, abi.encode_call("forwardUSDC", 10), 64800)

        assert tx_hash == "0x" + "cd" * 32
        assert client.sender_address == OWNER == Account.from_key(OWNER_KEY).address
        raw = calls[-1]["params"][0]
        assert calls[-1]["method"] == "eth_sendRawTransaction"
        assert raw.startswith("0x")
        assert calls[0]["params"] == [OWNER, "pending"]

    @pytest.mark.asyncio
    async def test_receipt_parsing(self):
        client = make_client(rpc_result({
            "transactionHash": "0x" + "cd" * 32,
            "blockNumber": "0x10",
            "status": "0x1",
            "gasUsed": "0xd2f0",
            "logs": [],
        }))

        receipt = await client.wait_for_receipt("0x" + "cd" * 32)

        assert receipt.succeeded
        assert receipt.block_number == 16
        assert receipt.gas_used == 54000

    @pytest.mark.asyncio
    async def test_receipt_timeout_is_transient(self):
        client = make_client(rpc_result(None), receipt_timeout=0, receipt_poll_interval=0)

        with pytest.raises(TransientChainError):
            await client.wait_for_receipt("0x" + "cd" * 32)


class TestErrorMapping:
    """Tests for mapping transport and node errors onto the chain taxonomy."""

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(TransientChainError):
            await make_client(handler).get_block_number()

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out")

        with pytest.raises(TransientChainError):
            await make_client(handler).get_block_number()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 502, 503])
    async def test_overload_statuses_are_transient(self, status):
        client = make_client(lambda request: httpx.Response(status))

        with pytest.raises(TransientChainError):
            await client.get_block_number()

    @pytest.mark.asyncio
    async def test_client_error_status(self):
        client = make_client(lambda request: httpx.Response(403))

        with pytest.raises(ChainError) as exc_info:
            await client.get_block_number()
        assert not isinstance(exc_info.value, TransientChainError)

    @pytest.mark.asyncio
    async def test_invalid_json_is_transient(self):
        client = make_client(lambda request: httpx.Response(200, content=b"<html>"))

        with pytest.raises(TransientChainError):
            await client.get_block_number()

    @pytest.mark.asyncio
    async def test_custom_error_revert_decoded(self):
        client = make_client(rpc_error(
            "execution reverted", data=abi.encode_error("InsufficientBalance"), code=3
        ))

        with pytest.raises(ContractRevert) as exc_info:
            await client.estimate_gas(ESCROW, abi.encode_call("forwardUSDC", 1))
        assert exc_info.value.reason == "InsufficientBalance"

    @pytest.mark.asyncio
    async def test_nested_revert_data(self):
        client = make_client(rpc_error(
            "execution reverted", data={"data": abi.encode_error("AlreadySet")}
        ))

        with pytest.raises(ContractRevert) as exc_info:
            await client.call(ESCROW, abi.encode_call("getBalance"))
        assert exc_info.value.reason == "AlreadySet"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", ["nonce too low", "replacement transaction underpriced"])
    async def test_nonce_errors(self, message):
        client = make_client(rpc_error(message))

        with pytest.raises(NonceConflict):
            await client.get_block_number()

    @pytest.mark.asyncio
    async def test_insufficient_funds_rejected(self):
        client = make_client(rpc_error("insufficient funds for gas * price + value"))

        with pytest.raises(TransactionRejected) as exc_info:
            await client.get_block_number()
        assert not isinstance(exc_info.value, (ContractRevert, NonceConflict))

    @pytest.mark.asyncio
    async def test_unknown_node_error_is_transient(self):
        client = make_client(rpc_error("header not found"))

        with pytest.raises(TransientChainError):
            await client.get_block_number()
