"""Tests for the forward dispatcher."""

import asyncio

import pytest

from usdc_forwarder.chain.base import NonceConflict, TransientChainError
from usdc_forwarder.chain.simulated import GAS_COSTS
from usdc_forwarder.contract.client import EscrowClient
from usdc_forwarder.networks import NETWORKS
from usdc_forwarder.utils.locks import get_network_lock
from usdc_forwarder.watcher.dispatcher import ForwardDispatcher, ForwardStatus

from conftest import OWNER, RECIPIENT, build_network


@pytest.fixture
def dispatcher(network):
    return ForwardDispatcher(
        EscrowClient(network.client, network.escrow.address),
        gas_margin_percent=20,
        fallback_gas_limit=150000,
        profile=network.profile,
    )


class TestForward:
    """Tests for deposit-triggered forwards."""

    async def test_forward_success(self, network, dispatcher):
        network.deposit(1_000_000)

        result = await dispatcher.forward(1_000_000, reference="0xdeposit")

        assert result.status == ForwardStatus.FORWARDED
        assert result.success
        assert result.tx_hash is not None
        assert result.balance == 0
        assert network.escrow.get_balance() == 0
        assert network.recipient_balance == 1_000_000

    async def test_gas_margin_applied(self, network, dispatcher):
        network.deposit(500)

        result = await dispatcher.forward(500)

        expected = GAS_COSTS["forwardUSDC"] * 120 // 100
        assert result.gas_limit == expected
        assert network.client.sent_transactions[-1] == ("forwardUSDC", result.tx_hash, expected)

    async def test_estimation_failure_uses_fallback(self, network, dispatcher):
        """Gas estimation failure must not block forwarding."""
        network.deposit(500)
        network.client.fail_next("estimate_gas", TransientChainError("node error"))

        result = await dispatcher.forward(500)

        assert result.success
        assert result.gas_limit == 150000

    async def test_insufficient_balance_does_not_submit(self, network, dispatcher):
        network.deposit(100)

        result = await dispatcher.forward(101)

        assert result.status == ForwardStatus.INSUFFICIENT_BALANCE
        assert result.balance == 100
        assert not result.retryable
        assert network.client.sent_transactions == []
        assert network.escrow.get_balance() == 100

    async def test_balance_check_failure_is_transient(self, network, dispatcher):
        network.deposit(100)
        network.client.fail_next("call", TransientChainError("connection reset"))

        result = await dispatcher.forward(100)

        assert result.status == ForwardStatus.FAILED
        assert result.retryable
        assert network.escrow.get_balance() == 100

    async def test_submit_network_failure(self, network, dispatcher):
        network.deposit(100)
        network.client.fail_next("send_transaction", TransientChainError("timeout"))

        result = await dispatcher.forward(100)

        assert result.status == ForwardStatus.FAILED
        assert "timeout" in result.error
        assert network.escrow.get_balance() == 100

    async def test_nonce_conflict_is_retryable(self, network, dispatcher):
        """A nonce conflict leaves the deposit eligible for the next cycle."""
        network.deposit(100)
        network.client.fail_next("send_transaction", NonceConflict("nonce too low"))

        result = await dispatcher.forward(100)

        assert result.status == ForwardStatus.FAILED
        assert result.retryable
        assert result.message == "Nonce conflict"
        assert network.escrow.get_balance() == 100

    async def test_undecodable_balance_fails(self, network, dispatcher, monkeypatch):
        network.deposit(100)

        async def empty_call(to, data):
            return "0x"

        monkeypatch.setattr(network.client, "call", empty_call)

        result = await dispatcher.forward(100)

        assert result.status == ForwardStatus.FAILED
        assert "Undecodable getBalance result" in result.error

    async def test_reverted_receipt_rejected(self, network, dispatcher):
        """A mined-but-reverted forward reports REJECTED with the reason."""
        network.deposit(100)
        dispatcher.fallback_gas_limit = 1000
        network.client.fail_next("estimate_gas", TransientChainError("node error"))

        result = await dispatcher.forward(100)

        assert result.status == ForwardStatus.REJECTED
        assert result.error == "out of gas"
        assert network.escrow.get_balance() == 100

    async def test_receipt_wait_failure(self, network, dispatcher):
        network.deposit(100)
        network.client.fail_next("wait_for_receipt", TransientChainError("receipt timeout"))

        result = await dispatcher.forward(100)

        assert result.status == ForwardStatus.FAILED


class TestSweep:
    """Tests for whole-balance sweeps."""

    async def test_sweep_forwards_whole_balance(self, network, dispatcher):
        network.deposit(300)
        network.deposit(700)

        result = await dispatcher.sweep()

        assert result.status == ForwardStatus.FORWARDED
        assert result.amount == 1000
        assert network.recipient_balance == 1000
        assert network.escrow.get_balance() == 0

    async def test_sweep_empty_escrow(self, network, dispatcher):
        result = await dispatcher.sweep()

        assert result.status == ForwardStatus.NOTHING_TO_FORWARD
        assert network.client.sent_transactions == []

    async def test_sweep_waits_for_network_lock(self, network, dispatcher):
        """Sweep and forward never have two transactions in flight on one network."""
        network.deposit(100)
        lock = get_network_lock(network.profile.key)

        await lock.acquire()
        task = asyncio.create_task(dispatcher.sweep())
        await asyncio.sleep(0)
        assert not task.done()
        assert network.client.sent_transactions == []

        lock.release()
        result = await task
        assert result.success

    async def test_sweep_gives_up_when_network_busy(self, network, dispatcher):
        """A sweep skips its turn rather than queueing behind a stuck forward."""
        network.deposit(100)
        dispatcher.sweep_lock_timeout = 0.05
        lock = get_network_lock(network.profile.key)

        await lock.acquire()
        try:
            result = await dispatcher.sweep()
        finally:
            lock.release()

        assert result.status == ForwardStatus.FAILED
        assert result.message == "Network busy"
        assert network.client.sent_transactions == []
        assert network.escrow.get_balance() == 100


class TestConfigureToken:
    """Tests for startup token configuration."""

    async def test_configures_fresh_escrow(self):
        fresh = build_network(NETWORKS["arbitrumSepolia"], configure_token=False)
        dispatcher = ForwardDispatcher(EscrowClient(fresh.client, fresh.escrow.address))

        assert await dispatcher.configure_token(fresh.token.address) is True
        assert fresh.escrow.token_address == fresh.token.address

    async def test_already_configured_is_not_an_error(self, network, dispatcher):
        assert await dispatcher.configure_token(network.token.address) is False
        assert network.escrow.token_address == network.token.address
        assert network.escrow.recipient == RECIPIENT
        assert network.escrow.owner == OWNER
