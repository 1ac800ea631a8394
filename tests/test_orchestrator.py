"""Tests for the forwarder service polling cycle, status and sweeps."""

import asyncio

from usdc_forwarder.chain.base import NonceConflict, TransientChainError
from usdc_forwarder.networks import NETWORKS
from usdc_forwarder.watcher.dispatcher import ForwardStatus
from usdc_forwarder.watcher.orchestrator import ForwarderService

from conftest import STRANGER, build_network, make_settings

BASE = "baseSepolia"


def make_service(nets, db=None, **overrides) -> ForwarderService:
    address = next(iter(nets.values())).escrow.address
    settings = make_settings(address, **overrides)
    return ForwarderService(
        settings,
        {key: net.profile for key, net in nets.items()},
        {key: net.client for key, net in nets.items()},
        db=db,
    )


def forward_count(net) -> int:
    return sum(1 for name, _, _ in net.client.sent_transactions if name == "forwardUSDC")


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestPollingCycle:
    """Tests for a single network cycle."""

    async def test_detect_forward_and_advance(self, network):
        """Deposit at N, scan [N-5, N+2], forward, then [N+3, N+10] finds nothing."""
        service = make_service({BASE: network}, lookback_blocks=5)
        await service.initialize()

        n = network.deposit(1000).block_number
        network.chain.mine(2)

        first = await service.check_for_new_deposits(BASE)

        assert (first.from_block, first.to_block) == (n - 5, n + 2)
        assert first.events_found == 1
        assert first.forwarded == 1
        assert first.cursor_advanced
        assert service.cursors.get(BASE) == n + 2
        assert network.recipient_balance == 1000

        network.chain.mine(n + 10 - network.chain.block_number)
        second = await service.check_for_new_deposits(BASE)

        assert (second.from_block, second.to_block) == (n + 3, n + 10)
        assert second.events_found == 0
        assert network.escrow.get_balance() == 0

    async def test_four_deposits_forwarded(self, network):
        service = make_service({BASE: network})
        await service.initialize()

        for _ in range(4):
            network.deposit(250)

        result = await service.check_for_new_deposits(BASE)

        assert result.forwarded == 4
        assert network.recipient_balance == 1000
        assert network.escrow.get_balance() == 0
        assert len(service.dedup) == 4

    async def test_same_deposit_forwarded_once(self, network):
        """Re-scanning an already forwarded deposit does not dispatch again."""
        service = make_service({BASE: network})
        await service.initialize()
        start = service.cursors.get(BASE)

        network.deposit(500)
        await service.check_for_new_deposits(BASE)
        service.cursors.initialize(BASE, network.chain.block_number, persisted=start)
        network.deposit(500)

        result = await service.check_for_new_deposits(BASE)

        assert result.events_found == 2
        assert result.duplicates == 1
        assert result.forwarded == 1
        assert forward_count(network) == 2
        assert network.recipient_balance == 1000

    async def test_nothing_new(self, network):
        service = make_service({BASE: network}, lookback_blocks=0)
        await service.initialize()

        result = await service.check_for_new_deposits(BASE)

        assert not result.scanned
        assert result.error is None

    async def test_head_failure_holds_cursor(self, network):
        service = make_service({BASE: network})
        await service.initialize()
        before = service.cursors.get(BASE)
        network.deposit(100)
        network.client.fail_next("get_block_number", TransientChainError("connection refused"))

        result = await service.check_for_new_deposits(BASE)

        assert result.error == "connection refused"
        assert service.cursors.get(BASE) == before
        assert network.escrow.get_balance() == 100

    async def test_logs_failure_holds_cursor(self, network):
        service = make_service({BASE: network})
        await service.initialize()
        before = service.cursors.get(BASE)
        network.deposit(100)
        network.client.fail_next("get_logs", TransientChainError("timeout"))

        result = await service.check_for_new_deposits(BASE)

        assert not result.cursor_advanced
        assert service.cursors.get(BASE) == before

        retry = await service.check_for_new_deposits(BASE)
        assert retry.forwarded == 1
        assert retry.cursor_advanced

    async def test_transient_forward_failure_retried_next_cycle(self, network):
        """A failed forward holds the cursor so the same range is retried."""
        service = make_service({BASE: network})
        await service.initialize()
        before = service.cursors.get(BASE)
        network.deposit(100)
        network.client.fail_next("send_transaction", TransientChainError("timeout"))

        failed = await service.check_for_new_deposits(BASE)

        assert failed.failed == 1
        assert not failed.cursor_advanced
        assert service.cursors.get(BASE) == before
        assert len(service.dedup) == 0

        retry = await service.check_for_new_deposits(BASE)

        assert retry.forwarded == 1
        assert retry.cursor_advanced
        assert network.recipient_balance == 100

    async def test_nonce_conflict_retried_next_cycle(self, network):
        """A deposit whose forward hit a nonce conflict is dispatched again."""
        service = make_service({BASE: network})
        await service.initialize()
        before = service.cursors.get(BASE)
        network.deposit(400)
        network.client.fail_next("send_transaction", NonceConflict("nonce too low"))

        first = await service.check_for_new_deposits(BASE)

        assert first.failed == 1
        assert first.rejected == 0
        assert not first.cursor_advanced
        assert service.cursors.get(BASE) == before

        second = await service.check_for_new_deposits(BASE)

        assert second.events_found == 1
        assert second.forwarded == 1
        assert second.cursor_advanced
        assert network.escrow.get_balance() == 0
        assert network.recipient_balance == 400

    async def test_insufficient_balance_left_for_sweep(self, network):
        """An underfunded forward is not marked; the sweep collects what is left."""
        service = make_service({BASE: network})
        await service.initialize()
        network.deposit(100)
        network.chain.execute(STRANGER, network.escrow.address, "forwardUSDC", 60)

        result = await service.check_for_new_deposits(BASE)

        assert result.insufficient == 1
        assert result.cursor_advanced
        assert len(service.dedup) == 0

        swept = await service.sweep(BASE)

        assert swept.status == ForwardStatus.FORWARDED
        assert swept.amount == 40
        assert network.recipient_balance == 100

    async def test_network_failure_is_isolated(self, networks):
        service = make_service(networks)
        await service.initialize()
        for net in networks.values():
            net.deposit(1000)
        networks["arbitrumSepolia"].client.fail_next(
            "get_block_number", TransientChainError("down")
        )

        results = {key: await service.check_for_new_deposits(key) for key in networks}

        assert results["arbitrumSepolia"].error == "down"
        assert results["optimismSepolia"].forwarded == 1
        assert results["baseSepolia"].forwarded == 1
        assert networks["arbitrumSepolia"].escrow.get_balance() == 1000

    async def test_lazy_initialization_after_head_failure(self, network):
        network.client.fail_next("get_block_number", TransientChainError("down"))
        service = make_service({BASE: network})
        await service.initialize()

        assert service.cursors.get(BASE) is None

        network.deposit(100)
        result = await service.check_for_new_deposits(BASE)

        assert result.forwarded == 1


class TestStartup:
    """Tests for initialization, sweeps and the run loop."""

    async def test_configures_token_on_startup(self):
        fresh = build_network(NETWORKS[BASE], configure_token=False)
        service = make_service({BASE: fresh}, configure_token_on_startup=True)

        await service.initialize()

        assert fresh.escrow.token_address == fresh.token.address

    async def test_restart_sweeps_leftover_balance(self, network):
        """Funds deposited outside the lookback window are swept within one status cycle."""
        network.deposit(750)
        network.chain.mine(500)

        service = make_service({BASE: network})
        await service.initialize()
        result = await service.check_for_new_deposits(BASE)
        assert result.events_found == 0
        assert network.escrow.get_balance() == 750

        status = await service.report_status()

        assert status.networks[BASE]["balance"] == 750
        assert network.escrow.get_balance() == 0
        assert network.recipient_balance == 750

    async def test_run_and_stop(self, networks):
        service = make_service(networks)
        for net in networks.values():
            net.deposit(1000)

        task = asyncio.create_task(service.run())
        await wait_until(lambda: all(n.recipient_balance == 1000 for n in networks.values()))
        assert service.is_running

        networks[BASE].deposit(2000)
        await wait_until(lambda: networks[BASE].recipient_balance == 3000)

        service.stop()
        await asyncio.wait_for(task, timeout=2)

        assert not service.is_running
        assert all(n.escrow.get_balance() == 0 for n in networks.values())

    async def test_loop_survives_unexpected_error(self, network, monkeypatch):
        service = make_service({BASE: network})
        await service.initialize()
        calls = []
        original = service.check_for_new_deposits

        async def flaky(key):
            calls.append(key)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return await original(key)

        monkeypatch.setattr(service, "check_for_new_deposits", flaky)

        task = asyncio.create_task(service.run())
        await wait_until(lambda: len(calls) >= 3)
        service.stop()
        await asyncio.wait_for(task, timeout=2)

        assert calls[:3] == [BASE, BASE, BASE]


class TestStatus:
    """Tests for the aggregate status report."""

    async def test_status_reports_per_network(self, networks):
        service = make_service(networks)
        await service.initialize()
        networks[BASE].deposit(1_500_000)
        await service.check_for_new_deposits(BASE)

        status = service.get_status().to_dict()

        assert status["running"] is False
        assert status["initialized"] is True
        assert status["processed_count"] == 1
        base = status["networks"][BASE]
        assert base["name"] == "Base Sepolia"
        assert base["chain_id"] == 84532
        assert base["lag"] == 0
        assert base["forwarded_count"] == 1
        assert base["forwarded_usdc"] == "1.5"
        assert status["networks"]["arbitrumSepolia"]["forwarded_count"] == 0

    async def test_sweep_all_skips_empty_networks(self, networks):
        service = make_service(networks)
        networks[BASE].deposit(10)

        results = await service.sweep_all()

        assert results[BASE].status == ForwardStatus.FORWARDED
        assert results["arbitrumSepolia"].status == ForwardStatus.NOTHING_TO_FORWARD

    async def test_undeployed_escrow_does_not_block_other_sweeps(self, networks, monkeypatch):
        """An empty getBalance result on one network leaves the others' sweeps running."""
        arbitrum = networks["arbitrumSepolia"]
        networks[BASE].deposit(750)
        networks[BASE].chain.mine(500)
        service = make_service(networks)
        await service.initialize()

        async def empty_call(to, data):
            return "0x"

        monkeypatch.setattr(arbitrum.client, "call", empty_call)

        status = await service.report_status()

        assert "Undecodable getBalance result" in status.networks["arbitrumSepolia"]["last_error"]
        assert status.networks["arbitrumSepolia"]["balance"] is None
        assert networks[BASE].escrow.get_balance() == 0
        assert networks[BASE].recipient_balance == 750

    async def test_unexpected_refresh_error_still_sweeps(self, networks, monkeypatch):
        service = make_service(networks)
        await service.initialize()
        networks[BASE].deposit(300)
        original = service.refresh_network

        async def broken(key):
            if key == "optimismSepolia":
                raise RuntimeError("refresh exploded")
            await original(key)

        monkeypatch.setattr(service, "refresh_network", broken)

        status = await service.report_status()

        assert status.networks["optimismSepolia"]["last_error"] == "refresh exploded"
        assert networks[BASE].recipient_balance == 300


async def test_stop_before_first_cycle(network):
    service = make_service({BASE: network}, initial_jitter=10)

    task = asyncio.create_task(service.run())
    await wait_until(lambda: service.is_running)
    service.stop()

    await asyncio.wait_for(task, timeout=1)
    assert forward_count(network) == 0
