"""Forwarder service: one polling loop per network plus a status/sweep loop.

Each network cycle:
1. Fetch the chain head
2. Ask the cursor tracker for the next block range
3. Scan the range for deposit events
4. Forward every deposit not already in the dedup ledger
5. Checkpoint forwarded deposits and the new cursor, then advance

The cursor stays put when the head or logs query fails, or when any forward
ends in a transient failure or nonce conflict; the same range is scanned
again next cycle and the dedup ledger keeps already-forwarded deposits from
going out twice.
"""

import asyncio
import logging
import random
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from usdc_forwarder.chain.base import ChainClient, ChainError
from usdc_forwarder.config import Settings
from usdc_forwarder.contract.abi import format_usdc
from usdc_forwarder.contract.client import EscrowClient
from usdc_forwarder.contract.escrow import EscrowContract
from usdc_forwarder.ledger.models import ForwardKind
from usdc_forwarder.ledger.repository import LedgerRepository
from usdc_forwarder.networks import NetworkProfile
from usdc_forwarder.watcher.cursor import BlockCursorTracker
from usdc_forwarder.watcher.dedup import DedupLedger
from usdc_forwarder.watcher.dispatcher import ForwardDispatcher, ForwardResult, ForwardStatus
from usdc_forwarder.watcher.scanner import DepositEvent, DepositEventScanner

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


@dataclass
class CycleResult:
    """Outcome of one polling cycle on one network."""

    network: str
    head: Optional[int] = None
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    events_found: int = 0
    forwarded: int = 0
    duplicates: int = 0
    insufficient: int = 0
    rejected: int = 0
    failed: int = 0
    decode_errors: int = 0
    cursor_advanced: bool = False
    error: Optional[str] = None

    @property
    def scanned(self) -> bool:
        return self.from_block is not None


@dataclass
class NetworkState:
    """Last observed figures for one network, for status reports."""

    head: Optional[int] = None
    balance: Optional[int] = None
    forwarded_count: int = 0
    forwarded_amount: int = 0
    last_cycle_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass
class ServiceStatus:
    """Aggregate status across all networks."""

    running: bool
    initialized: bool
    processed_count: int
    networks: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "initialized": self.initialized,
            "processed_count": self.processed_count,
            "networks": self.networks,
        }


class ForwarderService:
    """Runs deposit detection and forwarding for every enabled network."""

    def __init__(
        self,
        settings: Settings,
        profiles: dict[str, NetworkProfile],
        clients: dict[str, ChainClient],
        db: Optional[SessionFactory] = None,
    ):
        """Initialize service.

        Args:
            settings: Application settings
            profiles: Network key -> profile
            clients: Network key -> chain client
            db: Session context manager factory for durable state
                (ignored unless settings.persist_state)
        """
        self.settings = settings
        self.profiles = profiles
        self.clients = clients
        self._db = db if settings.persist_state else None

        self.cursors = BlockCursorTracker(
            lookback_blocks=settings.lookback_blocks,
            max_blocks_per_scan=settings.max_blocks_per_scan,
            confirmation_blocks=settings.confirmation_blocks,
        )
        self.dedup = DedupLedger()

        self.escrows: dict[str, EscrowClient] = {}
        self.scanners: dict[str, DepositEventScanner] = {}
        self.dispatchers: dict[str, ForwardDispatcher] = {}
        self.state: dict[str, NetworkState] = {}
        self._pending: dict[str, list[tuple[DepositEvent, ForwardResult]]] = {}
        self._persisted_cursors: dict[str, int] = {}

        for key, profile in profiles.items():
            escrow = EscrowClient(clients[key], settings.contract_address)
            self.escrows[key] = escrow
            self.scanners[key] = DepositEventScanner(escrow)
            self.dispatchers[key] = ForwardDispatcher(
                escrow,
                gas_margin_percent=settings.gas_margin_percent,
                fallback_gas_limit=settings.fallback_gas_limit,
                profile=profile,
                sweep_lock_timeout=settings.sweep_lock_timeout,
            )
            self.state[key] = NetworkState()
            self._pending[key] = []

        self._initialized = False
        self._running = False
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def persistence_enabled(self) -> bool:
        return self._db is not None

    async def initialize(self) -> None:
        """Load durable state, place cursors and configure the token.

        A network whose head cannot be fetched is initialized lazily by its
        first successful cycle.

        Raises:
            SQLAlchemyError: If durable state is enabled but cannot be loaded
        """
        if self._db is not None:
            async with self._db() as session:
                repo = LedgerRepository(session)
                self.dedup.update(await repo.get_processed_hashes())
                self._persisted_cursors = await repo.get_all_cursors()
            logger.info(
                f"Loaded {len(self.dedup)} processed deposit(s) and "
                f"{len(self._persisted_cursors)} cursor(s) from the ledger"
            )

        if EscrowContract.forward_requires_owner:
            logger.info("Escrow forwarding is owner-only; the signing key must own the escrow")
        else:
            logger.info("Escrow forwarding is permissionless; funds can only reach the recipient")

        for key, profile in self.profiles.items():
            try:
                head = await self.clients[key].get_block_number()
            except ChainError as e:
                logger.error(f"Could not fetch head for {profile.name}, will retry: {e}")
                self.state[key].last_error = str(e)
                continue
            self.state[key].head = head
            self.cursors.initialize(key, head, self._persisted_cursors.get(key))

        if self.settings.configure_token_on_startup:
            for key, profile in self.profiles.items():
                await self.dispatchers[key].configure_token(
                    profile.usdc_address, self.settings.set_token_gas_limit
                )

        self._initialized = True
        logger.info(f"Forwarder initialized for {len(self.profiles)} network(s): {', '.join(self.profiles)}")

    async def check_for_new_deposits(self, network: str) -> CycleResult:
        """Run one polling cycle for a network."""
        result = CycleResult(network=network)
        state = self.state[network]
        state.last_cycle_at = datetime.now(timezone.utc)

        try:
            head = await self.clients[network].get_block_number()
        except ChainError as e:
            logger.error(f"Failed to fetch head on {network}: {e}")
            result.error = state.last_error = str(e)
            return result

        result.head = state.head = head
        if not self.cursors.is_initialized(network):
            self.cursors.initialize(network, head, self._persisted_cursors.get(network))

        block_range = self.cursors.next_range(network, head)
        if block_range is None:
            if self._pending[network]:
                await self._checkpoint(network, None)
            return result

        from_block, to_block = block_range
        result.from_block, result.to_block = from_block, to_block

        try:
            scan = await self.scanners[network].scan(from_block, to_block)
        except ChainError as e:
            logger.error(f"Scan of {network} blocks {from_block}-{to_block} failed: {e}")
            result.error = state.last_error = str(e)
            return result

        result.events_found = len(scan.events)
        result.decode_errors = scan.decode_errors

        for event in scan.events:
            if self.dedup.is_marked(event.transaction_hash):
                logger.debug(f"Skipping already forwarded deposit {event.transaction_hash}")
                result.duplicates += 1
                continue

            logger.info(
                f"Deposit of {format_usdc(event.amount)} USDC from {event.sender} "
                f"on {network} (tx {event.transaction_hash}, block {event.block_number})"
            )
            forward = await self.dispatchers[network].forward(
                event.amount, reference=event.transaction_hash
            )
            await self._record_forward(network, ForwardKind.DEPOSIT, forward, event)

            if forward.success:
                self.dedup.mark(event.transaction_hash)
                self._pending[network].append((event, forward))
                state.forwarded_count += 1
                state.forwarded_amount += forward.amount
                result.forwarded += 1
            elif forward.status == ForwardStatus.INSUFFICIENT_BALANCE:
                result.insufficient += 1
            elif forward.status == ForwardStatus.REJECTED:
                result.rejected += 1
            else:
                result.failed += 1

        if result.failed:
            logger.warning(
                f"{result.failed} forward(s) failed on {network}; "
                f"holding cursor at {self.cursors.get(network)}"
            )
            if self._pending[network]:
                await self._checkpoint(network, None)
            result.error = state.last_error = "forward failed"
            return result

        if await self._checkpoint(network, to_block):
            self.cursors.advance(network, to_block)
            result.cursor_advanced = True
            state.last_error = None
        else:
            result.error = state.last_error = "checkpoint failed"

        return result

    async def _checkpoint(self, network: str, to_block: Optional[int]) -> bool:
        """Persist forwarded deposits (and the cursor, if given) in one transaction."""
        pending = self._pending[network]
        if self._db is None:
            pending.clear()
            return True

        try:
            async with self._db() as session:
                repo = LedgerRepository(session)
                for event, forward in pending:
                    await repo.mark_deposit_processed(
                        network=network,
                        tx_hash=event.transaction_hash,
                        sender=event.sender,
                        amount=event.amount,
                        block_number=event.block_number,
                        forward_tx_hash=forward.tx_hash,
                    )
                if to_block is not None:
                    await repo.save_cursor(network, to_block)
        except SQLAlchemyError as e:
            logger.error(f"Checkpoint failed on {network}, holding cursor: {e}")
            return False

        pending.clear()
        return True

    async def _record_forward(
        self,
        network: str,
        kind: ForwardKind,
        forward: ForwardResult,
        event: Optional[DepositEvent] = None,
    ) -> None:
        if self._db is None or forward.status == ForwardStatus.NOTHING_TO_FORWARD:
            return
        try:
            async with self._db() as session:
                await LedgerRepository(session).record_forward(
                    network=network,
                    kind=kind,
                    status=forward.status.value,
                    amount=forward.amount,
                    deposit_tx_hash=event.transaction_hash if event else None,
                    tx_hash=forward.tx_hash,
                    gas_limit=forward.gas_limit,
                    gas_used=forward.gas_used,
                    error=forward.error,
                )
        except SQLAlchemyError as e:
            logger.warning(f"Could not write forward log on {network}: {e}")

    async def get_recent_forwards(
        self, network: Optional[str] = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        """Recent forward attempts from the durable log, newest first."""
        if self._db is None:
            return []
        async with self._db() as session:
            entries = await LedgerRepository(session).get_forward_log(network=network, limit=limit)
            return [
                {
                    "network": entry.network,
                    "kind": entry.kind,
                    "status": entry.status,
                    "amount": entry.amount,
                    "deposit_tx_hash": entry.deposit_tx_hash,
                    "tx_hash": entry.tx_hash,
                    "gas_used": entry.gas_used,
                    "error": entry.error,
                    "created_at": entry.created_at.isoformat() if entry.created_at else None,
                }
                for entry in entries
            ]

    async def sweep(self, network: str) -> ForwardResult:
        """Forward a network's whole escrow balance."""
        forward = await self.dispatchers[network].sweep()
        await self._record_forward(network, ForwardKind.SWEEP, forward)
        state = self.state[network]
        if forward.balance is not None:
            state.balance = forward.balance
        if forward.success:
            state.forwarded_amount += forward.amount
        return forward

    async def sweep_all(self) -> dict[str, ForwardResult]:
        """Sweep every network; one network's failure does not affect the others."""
        keys = list(self.profiles)
        results = await asyncio.gather(*(self.sweep(key) for key in keys), return_exceptions=True)

        swept = {}
        for key, outcome in zip(keys, results):
            if isinstance(outcome, BaseException):
                logger.error(f"Sweep on {key} raised: {outcome}")
                continue
            swept[key] = outcome
        return swept

    async def refresh_network(self, network: str) -> None:
        """Update head and balance figures for one network."""
        state = self.state[network]
        try:
            state.head = await self.clients[network].get_block_number()
            state.balance = await self.escrows[network].get_balance()
        except ChainError as e:
            logger.warning(f"Status refresh failed on {network}: {e}")
            state.last_error = str(e)

    def get_status(self) -> ServiceStatus:
        """Aggregate status from the most recent observations."""
        networks = {}
        for key, profile in self.profiles.items():
            state = self.state[key]
            cursor = self.cursors.get(key)
            lag = self.cursors.lag(key, state.head) if state.head is not None else None
            networks[key] = {
                "name": profile.name,
                "chain_id": profile.chain_id,
                "last_processed_block": cursor,
                "head": state.head,
                "lag": lag,
                "balance": state.balance,
                "balance_usdc": format_usdc(state.balance) if state.balance is not None else None,
                "forwarded_count": state.forwarded_count,
                "forwarded_usdc": format_usdc(state.forwarded_amount),
                "last_cycle_at": state.last_cycle_at.isoformat() if state.last_cycle_at else None,
                "last_error": state.last_error,
            }

        return ServiceStatus(
            running=self._running,
            initialized=self._initialized,
            processed_count=len(self.dedup),
            networks=networks,
        )

    async def report_status(self) -> ServiceStatus:
        """Refresh figures, log the aggregate report and sweep leftover balances."""
        keys = list(self.profiles)
        refreshed = await asyncio.gather(
            *(self.refresh_network(key) for key in keys), return_exceptions=True
        )
        for key, outcome in zip(keys, refreshed):
            if isinstance(outcome, Exception):
                logger.error(f"Status refresh on {key} raised: {outcome}", exc_info=outcome)
                self.state[key].last_error = str(outcome)

        status = self.get_status()

        logger.info(
            f"Status: running={status.running} processed={status.processed_count} "
            f"networks={len(status.networks)}"
        )
        for key, info in status.networks.items():
            logger.info(
                f"  {info['name']}: block {info['last_processed_block']} / head {info['head']} "
                f"(lag {info['lag']}), balance {info['balance_usdc']} USDC"
            )

        await self.sweep_all()
        return status

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped. Returns True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _network_loop(self, network: str) -> None:
        jitter = random.uniform(0, self.settings.initial_jitter)
        logger.debug(f"Starting {network} loop in {jitter:.1f}s")
        if await self._sleep(jitter):
            return

        while not self._stop_event.is_set():
            try:
                await self.check_for_new_deposits(network)
            except Exception as e:
                logger.error(f"Unexpected error in {network} cycle: {e}", exc_info=True)

            if await self._sleep(self.settings.polling_interval):
                break

        logger.info(f"{network} loop stopped")

    async def _status_loop(self) -> None:
        while not await self._sleep(self.settings.status_interval):
            try:
                await self.report_status()
            except Exception as e:
                logger.error(f"Status report failed: {e}", exc_info=True)

    async def run(self) -> None:
        """Run until stop() is called."""
        if not self._initialized:
            await self.initialize()

        self._stop_event.clear()
        self._running = True
        logger.info("Forwarder running")

        try:
            await self.sweep_all()
            self._tasks = [
                asyncio.create_task(self._network_loop(key), name=f"forwarder-{key}")
                for key in self.profiles
            ]
            self._tasks.append(asyncio.create_task(self._status_loop(), name="forwarder-status"))
            await asyncio.gather(*self._tasks)
        finally:
            self._running = False
            self._tasks = []
            logger.info("Forwarder stopped")

    def stop(self) -> None:
        """Request all loops to stop after their in-flight call finishes."""
        logger.info("Stopping forwarder...")
        self._running = False
        self._stop_event.set()
