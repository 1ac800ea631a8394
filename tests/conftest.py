"""Pytest configuration and fixtures."""

import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from eth_account import Account
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from web3 import Web3

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "false"

from usdc_forwarder.chain.simulated import SimulatedChain, SimulatedChainClient
from usdc_forwarder.config import Settings
from usdc_forwarder.contract.escrow import EscrowContract
from usdc_forwarder.contract.token import StablecoinToken
from usdc_forwarder.ledger.models import Base
from usdc_forwarder.ledger.repository import LedgerRepository
from usdc_forwarder.networks import NETWORKS, NetworkProfile
from usdc_forwarder.utils.locks import clear_network_locks

OWNER_KEY = "0x" + "11" * 32
OWNER = Account.from_key(OWNER_KEY).address
RECIPIENT = Web3.to_checksum_address("0x" + "22" * 20)
DEPOSITOR = Web3.to_checksum_address("0x" + "33" * 20)
STRANGER = Web3.to_checksum_address("0x" + "44" * 20)
ESCROW_SALT = "usdc-forwarder-v1"


@dataclass
class SimulatedNetwork:
    """One simulated network with a deployed, configured escrow."""

    profile: NetworkProfile
    chain: SimulatedChain
    token: StablecoinToken
    escrow: EscrowContract
    client: SimulatedChainClient

    def deposit(self, amount: int, sender: str = DEPOSITOR):
        return self.chain.deposit(self.escrow.address, sender, amount)

    @property
    def recipient_balance(self) -> int:
        return self.token.balance_of(self.escrow.recipient)


def build_network(profile: NetworkProfile, configure_token: bool = True) -> SimulatedNetwork:
    """Deploy token and escrow on a fresh simulated chain for a profile."""
    chain = SimulatedChain(profile.key, profile.chain_id)
    token = chain.deploy_token(address=profile.usdc_address)
    escrow = chain.deploy_escrow(OWNER, RECIPIENT, salt=ESCROW_SALT)
    if configure_token:
        chain.execute(OWNER, escrow.address, "setUSDCAddress", token.address)
    client = SimulatedChainClient(chain, OWNER)
    return SimulatedNetwork(profile, chain, token, escrow, client)


def make_settings(contract_address: str, **overrides) -> Settings:
    """Settings tuned for fast, deterministic tests."""
    values = dict(
        private_key=OWNER_KEY,
        contract_address=contract_address,
        polling_interval=0.01,
        status_interval=0.05,
        initial_jitter=0,
        lookback_blocks=100,
        persist_state=False,
        configure_token_on_startup=False,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_locks():
    """Network locks are module-level; start every test with none."""
    clear_network_locks()
    yield
    clear_network_locks()


@pytest.fixture
def network() -> SimulatedNetwork:
    """A single configured Base Sepolia simulation."""
    return build_network(NETWORKS["baseSepolia"])


@pytest.fixture
def networks() -> dict[str, SimulatedNetwork]:
    """Every known network, escrow at the same address on each."""
    return {key: build_network(profile) for key, profile in NETWORKS.items()}


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def ledger_repo(db_session: AsyncSession) -> LedgerRepository:
    """Create ledger repository for testing."""
    return LedgerRepository(db_session)


@pytest.fixture
def db_factory(db_engine):
    """Session context manager factory with get_db() commit semantics."""
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    @asynccontextmanager
    async def factory():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return factory
