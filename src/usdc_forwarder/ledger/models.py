"""SQLAlchemy models for the forwarder's durable state."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Index, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ForwardKind(str, Enum):
    """What triggered a forward attempt."""

    DEPOSIT = "deposit"
    SWEEP = "sweep"


class ProcessedDeposit(Base):
    """A deposit whose amount has been forwarded.

    Loaded into the in-memory dedup ledger at startup so a restart never
    forwards the same deposit twice.
    """

    __tablename__ = "processed_deposits"
    __table_args__ = (Index("ix_processed_deposit_network_hash", "network", "tx_hash", unique=True),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    network: Mapped[str] = mapped_column(String(50), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    sender: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)  # USDC base units
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    forward_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class NetworkCursor(Base):
    """Last fully processed block per network."""

    __tablename__ = "network_cursors"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    network: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    last_processed_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ForwardLog(Base):
    """Audit trail of every forward attempt, deposit-triggered or sweep."""

    __tablename__ = "forward_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    network: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    kind: Mapped[ForwardKind] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deposit_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    gas_limit: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    gas_used: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
