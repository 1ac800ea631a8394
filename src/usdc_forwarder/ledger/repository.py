"""Repository for ledger operations."""

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from usdc_forwarder.ledger.models import (
    ForwardKind,
    ForwardLog,
    NetworkCursor,
    ProcessedDeposit,
)


class LedgerRepository:
    """Repository for processed deposits, cursors and the forward audit log."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Processed deposit tracking (idempotency)
    async def is_deposit_processed(self, network: str, tx_hash: str) -> bool:
        """Check if a deposit has already been forwarded."""
        stmt = select(ProcessedDeposit.id).where(
            ProcessedDeposit.network == network,
            ProcessedDeposit.tx_hash == tx_hash.lower(),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def mark_deposit_processed(
        self,
        network: str,
        tx_hash: str,
        sender: str,
        amount: int,
        block_number: int,
        forward_tx_hash: Optional[str] = None,
    ) -> ProcessedDeposit:
        """Record a forwarded deposit. Idempotent on (network, tx_hash)."""
        stmt = select(ProcessedDeposit).where(
            ProcessedDeposit.network == network,
            ProcessedDeposit.tx_hash == tx_hash.lower(),
        )
        result = await self.session.execute(stmt)
        existing = result.scalar_one_or_none()
        if existing:
            return existing

        processed = ProcessedDeposit(
            network=network,
            tx_hash=tx_hash.lower(),
            sender=sender,
            amount=amount,
            block_number=block_number,
            forward_tx_hash=forward_tx_hash,
        )
        self.session.add(processed)
        await self.session.flush()
        return processed

    async def get_processed_hashes(self, network: Optional[str] = None) -> list[str]:
        """All forwarded deposit hashes, optionally for one network."""
        stmt = select(ProcessedDeposit.tx_hash)
        if network:
            stmt = stmt.where(ProcessedDeposit.network == network)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_processed(self, network: Optional[str] = None) -> int:
        stmt = select(func.count(ProcessedDeposit.id))
        if network:
            stmt = stmt.where(ProcessedDeposit.network == network)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    # Block cursors
    async def get_cursor(self, network: str) -> Optional[int]:
        """Persisted last-processed block for a network, if any."""
        stmt = select(NetworkCursor.last_processed_block).where(NetworkCursor.network == network)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_all_cursors(self) -> dict[str, int]:
        result = await self.session.execute(select(NetworkCursor))
        return {row.network: row.last_processed_block for row in result.scalars().all()}

    async def save_cursor(self, network: str, block: int) -> NetworkCursor:
        """Upsert a network's cursor. The stored value never decreases."""
        stmt = select(NetworkCursor).where(NetworkCursor.network == network)
        result = await self.session.execute(stmt)
        cursor = result.scalar_one_or_none()

        if cursor is None:
            cursor = NetworkCursor(network=network, last_processed_block=block)
            self.session.add(cursor)
        elif block > cursor.last_processed_block:
            cursor.last_processed_block = block

        await self.session.flush()
        return cursor

    # Forward audit log
    async def record_forward(
        self,
        network: str,
        kind: ForwardKind,
        status: str,
        amount: int,
        deposit_tx_hash: Optional[str] = None,
        tx_hash: Optional[str] = None,
        gas_limit: Optional[int] = None,
        gas_used: Optional[int] = None,
        error: Optional[str] = None,
    ) -> ForwardLog:
        """Append a forward attempt to the audit log."""
        entry = ForwardLog(
            network=network,
            kind=ForwardKind(kind).value,
            status=status,
            amount=amount,
            deposit_tx_hash=deposit_tx_hash.lower() if deposit_tx_hash else None,
            tx_hash=tx_hash,
            gas_limit=gas_limit,
            gas_used=gas_used,
            error=error,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_forward_log(
        self, network: Optional[str] = None, limit: int = 50
    ) -> list[ForwardLog]:
        """Most recent forward attempts first."""
        stmt = select(ForwardLog).order_by(ForwardLog.id.desc()).limit(limit)
        if network:
            stmt = stmt.where(ForwardLog.network == network)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
