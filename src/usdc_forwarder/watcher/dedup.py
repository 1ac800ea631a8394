"""Dedup ledger: transaction hashes whose deposit was already forwarded."""

from typing import Iterable


class DedupLedger:
    """Process-wide set of forwarded deposit transaction hashes.

    Hashes are chain-scoped and effectively unique, so one set serves every
    network. Durable copies live in the ledger database; this set is what
    gates re-dispatch within the process.
    """

    def __init__(self, hashes: Iterable[str] = ()):
        self._hashes: set[str] = {self._key(h) for h in hashes}

    @staticmethod
    def _key(tx_hash: str) -> str:
        return tx_hash.lower()

    def mark(self, tx_hash: str) -> bool:
        """Record a hash (idempotent). Returns True if it was new."""
        key = self._key(tx_hash)
        if key in self._hashes:
            return False
        self._hashes.add(key)
        return True

    def is_marked(self, tx_hash: str) -> bool:
        return self._key(tx_hash) in self._hashes

    def update(self, hashes: Iterable[str]) -> None:
        """Bulk-load hashes (e.g. from the durable ledger at startup)."""
        self._hashes.update(self._key(h) for h in hashes)

    def __contains__(self, tx_hash: str) -> bool:
        return self.is_marked(tx_hash)

    def __len__(self) -> int:
        return len(self._hashes)
