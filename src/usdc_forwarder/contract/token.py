"""In-memory ERC-20 stablecoin used by the simulated chain.

Balances and allowances are integer base units. An optional transfer hook
models tokens that call back into the receiver or sender during a transfer,
which is how re-entrancy into the escrow is exercised.
"""

from typing import Callable, Optional

from web3 import Web3


class TokenError(Exception):
    """Raised when a token transfer cannot be performed."""
    pass


class StablecoinToken:
    """Minimal ERC-20: mint, approve, transfer, transferFrom, balanceOf."""

    def __init__(self, address: str, symbol: str = "USDC", decimals: int = 6):
        self.address = Web3.to_checksum_address(address)
        self.symbol = symbol
        self.decimals = decimals
        self._balances: dict[str, int] = {}
        self._allowances: dict[tuple[str, str], int] = {}
        self.on_transfer: Optional[Callable[[str, str, int], None]] = None

    @staticmethod
    def _key(address: str) -> str:
        return address.lower()

    def balance_of(self, address: str) -> int:
        return self._balances.get(self._key(address), 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self._allowances.get((self._key(owner), self._key(spender)), 0)

    @property
    def total_supply(self) -> int:
        return sum(self._balances.values())

    def mint(self, to: str, amount: int) -> None:
        if amount < 0:
            raise TokenError("Cannot mint a negative amount")
        key = self._key(to)
        self._balances[key] = self._balances.get(key, 0) + amount

    def approve(self, owner: str, spender: str, amount: int) -> None:
        if amount < 0:
            raise TokenError("Cannot approve a negative amount")
        self._allowances[(self._key(owner), self._key(spender))] = amount

    def transfer(self, sender: str, to: str, amount: int) -> None:
        self._move(sender, to, amount)

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> None:
        allowed = self.allowance(owner, spender)
        if allowed < amount:
            raise TokenError(f"Insufficient allowance: {allowed} < {amount}")
        self._allowances[(self._key(owner), self._key(spender))] = allowed - amount
        self._move(owner, to, amount)

    def _move(self, sender: str, to: str, amount: int) -> None:
        if amount < 0:
            raise TokenError("Cannot transfer a negative amount")
        available = self.balance_of(sender)
        if available < amount:
            raise TokenError(f"Insufficient token balance: {available} < {amount}")

        self._balances[self._key(sender)] = available - amount
        self._balances[self._key(to)] = self.balance_of(to) + amount

        if self.on_transfer:
            self.on_transfer(sender, to, amount)

    def snapshot(self) -> dict:
        return {
            "balances": dict(self._balances),
            "allowances": dict(self._allowances),
        }

    def restore(self, snapshot: dict) -> None:
        self._balances = dict(snapshot["balances"])
        self._allowances = dict(snapshot["allowances"])
