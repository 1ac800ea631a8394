"""Escrow contract state machine.

This is the accounting model of the on-chain USDC forwarder. One instance
exists per network, at the same deterministic address on all of them.

State (implicit in field values):
    balance        - USDC held for forwarding, in base units
    recipient      - where forwarded funds go (owner may change it)
    owner          - deployer; may set the token once and change recipient
    token_address  - USDC contract trusted by this escrow, set at most once
    _locked        - re-entrancy guard around the external token transfer

Lifecycle: the constructor takes only the recipient (the deployer becomes
owner). The token differs per network, so it is configured after
deployment, exactly once.

Every operation is all-or-nothing: when it raises, balances, fields and
emitted events are exactly as they were before the call.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

from web3 import Web3

from usdc_forwarder.contract.abi import ZERO_ADDRESS
from usdc_forwarder.contract.token import StablecoinToken, TokenError

logger = logging.getLogger(__name__)


class EscrowError(Exception):
    """Base class for escrow reverts. `name` matches the ABI custom error."""

    name = "EscrowError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.name)


class ZeroAmount(EscrowError):
    name = "ZeroAmount"


class InsufficientBalance(EscrowError):
    name = "InsufficientBalance"


class AlreadySet(EscrowError):
    name = "AlreadySet"


class ZeroAddress(EscrowError):
    name = "ZeroAddress"


class NotOwner(EscrowError):
    name = "NotOwner"


class TokenTransferFailed(EscrowError):
    name = "TokenTransferFailed"


class ReentrantCall(EscrowError):
    name = "ReentrantCall"


class UsdcNotSet(EscrowError):
    name = "UsdcNotSet"


class NativeTransferRejected(EscrowError):
    name = "NativeTransferRejected"


@dataclass
class EscrowEvent:
    """An event emitted by the escrow."""

    name: str
    args: dict[str, Any]


def _same(a: str, b: str) -> bool:
    return a.lower() == b.lower()


def _is_zero(address: Optional[str]) -> bool:
    return not address or _same(address, ZERO_ADDRESS)


class EscrowContract:
    """USDC escrow that forwards its balance to a fixed recipient."""

    # Trust boundary: when False anyone may call forwardUSDC. Funds still
    # only ever reach `recipient`.
    forward_requires_owner = False

    def __init__(
        self,
        address: str,
        owner: str,
        recipient: str,
        token_resolver: Callable[[str], StablecoinToken],
        clock: Optional[Callable[[], int]] = None,
    ):
        """Deploy the escrow.

        Args:
            address: Deterministic deployment address
            owner: Deployer account
            recipient: Initial recipient of forwarded funds
            token_resolver: Looks up a token contract by address on this chain
            clock: Returns the current block timestamp
        """
        if _is_zero(recipient):
            raise ZeroAddress("Recipient cannot be the zero address")

        self.address = Web3.to_checksum_address(address)
        self.owner = Web3.to_checksum_address(owner)
        self.recipient = Web3.to_checksum_address(recipient)
        self.token_address = ZERO_ADDRESS
        self.balance = 0
        self._locked = False
        self.events: list[EscrowEvent] = []
        self._resolve_token = token_resolver
        self._clock = clock or (lambda: int(time.time()))

    # ---- internals --------------------------------------------------------

    def _token(self) -> StablecoinToken:
        if _is_zero(self.token_address):
            raise UsdcNotSet("USDC token address has not been configured")
        try:
            return self._resolve_token(self.token_address)
        except TokenError as e:
            raise TokenTransferFailed(str(e)) from e

    def _token_or_none(self) -> Optional[StablecoinToken]:
        if _is_zero(self.token_address):
            return None
        try:
            return self._resolve_token(self.token_address)
        except TokenError:
            return None

    def snapshot(self) -> dict:
        snapshot = {
            "balance": self.balance,
            "recipient": self.recipient,
            "owner": self.owner,
            "token_address": self.token_address,
            "locked": self._locked,
            "events": len(self.events),
            "token": None,
        }
        token = self._token_or_none()
        if token is not None:
            snapshot["token"] = token.snapshot()
        return snapshot

    def restore(self, snapshot: dict) -> None:
        self.balance = snapshot["balance"]
        self.recipient = snapshot["recipient"]
        self.owner = snapshot["owner"]
        self.token_address = snapshot["token_address"]
        self._locked = snapshot["locked"]
        del self.events[snapshot["events"]:]
        token = self._token_or_none()
        if snapshot["token"] is not None and token is not None:
            token.restore(snapshot["token"])

    @contextmanager
    def _atomic(self) -> Iterator[None]:
        snapshot = self.snapshot()
        try:
            yield
        except Exception:
            self.restore(snapshot)
            raise

    @contextmanager
    def _non_reentrant(self) -> Iterator[None]:
        if self._locked:
            raise ReentrantCall("Re-entrant call into escrow")
        self._locked = True
        try:
            yield
        finally:
            self._locked = False

    def _emit(self, name: str, **args: Any) -> None:
        self.events.append(EscrowEvent(name=name, args=args))

    @staticmethod
    def _require_amount(amount: int) -> None:
        if not isinstance(amount, int) or amount < 0:
            raise ValueError(f"Amount must be a uint256, got {amount!r}")
        if amount == 0:
            raise ZeroAmount("Amount must be greater than zero")

    def _require_owner(self, sender: str) -> None:
        if not _same(sender, self.owner):
            raise NotOwner(f"{sender} is not the owner")

    # ---- external operations ---------------------------------------------

    def deposit_usdc(self, sender: str, amount: int) -> None:
        """Pull `amount` USDC from sender into the escrow."""
        with self._atomic(), self._non_reentrant():
            self._require_amount(amount)
            token = self._token()
            try:
                token.transfer_from(self.address, sender, self.address, amount)
            except TokenError as e:
                raise TokenTransferFailed(str(e)) from e

            self.balance += amount
            self._emit(
                "USDCDeposited",
                sender=Web3.to_checksum_address(sender),
                amount=amount,
                timestamp=self._clock(),
            )

    def forward_usdc(self, sender: str, amount: int) -> None:
        """Send `amount` of the escrow balance to the recipient."""
        with self._atomic(), self._non_reentrant():
            if self.forward_requires_owner:
                self._require_owner(sender)
            self._require_amount(amount)
            if amount > self.balance:
                raise InsufficientBalance(
                    f"Requested {amount}, escrow holds {self.balance}"
                )
            token = self._token()

            self.balance -= amount
            try:
                token.transfer(self.address, self.recipient, amount)
            except TokenError as e:
                raise TokenTransferFailed(str(e)) from e

            self._emit(
                "USDCForwarded",
                recipient=self.recipient,
                amount=amount,
                timestamp=self._clock(),
            )

    def set_usdc_address(self, sender: str, token: str) -> None:
        """Configure the trusted USDC token. Allowed exactly once."""
        with self._atomic():
            self._require_owner(sender)
            if not _is_zero(self.token_address):
                raise AlreadySet(f"USDC address already set to {self.token_address}")
            if _is_zero(token):
                raise ZeroAddress("Token cannot be the zero address")
            self.token_address = Web3.to_checksum_address(token)
            logger.debug(f"Escrow {self.address} token set to {self.token_address}")

    def update_recipient(self, sender: str, new_recipient: str) -> None:
        """Change the recipient of forwarded funds (owner only)."""
        with self._atomic():
            self._require_owner(sender)
            if _is_zero(new_recipient):
                raise ZeroAddress("Recipient cannot be the zero address")
            old = self.recipient
            self.recipient = Web3.to_checksum_address(new_recipient)
            self._emit("RecipientUpdated", oldRecipient=old, newRecipient=self.recipient)

    def get_balance(self) -> int:
        return self.balance

    def receive(self, sender: str, value: int) -> None:
        """Native currency sent to the escrow is always rejected."""
        raise NativeTransferRejected(
            f"Escrow does not accept native currency ({value} from {sender})"
        )

    def pop_events(self) -> list[EscrowEvent]:
        """Drain events emitted since the last call."""
        events, self.events = self.events, []
        return events
