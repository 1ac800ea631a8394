"""Escrow contract model, ABI codec and typed client."""

from usdc_forwarder.contract.client import EscrowClient
from usdc_forwarder.contract.deployment import compute_create2_address
from usdc_forwarder.contract.escrow import EscrowContract, EscrowError, EscrowEvent
from usdc_forwarder.contract.token import StablecoinToken

__all__ = [
    "EscrowClient",
    "EscrowContract",
    "EscrowError",
    "EscrowEvent",
    "StablecoinToken",
    "compute_create2_address",
]
