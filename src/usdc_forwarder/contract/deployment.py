"""Deterministic (CREATE2) deployment address of the escrow.

The escrow is deployed with the same deployer, salt, init code and
constructor argument (the recipient) on every network, which puts it at the
same address everywhere. The token address is deliberately not a
constructor argument, so it cannot influence the address.
"""

from typing import Union

from eth_abi import encode
from web3 import Web3

from usdc_forwarder.contract.abi import to_bytes


def _salt_bytes(salt: Union[str, bytes, int]) -> bytes:
    if isinstance(salt, int):
        return salt.to_bytes(32, "big")
    if isinstance(salt, str) and not salt.startswith(("0x", "0X")):
        # Text labels are hashed to 32 bytes
        return bytes(Web3.keccak(text=salt))
    raw = to_bytes(salt)
    if len(raw) != 32:
        raise ValueError(f"Salt must be 32 bytes, got {len(raw)}")
    return raw


def compute_create2_address(
    deployer: str,
    salt: Union[str, bytes, int],
    init_code: Union[str, bytes],
    recipient: str,
) -> str:
    """Compute the address the escrow will be deployed at.

    Args:
        deployer: Address executing CREATE2 (factory or deployer contract)
        salt: 32-byte salt, integer salt, or a text label hashed to 32 bytes
        init_code: Contract creation bytecode without constructor arguments
        recipient: Constructor argument

    Returns:
        Checksummed contract address
    """
    full_init_code = to_bytes(init_code) + encode(["address"], [recipient])
    init_code_hash = bytes(Web3.keccak(full_init_code))
    digest = bytes(Web3.keccak(
        b"\xff" + to_bytes(deployer) + _salt_bytes(salt) + init_code_hash
    ))
    return Web3.to_checksum_address(digest[12:])
