"""ABI of the USDC forwarder escrow contract.

The same contract (same bytecode, same address) is deployed on every
supported network, so a single ABI and a single set of selectors/topics is
shared by all chain clients.

Encoding is done with eth_abi; hashing with Web3.keccak.
"""

from decimal import Decimal
from typing import Any, Optional, Union

from eth_abi import decode, encode
from web3 import Web3

from usdc_forwarder.chain.base import LogDecodeError

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

USDC_DECIMALS = 6

# JSON ABI, as published alongside the deployed contract
ESCROW_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "depositUSDC",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "amount", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "forwardUSDC",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "amount", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "setUSDCAddress",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "_usdcToken", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "updateRecipient",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "newRecipient", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getBalance",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "event",
        "name": "USDCDeposited",
        "anonymous": False,
        "inputs": [
            {"name": "sender", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "timestamp", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "USDCForwarded",
        "anonymous": False,
        "inputs": [
            {"name": "recipient", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "timestamp", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "RecipientUpdated",
        "anonymous": False,
        "inputs": [
            {"name": "oldRecipient", "type": "address", "indexed": True},
            {"name": "newRecipient", "type": "address", "indexed": True},
        ],
    },
]

ESCROW_ERRORS = (
    "ZeroAmount",
    "InsufficientBalance",
    "AlreadySet",
    "ZeroAddress",
    "NotOwner",
    "TokenTransferFailed",
    "ReentrantCall",
    "UsdcNotSet",
    "NativeTransferRejected",
)


def _keccak(text: str) -> bytes:
    return bytes(Web3.keccak(text=text))


def _hex(data: bytes) -> str:
    return "0x" + data.hex()


def to_bytes(value: Union[str, bytes]) -> bytes:
    """Convert a 0x-prefixed hex string (or raw bytes) to bytes."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if value.startswith(("0x", "0X")):
        value = value[2:]
    return bytes.fromhex(value)


def _entries(kind: str) -> dict[str, dict[str, Any]]:
    return {entry["name"]: entry for entry in ESCROW_ABI if entry["type"] == kind}


FUNCTIONS = _entries("function")
EVENTS = _entries("event")


def _signature(entry: dict[str, Any]) -> str:
    types = ",".join(param["type"] for param in entry["inputs"])
    return f"{entry['name']}({types})"


def function_selector(name: str) -> bytes:
    """4-byte selector of an escrow function."""
    return _keccak(_signature(FUNCTIONS[name]))[:4]


def event_topic(name: str) -> str:
    """topic0 of an escrow event, as a 0x-prefixed hex string."""
    return _hex(_keccak(_signature(EVENTS[name])))


DEPOSIT_TOPIC = event_topic("USDCDeposited")
FORWARD_TOPIC = event_topic("USDCForwarded")
RECIPIENT_UPDATED_TOPIC = event_topic("RecipientUpdated")

_SELECTORS = {function_selector(name): name for name in FUNCTIONS}
_ERROR_SELECTORS = {_keccak(f"{name}()")[:4]: name for name in ESCROW_ERRORS}


def encode_call(name: str, *args: Any) -> str:
    """Build calldata for an escrow function call."""
    entry = FUNCTIONS[name]
    types = [param["type"] for param in entry["inputs"]]
    if len(types) != len(args):
        raise ValueError(f"{name} expects {len(types)} argument(s), got {len(args)}")
    return _hex(function_selector(name) + encode(types, list(args)))


def decode_call(data: Union[str, bytes]) -> tuple[str, tuple]:
    """Split calldata back into (function name, arguments).

    Raises:
        ValueError: If the selector is not part of the escrow ABI
    """
    raw = to_bytes(data)
    name = _SELECTORS.get(raw[:4])
    if name is None:
        raise ValueError(f"Unknown function selector 0x{raw[:4].hex()}")
    types = [param["type"] for param in FUNCTIONS[name]["inputs"]]
    args = decode(types, raw[4:]) if types else ()
    return name, tuple(args)


def encode_result(name: str, *values: Any) -> str:
    """Encode the return data of an escrow view function."""
    types = [param["type"] for param in FUNCTIONS[name]["outputs"]]
    return _hex(encode(types, list(values)))


def decode_result(name: str, data: Union[str, bytes]) -> tuple:
    """Decode the return data of an escrow view function."""
    types = [param["type"] for param in FUNCTIONS[name]["outputs"]]
    return tuple(decode(types, to_bytes(data)))


def encode_error(name: str) -> str:
    """Revert data for a custom escrow error."""
    return _hex(_keccak(f"{name}()")[:4])


def decode_revert(data: Optional[Union[str, bytes]]) -> Optional[str]:
    """Map revert data to a custom error name, if it is one of ours."""
    if not data:
        return None
    try:
        raw = to_bytes(data)
    except ValueError:
        return None
    return _ERROR_SELECTORS.get(raw[:4])


def address_topic(address: str) -> str:
    """Left-pad an address into a 32-byte topic."""
    return "0x" + "00" * 12 + to_bytes(address).hex()


def topic_address(topic: str) -> str:
    """Recover a checksummed address from a 32-byte topic."""
    try:
        raw = to_bytes(topic)
    except ValueError as e:
        raise LogDecodeError(f"Malformed topic {topic}: {e}") from e
    if len(raw) != 32 or any(raw[:12]):
        raise LogDecodeError(f"Topic is not an address: {topic}")
    return Web3.to_checksum_address(raw[12:])


def encode_event(name: str, args: dict[str, Any]) -> tuple[list[str], str]:
    """Encode an event as (topics, data), the way a node returns it in a log."""
    entry = EVENTS[name]
    topics = [event_topic(name)]
    data_types: list[str] = []
    data_values: list[Any] = []

    for param in entry["inputs"]:
        value = args[param["name"]]
        if param["indexed"]:
            topics.append(address_topic(value))
        else:
            data_types.append(param["type"])
            data_values.append(value)

    data = _hex(encode(data_types, data_values)) if data_types else "0x"
    return topics, data


def decode_deposit_log(topics: list[str], data: str) -> tuple[str, int, int]:
    """Decode a USDCDeposited log into (sender, amount, timestamp).

    Raises:
        LogDecodeError: If the log is not a well-formed USDCDeposited log
    """
    if len(topics) != 2:
        raise LogDecodeError(f"Expected 2 topics, got {len(topics)}")
    if topics[0].lower() != DEPOSIT_TOPIC:
        raise LogDecodeError(f"Unexpected topic0 {topics[0]}")

    sender = topic_address(topics[1])

    try:
        raw = to_bytes(data)
    except ValueError as e:
        raise LogDecodeError(f"Malformed log data: {e}") from e
    if len(raw) != 64:
        raise LogDecodeError(f"Expected 64 bytes of data, got {len(raw)}")

    amount, timestamp = decode(["uint256", "uint256"], raw)
    return sender, amount, timestamp


def format_usdc(amount: int) -> str:
    """Render base units as a human USDC amount (e.g. 1500000 -> '1.5')."""
    value = Decimal(amount) / Decimal(10 ** USDC_DECIMALS)
    return f"{value.normalize():f}"
