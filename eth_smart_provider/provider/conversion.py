"""Python values <-> JSON-RPC wire values.

Depending on the used JSON-RPC node,
they may return hex encoded values or JSON numbers.
Callers may pass ints, hex strings, bytes or :py:class:`HexBytes`.
"""

from typing import Any

from eth_typing import BlockIdentifier
from eth_utils import to_hex
from hexbytes import HexBytes

#: Symbolic block identifiers understood by JSON-RPC nodes
BLOCK_TAGS = ("latest", "pending", "safe", "finalized", "earliest")

#: Block tags that resolve to the current chain tip
TIP_TAGS = ("latest", "pending")

#: Transaction dict fields that are integer quantities on the wire
QUANTITY_FIELDS = (
    "value",
    "gas",
    "gasPrice",
    "maxFeePerGas",
    "maxPriorityFeePerGas",
    "nonce",
    "chainId",
    "type",
)

#: Transaction dict fields that are byte data on the wire
DATA_FIELDS = ("data", "input")


def convert_jsonrpc_value_to_int(val: str | int) -> int:
    """Convert hex string or int to int.

    Depending on the used JSON-RPC node,
    they may return hex encoded values or JSON numbers
    in JSON-RPC type. We need to be able to support both node and
    do the compatibility hack here.
    """

    if type(val) == int:
        return val

    # Hex number
    return int(val, 16)


def encode_quantity(value: int) -> str:
    assert type(value) == int and value >= 0, f"Bad quantity {value}"
    return hex(value)


def encode_data(value: bytes | str) -> str:
    """Encode byte data as 0x prefixed hex."""
    if isinstance(value, (bytes, bytearray)):
        return to_hex(bytes(value))
    assert isinstance(value, str) and value.startswith("0x"), f"Expected 0x prefixed hex, got {value!r}"
    return value


def encode_block_identifier(block_identifier: BlockIdentifier) -> str:
    """Encode a block number, tag or hash for the wire.

    - ``int`` block numbers become hex quantities

    - Tags like ``latest`` pass through

    - Block hashes become 0x prefixed hex
    """
    if type(block_identifier) == int:
        return encode_quantity(block_identifier)

    if isinstance(block_identifier, (bytes, bytearray)):
        return to_hex(bytes(block_identifier))

    assert isinstance(block_identifier, str), f"Bad block identifier {block_identifier!r}"

    if block_identifier in BLOCK_TAGS or block_identifier.startswith("0x"):
        return block_identifier

    # Decimal string
    assert block_identifier.isdigit(), f"Bad block identifier {block_identifier!r}"
    return encode_quantity(int(block_identifier))


def encode_transaction(transaction: dict) -> dict:
    """Encode a transaction dict for ``eth_call`` and ``eth_estimateGas``.

    Addresses pass through as is.
    """
    assert isinstance(transaction, dict), f"Expected dict, got {type(transaction)}"
    encoded = {}
    for key, value in transaction.items():
        if key in QUANTITY_FIELDS and type(value) == int:
            encoded[key] = encode_quantity(value)
        elif key in DATA_FIELDS and isinstance(value, (bytes, bytearray)):
            encoded[key] = encode_data(value)
        else:
            encoded[key] = value
    return encoded


def encode_filter_params(filter_params: dict) -> dict:
    """Encode ``eth_getLogs`` filter for the wire.

    Block numbers become hex quantities, bytes topics become hex.
    """
    encoded = dict(filter_params)
    for key in ("fromBlock", "toBlock"):
        if key in encoded and encoded[key] is not None:
            encoded[key] = encode_block_identifier(encoded[key])

    if "blockHash" in encoded:
        encoded["blockHash"] = encode_data(encoded["blockHash"])

    if encoded.get("topics"):
        encoded["topics"] = [_encode_topic(t) for t in encoded["topics"]]

    return encoded


def _encode_topic(topic: Any) -> Any:
    if topic is None:
        return None
    if isinstance(topic, (list, tuple)):
        return [_encode_topic(t) for t in topic]
    return encode_data(topic)


def decode_data(value: str | None) -> HexBytes | None:
    if value is None:
        return None
    return HexBytes(value)
