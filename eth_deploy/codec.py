"""Binary encoding and hashing primitives.

Everything that ends up inside a CREATE2 preimage or a contract
initialiser payload is produced here, so that the off-chain derivation
and the on-chain decoder see exactly the same bytes.

- Type-directed ABI tuple encoding on the top of :py:mod:`eth_abi`

- Keccak-256 content hashing, as mandated by EIP-1014

- Solidity function call encoding, the Python equivalent of ``abi.encodeWithSignature()``

Values are never coerced: a value that does not fit its declared
slot is an error, not something we try to fix up.
"""

from typing import Any, Sequence

import eth_abi
from eth_abi.exceptions import ABITypeError, DecodingError, EncodingError as ABIEncodingError, ParseError
from eth_typing import HexAddress
from eth_utils import keccak
from hexbytes import HexBytes
from web3 import Web3


class EncodingError(Exception):
    """A value does not match its declared ABI schema type.

    E.g. a byte string longer than its fixed slot,
    or a negative value in an unsigned slot.
    """

    def __init__(self, msg: str, types: Sequence[str] | None = None, values: Sequence[Any] | None = None):
        super().__init__(msg)
        self.types = types
        self.values = values


def encode_tuple(types: Sequence[str], values: Sequence[Any]) -> bytes:
    """ABI encode a list of values as a tuple.

    Produces the byte layout Solidity ``abi.decode()`` expects:
    static types padded to 32 byte words, dynamic types with offsets and length prefixes.

    Example:

    .. code-block:: python

        payload = encode_tuple(["address", "uint256"], [sender, 111])
        assert len(payload) == 64

    :param types:
        Solidity ABI type strings like ``address``, ``uint256``, ``bytes32[2]``, ``(address,bytes)``

    :param values:
        Python values, one per type.

    :raise EncodingError:
        If the value count or any of the values do not match the schema.

    :return:
        Encoded bytes
    """
    assert type(types) in (list, tuple), f"Expected list of types, got {type(types)}"
    assert type(values) in (list, tuple), f"Expected list of values, got {type(values)}"

    if len(types) != len(values):
        raise EncodingError(f"Got {len(values)} values for {len(types)} types: {list(types)}", types, values)

    try:
        return eth_abi.encode(list(types), list(values))
    except (ABIEncodingError, ABITypeError, ParseError) as e:
        raise EncodingError(f"Could not encode {list(values)} as {list(types)}: {e}", types, values) from e


def decode_tuple(types: Sequence[str], data: bytes) -> tuple:
    """Decode ABI encoded tuple data back to Python values.

    The inverse of :py:func:`encode_tuple`, interprets the bytes the same
    way a remote contract would.

    :raise EncodingError:
        If the data is truncated or malformed for the given types.
    """
    try:
        return eth_abi.decode(list(types), bytes(data))
    except (DecodingError, ABITypeError, ParseError) as e:
        raise EncodingError(f"Could not decode {len(data)} bytes as {list(types)}: {e}", types) from e


def content_hash(data: bytes | HexBytes) -> bytes:
    """Keccak-256 digest.

    This is the same hash the EVM uses for the CREATE2 address formula,
    not NIST SHA3-256.

    :return:
        32 bytes
    """
    assert isinstance(data, (bytes, bytearray)), f"Expected bytes, got {type(data)}"
    return keccak(bytes(data))


def to_address(value: str | bytes) -> HexAddress:
    """Normalise an address literal to its checksummed form.

    Accepts 0x prefixed hex strings in any letter case and 20 raw bytes.

    :raise EncodingError:
        Not hex, or not 20 bytes
    """
    try:
        data = bytes(HexBytes(value))
    except (ValueError, TypeError) as e:
        raise EncodingError(f"Not an address: {value!r}", ["address"], [value]) from e

    if len(data) != 20:
        raise EncodingError(f"Address must be 20 bytes, got {len(data)}: {value!r}", ["address"], [value])

    return Web3.to_checksum_address(data)


def parse_signature_types(function_signature: str) -> list[str]:
    """Extract argument types from a Solidity function signature.

    Nested tuple arguments are kept as one type.

    Example:

    .. code-block:: python

        assert parse_signature_types("init(address,bytes32[2],string)") == ["address", "bytes32[2]", "string"]
        assert parse_signature_types("foo((address,uint256)[],bool)") == ["(address,uint256)[]", "bool"]

    """
    start = function_signature.find("(")
    end = function_signature.rfind(")")
    if start <= 0 or end < start:
        raise EncodingError(f"Not a Solidity function signature: {function_signature}")

    body = function_signature[start + 1 : end]
    if not body:
        return []

    types = []
    depth = 0
    current = ""
    for c in body:
        if c == "(":
            depth += 1
        elif c == ")":
            depth -= 1
        if c == "," and depth == 0:
            types.append(current.strip())
            current = ""
        else:
            current += c
    types.append(current.strip())

    if depth != 0 or any(t == "" for t in types):
        raise EncodingError(f"Malformed Solidity function signature: {function_signature}")

    return types


def get_function_selector(function_signature: str) -> bytes:
    """4 bytes Solidity function selector for a signature like ``addRegistryAddress(address)``."""
    assert " " not in function_signature, f"Use canonical signature without spaces or argument names: {function_signature}"
    return content_hash(function_signature.encode("utf-8"))[0:4]


def encode_call(function_signature: str, args: Sequence[Any]) -> bytes:
    """Mimic Solidity's ``abi.encodeWithSignature()`` in Python.

    Used for the initialiser payloads of proxies and counterfactual accounts.

    Example:

    .. code-block:: python

        payload = encode_call("init(address,bytes32[2],string)", [registry, owner_key, "Device_11"])

    :param function_signature:
        Canonical Solidity function signature.

    :param args:
        Argument values to be encoded.

    :raise EncodingError:
        Argument values do not match the signature.
    """
    types = parse_signature_types(function_signature)
    return get_function_selector(function_signature) + encode_tuple(types, args)
