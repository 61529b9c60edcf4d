"""Counterfactual contract address derivation.

Reproduce the EIP-1014 ``CREATE2`` address computation off-chain, bit for bit:

.. code-block:: text

    address = keccak256(0xff ++ deployer ++ salt ++ keccak256(init_code))[12:]

For beacon proxy based accounts the init code is the BeaconProxy creation
bytecode followed by its ABI encoded constructor arguments ``(address beacon, bytes data)``,
where ``data`` is the encoded initialiser call of the account.

Two salt strategies are in use by different factory versions and they give
different addresses. Neither is assumed: pass :py:class:`SaltStrategy` explicitly.

- `EIP-1014 <https://eips.ethereum.org/EIPS/eip-1014>`__

"""

import enum
import logging
from dataclasses import dataclass

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.codec import EncodingError, content_hash, encode_tuple, to_address

logger = logging.getLogger(__name__)


#: Largest value that fits a Solidity uint256
MAX_UINT256 = 2**256 - 1


class DerivationMismatch(AssertionError):
    """Locally derived counterfactual address disagrees with the one reported on-chain.

    Not raised by the derivation itself. See :py:meth:`DerivationCheck.assert_match`.
    """


class SaltStrategy(enum.Enum):
    """How a factory turns the caller supplied nonce to a 32 bytes CREATE2 salt."""

    #: ``keccak256(abi.encode(requester, nonce))``
    #:
    #: The salt is bound to the account asking for the creation.
    hashed = "hashed"

    #: ``bytes32(nonce)``, big endian zero padded
    padded = "padded"


def _to_address_bytes(address: HexAddress | str | bytes) -> bytes:
    return bytes(HexBytes(to_address(address)))


def compute_salt(
    requester: HexAddress | str,
    nonce: int,
    strategy: SaltStrategy = SaltStrategy.hashed,
) -> bytes:
    """Compute the CREATE2 salt the factory uses for a requester and nonce.

    Example:

    .. code-block:: python

        salt = compute_salt(esim_wallet_admin, 111, SaltStrategy.hashed)
        assert len(salt) == 32

    :param requester:
        The address calling the factory.

        Ignored by :py:attr:`SaltStrategy.padded`, but always required
        so that call sites do not need to know which strategy a factory uses.

    :param nonce:
        Caller chosen uint256

    :param strategy:
        Which strategy the target factory version uses

    :raise EncodingError:
        Nonce is not a uint256, or requester is not an address

    :return:
        32 bytes salt
    """
    assert isinstance(strategy, SaltStrategy), f"Got {strategy}"

    if type(nonce) != int or nonce < 0 or nonce > MAX_UINT256:
        raise EncodingError(f"Salt nonce must be uint256, got {nonce!r}", ["uint256"], [nonce])

    match strategy:
        case SaltStrategy.hashed:
            return content_hash(encode_tuple(["address", "uint256"], [to_address(requester), nonce]))
        case SaltStrategy.padded:
            return nonce.to_bytes(32, "big")
        case _:
            raise NotImplementedError(f"Unknown salt strategy: {strategy}")


def get_create2_address(
    deployer: HexAddress | str | bytes,
    salt: bytes,
    init_code_hash: bytes,
) -> HexAddress:
    """The raw EIP-1014 formula.

    :param deployer:
        The factory contract executing ``CREATE2``

    :param salt:
        32 bytes

    :param init_code_hash:
        Keccak-256 of the full creation bytecode, constructor arguments included

    :return:
        Checksummed address
    """
    deployer_bytes = _to_address_bytes(deployer)

    if len(salt) != 32:
        raise EncodingError(f"CREATE2 salt must be 32 bytes, got {len(salt)}")

    if len(init_code_hash) != 32:
        raise EncodingError(f"Init code hash must be 32 bytes, got {len(init_code_hash)}")

    preimage = b"\xff" + deployer_bytes + bytes(salt) + bytes(init_code_hash)
    return Web3.to_checksum_address(content_hash(preimage)[12:])


def derive_address(
    factory: HexAddress | str,
    salt: bytes,
    creation_code: bytes,
    constructor_args: bytes = b"",
) -> HexAddress:
    """Derive an address of any contract created with ``CREATE2``.

    :param factory:
        Deployer address

    :param salt:
        32 bytes salt, see :py:func:`compute_salt`

    :param creation_code:
        Contract creation bytecode as it is in the compiler artifact

    :param constructor_args:
        ABI encoded constructor arguments, appended to the creation code

    :return:
        Checksummed address
    """
    assert isinstance(creation_code, (bytes, bytearray)), f"Creation code must be bytes, got {type(creation_code)}"
    assert len(creation_code) > 0, "Empty creation code"
    init_code = bytes(creation_code) + bytes(constructor_args)
    return get_create2_address(factory, salt, content_hash(init_code))


def derive_beacon_proxy_address(
    factory: HexAddress | str,
    salt: bytes,
    creation_code: bytes,
    beacon: HexAddress | str,
    init_payload: bytes,
) -> HexAddress:
    """Derive an address of a beacon proxy a factory creates with ``CREATE2``.

    - Encode BeaconProxy constructor arguments ``(address beacon, bytes data)``

    - Append them to the BeaconProxy creation code

    - Apply EIP-1014 formula

    Example:

    .. code-block:: python

        salt = compute_salt(esim_wallet_admin, 111)
        payload = encode_device_wallet_init(InitPayloadVersion.v1, registry, owner_key, "Device_11")
        address = derive_beacon_proxy_address(factory, salt, beacon_proxy_bytecode, beacon, payload)

    :param factory:
        The factory contract that executes ``CREATE2``

    :param salt:
        32 bytes salt the factory uses

    :param creation_code:
        OpenZeppelin ``BeaconProxy`` creation bytecode

    :param beacon:
        The beacon address the factory passes to the proxy

    :param init_payload:
        Encoded initialiser call for the proxied account.

        Layout must match the initialiser of the deployed implementation version.
        A wrong layout gives a wrong address, not an error.

    :return:
        Checksummed counterfactual address
    """
    constructor_args = encode_tuple(["address", "bytes"], [to_address(beacon), bytes(init_payload)])
    return derive_address(factory, salt, creation_code, constructor_args)


@dataclass(slots=True, frozen=True)
class DerivationCheck:
    """Comparison of a locally derived address against one reported by the chain.

    Used by tests and monitoring scripts. A mismatch means the off-chain
    derivation inputs (salt strategy, payload version, bytecode) do not
    match the deployed factory.
    """

    #: Address we computed off-chain
    derived: HexAddress

    #: Address the factory reported, e.g. ``getCounterfactualAddress()``
    reported: HexAddress

    #: Human readable description of the inputs, for error messages
    context: str = ""

    def is_match(self) -> bool:
        return self.derived.lower() == self.reported.lower()

    def assert_match(self):
        """Raise if the addresses disagree.

        :raise DerivationMismatch:
            With both addresses in the message
        """
        if not self.is_match():
            raise DerivationMismatch(f"Counterfactual address mismatch: derived {self.derived}, on-chain reports {self.reported}. {self.context}")


def check_derivation(derived: HexAddress, reported: HexAddress, context: str = "") -> DerivationCheck:
    """Compare and log the result.

    Disagreement is logged at error level, never ignored.
    """
    check = DerivationCheck(
        derived=Web3.to_checksum_address(derived),
        reported=Web3.to_checksum_address(reported),
        context=context,
    )
    if check.is_match():
        logger.info("Counterfactual address %s matches on-chain", check.derived)
    else:
        logger.error("Counterfactual address mismatch: derived %s, reported %s. %s", check.derived, check.reported, context)
    return check
