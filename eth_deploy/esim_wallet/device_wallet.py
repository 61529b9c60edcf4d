"""Device wallet counterfactual addresses.

Device wallets are ``BeaconProxy`` instances the ``DeviceWalletFactory`` creates with ``CREATE2``.
Their address can be computed before the wallet exists:

.. code-block:: text

    salt      = keccak256(abi.encode(eSIMWalletAdmin, nonce))
    init_data = abi.encodeWithSignature("init(address,bytes32[2],string)", registry, ownerKey, deviceUniqueIdentifier)
    init_code = BeaconProxy.bytecode ++ abi.encode(beacon, init_data)
    address   = create2(factory, salt, keccak256(init_code))

The initialiser layout depends on the device wallet version, see :py:class:`InitPayloadVersion`.

Example:

.. code-block:: python

    predicted = predict_device_wallet_address(
        network,
        artifacts,
        factory=address_book["DeviceWalletFactoryProxy"],
        registry=address_book["RegistryProxy"],
        owner_key=owner_key,
        device_id="Device_11",
        nonce=111,
        requester=esim_wallet_admin,
    )
"""

import enum
import logging
from typing import Mapping, Sequence

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.abi import ArtifactStore
from eth_deploy.codec import EncodingError, encode_call, to_address
from eth_deploy.create2 import DerivationCheck, SaltStrategy, check_derivation, compute_salt, derive_beacon_proxy_address
from eth_deploy.esim_wallet.deployment import DEVICE_WALLET_FACTORY, ESIM_WALLET_FACTORY, REGISTRY
from eth_deploy.network import Network

logger = logging.getLogger(__name__)


#: Where Hardhat puts the OpenZeppelin beacon proxy the factory uses
BEACON_PROXY_ARTIFACT = "@openzeppelin/contracts/proxy/beacon/BeaconProxy.sol:BeaconProxy"


class InitPayloadVersion(enum.Enum):
    """Device wallet initialiser layouts.

    The value is the initialiser signature.
    """

    #: ``init(registry, ownerKey, deviceUniqueIdentifier)``
    v1 = "init(address,bytes32[2],string)"

    #: ``init(registry, ownerKey, deviceUniqueIdentifier, secondaryFactory)``
    v2 = "init(address,bytes32[2],string,address)"


def parse_owner_key(owner_key: Sequence[str | bytes]) -> list[bytes]:
    """Normalise a P-256 public key to two 32 bytes words.

    :param owner_key:
        ``(x, y)`` as 0x prefixed hex strings or bytes

    :raise EncodingError:
        Not two 32 bytes values
    """
    if len(owner_key) != 2:
        raise EncodingError(f"Owner key must have two coordinates, got {len(owner_key)}")

    words = [bytes(HexBytes(k)) for k in owner_key]
    for w in words:
        if len(w) != 32:
            raise EncodingError(f"Owner key coordinate must be 32 bytes, got {len(w)}: 0x{w.hex()}")
    return words


def encode_device_wallet_init(
    version: InitPayloadVersion,
    registry: HexAddress,
    owner_key: Sequence[str | bytes],
    device_id: str,
    secondary_factory: HexAddress | None = None,
) -> bytes:
    """Encode the device wallet initialiser call the factory passes to the beacon proxy.

    :param version:
        Initialiser layout of the deployed device wallet version

    :param secondary_factory:
        Needed by :py:attr:`InitPayloadVersion.v2` only

    :raise EncodingError:
        Bad owner key or arguments
    """
    assert isinstance(version, InitPayloadVersion), f"Got {version}"
    assert type(device_id) == str, f"Device identifier must be a string, got {type(device_id)}"

    args = [to_address(registry), parse_owner_key(owner_key), device_id]

    match version:
        case InitPayloadVersion.v1:
            assert secondary_factory is None, "v1 initialiser does not take secondary factory"
        case InitPayloadVersion.v2:
            assert secondary_factory is not None, "v2 initialiser needs secondary factory"
            args.append(to_address(secondary_factory))

    return encode_call(version.value, args)


def fetch_beacon(network: Network, factory: HexAddress) -> HexAddress:
    """Read the device wallet beacon from the factory."""
    return Web3.to_checksum_address(network.read_state(factory, "beacon()", [], ["address"]))


def predict_device_wallet_address(
    network: Network,
    artifacts: ArtifactStore,
    factory: HexAddress,
    registry: HexAddress,
    owner_key: Sequence[str | bytes],
    device_id: str,
    nonce: int,
    requester: HexAddress,
    version: InitPayloadVersion = InitPayloadVersion.v1,
    strategy: SaltStrategy = SaltStrategy.hashed,
    secondary_factory: HexAddress | None = None,
) -> HexAddress:
    """Predict the address of a device wallet before it is created.

    Only reads the beacon address from the chain, the rest is computed locally.

    :param requester:
        The account calling ``createAccount()``, the eSIM wallet admin

    :param nonce:
        Caller chosen salt value passed to ``createAccount()``
    """
    beacon = fetch_beacon(network, factory)
    salt = compute_salt(requester, nonce, strategy)
    payload = encode_device_wallet_init(version, registry, owner_key, device_id, secondary_factory)
    creation_code = artifacts.get(BEACON_PROXY_ARTIFACT).bytecode

    address = derive_beacon_proxy_address(factory, salt, creation_code, beacon, payload)
    logger.info("Device wallet %s with nonce %d predicted at %s (factory %s, beacon %s, salt 0x%s)", device_id, nonce, address, factory, beacon, salt.hex())
    return address


def fetch_counterfactual_address(
    network: Network,
    factory: HexAddress,
    owner_key: Sequence[str | bytes],
    device_id: str,
    nonce: int,
) -> HexAddress:
    """Ask the factory for the device wallet address."""
    address = network.read_state(
        factory,
        "getCounterfactualAddress(bytes32[2],string,uint256)",
        [parse_owner_key(owner_key), device_id, nonce],
        ["address"],
    )
    return Web3.to_checksum_address(address)


def check_device_wallet_address(
    network: Network,
    artifacts: ArtifactStore,
    factory: HexAddress,
    registry: HexAddress,
    owner_key: Sequence[str | bytes],
    device_id: str,
    nonce: int,
    requester: HexAddress,
    version: InitPayloadVersion = InitPayloadVersion.v1,
    strategy: SaltStrategy = SaltStrategy.hashed,
    secondary_factory: HexAddress | None = None,
) -> DerivationCheck:
    """Compare the predicted device wallet address with the one the factory reports.

    A mismatch is logged at error level. Call :py:meth:`DerivationCheck.assert_match`
    to turn it to an exception.
    """
    derived = predict_device_wallet_address(
        network,
        artifacts,
        factory,
        registry,
        owner_key,
        device_id,
        nonce,
        requester,
        version=version,
        strategy=strategy,
        secondary_factory=secondary_factory,
    )
    reported = fetch_counterfactual_address(network, factory, owner_key, device_id, nonce)
    context = f"Device {device_id}, nonce {nonce}, payload {version.name}, salt strategy {strategy.name}"
    return check_derivation(derived, reported, context)


def check_address_book_device_wallet_address(
    network: Network,
    artifacts: ArtifactStore,
    address_book: Mapping[str, HexAddress],
    owner_key: Sequence[str | bytes],
    device_id: str,
    nonce: int,
    requester: HexAddress,
    version: InitPayloadVersion = InitPayloadVersion.v1,
    strategy: SaltStrategy = SaltStrategy.hashed,
) -> DerivationCheck:
    """Check a device wallet address using the platform contracts of a deployment address book.

    The v2 initialiser gets the eSIM wallet factory proxy as its secondary factory.

    :param address_book:
        Unit name to address mapping of one network, see :py:meth:`eth_deploy.record.DeploymentRecord.get_address_book`
    """
    if version == InitPayloadVersion.v2:
        secondary_factory = to_address(address_book[ESIM_WALLET_FACTORY])
    else:
        secondary_factory = None

    return check_device_wallet_address(
        network,
        artifacts,
        to_address(address_book[DEVICE_WALLET_FACTORY]),
        to_address(address_book[REGISTRY]),
        owner_key,
        device_id,
        nonce,
        requester,
        version=version,
        strategy=strategy,
        secondary_factory=secondary_factory,
    )
