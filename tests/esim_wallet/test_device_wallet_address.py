"""Device wallet counterfactual addresses."""

import json
import logging

import eth_abi
import pytest
from eth_utils import keccak
from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.abi import ArtifactStore
from eth_deploy.codec import EncodingError
from eth_deploy.create2 import DerivationMismatch, SaltStrategy, compute_salt, derive_beacon_proxy_address
from eth_deploy.esim_wallet.deployment import DEVICE_WALLET_FACTORY, ENTRY_POINT, ESIM_WALLET_FACTORY, REGISTRY, build_esim_wallet_plan
from eth_deploy.esim_wallet.device_wallet import (
    BEACON_PROXY_ARTIFACT,
    InitPayloadVersion,
    check_address_book_device_wallet_address,
    check_device_wallet_address,
    encode_device_wallet_init,
    fetch_beacon,
    parse_owner_key,
    predict_device_wallet_address,
)
from eth_deploy.esim_wallet.simulated import SimulatedDeviceWalletFactoryV2, register_esim_wallet_artifacts
from eth_deploy.orchestrator import DeploymentOrchestrator
from eth_deploy.plan import Role
from eth_deploy.record import DeploymentRecord
from eth_deploy.testing import STOP_CONTRACT_BYTECODE, SimulatedNetwork

REGISTRY_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
SECONDARY_FACTORY = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"


def test_encode_init_v1(owner_key):
    payload = encode_device_wallet_init(InitPayloadVersion.v1, REGISTRY_ADDRESS, owner_key, "Device_11")
    assert payload[0:4] == keccak(text="init(address,bytes32[2],string)")[0:4]

    registry, key, device_id = eth_abi.decode(["address", "bytes32[2]", "string"], payload[4:])
    assert Web3.to_checksum_address(registry) == REGISTRY_ADDRESS
    assert list(key) == [HexBytes(k) for k in owner_key]
    assert device_id == "Device_11"


def test_encode_init_v2(owner_key):
    payload = encode_device_wallet_init(InitPayloadVersion.v2, REGISTRY_ADDRESS, owner_key, "Device_11", SECONDARY_FACTORY)
    assert payload[0:4] == keccak(text="init(address,bytes32[2],string,address)")[0:4]

    decoded = eth_abi.decode(["address", "bytes32[2]", "string", "address"], payload[4:])
    assert Web3.to_checksum_address(decoded[3]) == SECONDARY_FACTORY

    # Layouts differ, so do the wallet addresses
    assert payload != encode_device_wallet_init(InitPayloadVersion.v1, REGISTRY_ADDRESS, owner_key, "Device_11")


def test_encode_init_secondary_factory(owner_key):
    with pytest.raises(AssertionError):
        encode_device_wallet_init(InitPayloadVersion.v1, REGISTRY_ADDRESS, owner_key, "Device_11", SECONDARY_FACTORY)

    with pytest.raises(AssertionError):
        encode_device_wallet_init(InitPayloadVersion.v2, REGISTRY_ADDRESS, owner_key, "Device_11")


@pytest.mark.parametrize("registry, secondary_factory", [("0xREG", None), (REGISTRY_ADDRESS, "0x1234")])
def test_encode_init_bad_address(owner_key, registry, secondary_factory):
    version = InitPayloadVersion.v2 if secondary_factory else InitPayloadVersion.v1
    with pytest.raises(EncodingError):
        encode_device_wallet_init(version, registry, owner_key, "Device_11", secondary_factory)


@pytest.mark.parametrize(
    "key",
    [
        ["0x" + "11" * 32],
        ["0x" + "11" * 32, "0x" + "22" * 31],
        ["0x" + "11" * 32, "0x" + "22" * 33],
    ],
)
def test_bad_owner_key(key):
    with pytest.raises(EncodingError):
        parse_owner_key(key)


def test_parse_owner_key(owner_key):
    words = parse_owner_key(owner_key)
    assert words == parse_owner_key([bytes(HexBytes(k)) for k in owner_key])
    assert all(len(w) == 32 for w in words)


def test_device_wallet_address_matches_factory(simulated_network: SimulatedNetwork, artifacts: ArtifactStore, platform: DeploymentRecord, platform_accounts, signers, owner_key):
    """Predicted address is where the factory creates the wallet."""
    factory = platform.get_address(DEVICE_WALLET_FACTORY)
    registry = platform.get_address(REGISTRY)

    check = check_device_wallet_address(simulated_network, artifacts, factory, registry, owner_key, "Device_11", 111, platform_accounts.admin)
    assert check.is_match()
    check.assert_match()
    assert simulated_network.get_code(check.derived) == b""

    simulated_network.submit_call(
        factory,
        "createAccount(string,bytes32[2],uint256,uint256)",
        ["Device_11", parse_owner_key(owner_key), 111, 0],
        signers[Role.admin],
    )

    wallet = check.derived
    assert len(simulated_network.get_code(wallet)) > 0
    assert simulated_network.read_state(wallet, "deviceUniqueIdentifier()", [], ["string"]) == "Device_11"
    assert Web3.to_checksum_address(simulated_network.read_state(wallet, "registry()", [], ["address"])) == registry
    assert Web3.to_checksum_address(simulated_network.read_state(wallet, "entryPoint()", [], ["address"])) == platform.get_address(ENTRY_POINT)


def test_device_wallets_differ(simulated_network: SimulatedNetwork, artifacts: ArtifactStore, platform: DeploymentRecord, platform_accounts, owner_key):
    factory = platform.get_address(DEVICE_WALLET_FACTORY)
    registry = platform.get_address(REGISTRY)
    admin = platform_accounts.admin

    a = predict_device_wallet_address(simulated_network, artifacts, factory, registry, owner_key, "Device_11", 111, admin)
    b = predict_device_wallet_address(simulated_network, artifacts, factory, registry, owner_key, "Device_11", 112, admin)
    c = predict_device_wallet_address(simulated_network, artifacts, factory, registry, owner_key, "Device_12", 111, admin)
    assert len({a, b, c}) == 3


def test_wrong_salt_strategy(simulated_network: SimulatedNetwork, artifacts: ArtifactStore, platform: DeploymentRecord, platform_accounts, owner_key, caplog):
    """Factory hashes the salt, so the padded salt gives a different address."""
    factory = platform.get_address(DEVICE_WALLET_FACTORY)
    registry = platform.get_address(REGISTRY)

    with caplog.at_level(logging.ERROR):
        check = check_device_wallet_address(
            simulated_network,
            artifacts,
            factory,
            registry,
            owner_key,
            "Device_11",
            111,
            platform_accounts.admin,
            strategy=SaltStrategy.padded,
        )

    assert not check.is_match()
    assert caplog.records

    with pytest.raises(DerivationMismatch):
        check.assert_match()


def test_wrong_requester(simulated_network: SimulatedNetwork, artifacts: ArtifactStore, platform: DeploymentRecord, platform_accounts, owner_key):
    """Salt is bound to the eSIM wallet admin calling the factory."""
    check = check_device_wallet_address(
        simulated_network,
        artifacts,
        platform.get_address(DEVICE_WALLET_FACTORY),
        platform.get_address(REGISTRY),
        owner_key,
        "Device_11",
        111,
        platform_accounts.vault,
    )
    assert not check.is_match()


def test_init_payload_v2(platform_accounts, signers, owner_key):
    """Factory with the v2 device wallet initialiser."""
    network = SimulatedNetwork("v2")
    artifacts = ArtifactStore()
    register_esim_wallet_artifacts(network, artifacts, device_wallet_factory_model=SimulatedDeviceWalletFactoryV2)
    record = DeploymentOrchestrator(network, artifacts).deploy(build_esim_wallet_plan(platform_accounts), signers)

    factory = record.get_address(DEVICE_WALLET_FACTORY)
    registry = record.get_address(REGISTRY)
    esim_wallet_factory = record.get_address(ESIM_WALLET_FACTORY)
    admin = platform_accounts.admin

    v2 = check_device_wallet_address(network, artifacts, factory, registry, owner_key, "Device_11", 111, admin, version=InitPayloadVersion.v2, secondary_factory=esim_wallet_factory)
    assert v2.is_match()

    v1 = check_device_wallet_address(network, artifacts, factory, registry, owner_key, "Device_11", 111, admin)
    assert not v1.is_match()

    network.submit_call(factory, "createAccount(string,bytes32[2],uint256,uint256)", ["Device_11", parse_owner_key(owner_key), 111, 0], signers[Role.admin])
    assert network.get_contract(v2.derived).secondary_factory == esim_wallet_factory


def test_address_book_v2(platform_accounts, signers, owner_key, tmp_path):
    """v2 check takes the secondary factory from the exported address book."""
    network = SimulatedNetwork("v2")
    artifacts = ArtifactStore()
    register_esim_wallet_artifacts(network, artifacts, device_wallet_factory_model=SimulatedDeviceWalletFactoryV2)
    record = DeploymentOrchestrator(network, artifacts).deploy(build_esim_wallet_plan(platform_accounts), signers)

    path = tmp_path / "address.json"
    record.export_address_book(path)
    address_book = json.loads(path.read_text())["v2"]

    check = check_address_book_device_wallet_address(network, artifacts, address_book, owner_key, "Device_11", 111, platform_accounts.admin, version=InitPayloadVersion.v2)
    assert check.is_match()

    v1 = check_address_book_device_wallet_address(network, artifacts, address_book, owner_key, "Device_11", 111, platform_accounts.admin)
    assert not v1.is_match()


def test_address_book_v1(simulated_network: SimulatedNetwork, artifacts: ArtifactStore, platform: DeploymentRecord, platform_accounts, owner_key):
    check = check_address_book_device_wallet_address(simulated_network, artifacts, platform.get_address_book(), owner_key, "Device_11", 111, platform_accounts.admin)
    assert check.is_match()


def test_device_wallet_derivation_on_evm(web3: Web3, deployer: str, create2_factory: str, owner_key):
    """Beacon proxy address with a real initialiser payload agrees with the EVM."""
    artifacts = ArtifactStore()
    artifacts.register(BEACON_PROXY_ARTIFACT, [], STOP_CONTRACT_BYTECODE)
    beacon = "0x9fE46736679d2D9a65F0992F2272dE9f3c7fa6e0"

    payload = encode_device_wallet_init(InitPayloadVersion.v1, REGISTRY_ADDRESS, owner_key, "Device_11")
    salt = compute_salt(deployer, 111)
    creation_code = artifacts.get(BEACON_PROXY_ARTIFACT).bytecode
    predicted = derive_beacon_proxy_address(create2_factory, salt, creation_code, beacon, payload)

    init_code = creation_code + eth_abi.encode(["address", "bytes"], [beacon, payload])
    tx_hash = web3.eth.send_transaction({"from": deployer, "to": create2_factory, "data": HexBytes(salt + init_code), "gas": 1_000_000})
    receipt = web3.eth.wait_for_transaction_receipt(tx_hash)
    assert receipt["status"] == 1
    assert web3.eth.get_code(predicted) == HexBytes("0x00")


def test_fetch_beacon(simulated_network: SimulatedNetwork, platform: DeploymentRecord):
    factory = platform.get_address(DEVICE_WALLET_FACTORY)
    beacon = fetch_beacon(simulated_network, factory)
    assert simulated_network.get_contract(beacon).current_owner == factory
