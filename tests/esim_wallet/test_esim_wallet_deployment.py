"""eSIM wallet platform deployment plan."""

import json

import pytest
from web3 import Web3

from eth_deploy.esim_wallet.deployment import (
    DEVICE_WALLET_FACTORY,
    DEVICE_WALLET_IMPLEMENTATION,
    ENTRY_POINT,
    ESIM_WALLET_FACTORY,
    LAZY_WALLET_REGISTRY,
    P256_VERIFIER,
    REGISTRY,
    UPGRADER_ROLE,
    ESIMWalletAccounts,
    build_esim_wallet_plan,
    upgrade_device_wallet,
)
from eth_deploy.esim_wallet.simulated import DEFAULT_ADMIN_ROLE
from eth_deploy.orchestrator import DeploymentHalted, DeploymentOrchestrator
from eth_deploy.plan import Role, UnitKind
from eth_deploy.record import DeploymentRecord
from eth_deploy.testing import SimulatedNetwork
from eth_deploy.upgrade import UpgradeCoordinator, UpgradeState


def read_address(network: SimulatedNetwork, target: str, function_signature: str) -> str:
    return Web3.to_checksum_address(network.read_state(target, function_signature, [], ["address"]))


def count_creations(network: SimulatedNetwork) -> int:
    return len([tx for tx in network.transactions if tx[2] == "constructor"])


def test_plan_declaration(platform_accounts: ESIMWalletAccounts):
    plan = build_esim_wallet_plan(platform_accounts)
    assert len(plan.units) == 12
    assert len(plan.wiring_steps) == 8
    assert plan.required_roles() == {Role.deployer, Role.admin, Role.vault, Role.upgrade_manager}
    assert plan.get_unit(REGISTRY).kind == UnitKind.uups_proxy

    # Registry initialiser needs both factories
    names = list(plan.units)
    assert names.index(REGISTRY) > names.index(DEVICE_WALLET_FACTORY)
    assert names.index(REGISTRY) > names.index(ESIM_WALLET_FACTORY)
    assert names.index(LAZY_WALLET_REGISTRY) > names.index(REGISTRY)


def test_same_admin_and_upgrade_manager(role_accounts):
    """No role grants are needed when the admin is also the upgrade manager."""
    admin = role_accounts[Role.admin].address
    accounts = ESIMWalletAccounts(admin=admin, vault=role_accounts[Role.vault].address, upgrade_manager=admin)
    plan = build_esim_wallet_plan(accounts)
    assert len(plan.wiring_steps) == 4
    assert all(s.function_signature != "grantRole(bytes32,address)" for s in plan.wiring_steps)


def test_bad_accounts():
    with pytest.raises(AssertionError):
        ESIMWalletAccounts(admin="0x1", vault="0x1", upgrade_manager="0x1")


def test_deploy_platform(simulated_network: SimulatedNetwork, platform: DeploymentRecord, platform_accounts: ESIMWalletAccounts, role_accounts):
    """Every contract is deployed and the registry and factories point to each other."""
    network = simulated_network
    book = platform.get_address_book()
    assert set(book.keys()) == {
        "EntryPoint",
        "P256Verifier",
        "DeviceWalletImplementation",
        "DeviceWalletFactoryImplementation",
        "DeviceWalletFactoryProxy",
        "ESIMWalletImplementation",
        "ESIMWalletFactoryImplementation",
        "ESIMWalletFactoryProxy",
        "RegistryImplementation",
        "RegistryProxy",
        "LazyWalletRegistryImplementation",
        "LazyWalletRegistryProxy",
    }
    assert len(set(book.values())) == 12
    assert sorted(platform.wiring_steps.keys()) == list(range(8))

    assert read_address(network, book[REGISTRY], "lazyWalletRegistry()") == book[LAZY_WALLET_REGISTRY]
    assert read_address(network, book[REGISTRY], "deviceWalletFactory()") == book[DEVICE_WALLET_FACTORY]
    assert read_address(network, book[DEVICE_WALLET_FACTORY], "registry()") == book[REGISTRY]
    assert read_address(network, book[ESIM_WALLET_FACTORY], "registry()") == book[REGISTRY]
    assert read_address(network, book[DEVICE_WALLET_FACTORY], "vault()") == platform_accounts.vault
    assert read_address(network, book[DEVICE_WALLET_FACTORY], "getCurrentDeviceWalletImplementation()") == book[DEVICE_WALLET_IMPLEMENTATION]
    assert read_address(network, book[DEVICE_WALLET_IMPLEMENTATION], "entryPoint()") == book[ENTRY_POINT]

    deployer = role_accounts[Role.deployer].address
    for name in (REGISTRY, LAZY_WALLET_REGISTRY, DEVICE_WALLET_FACTORY, ESIM_WALLET_FACTORY):
        assert network.read_state(book[name], "hasRole(bytes32,address)", [UPGRADER_ROLE, platform_accounts.upgrade_manager], ["bool"]) is True
        assert network.read_state(book[name], "hasRole(bytes32,address)", [DEFAULT_ADMIN_ROLE, deployer], ["bool"]) is True


def test_wiring_roles(simulated_network: SimulatedNetwork, platform: DeploymentRecord, platform_accounts: ESIMWalletAccounts, role_accounts):
    """Each configuration call is sent by the account the contract expects."""
    book = platform.get_address_book()
    calls = [tx for tx in simulated_network.transactions if tx[2] != "constructor"]
    assert calls[0:4] == [
        (platform_accounts.upgrade_manager, book[REGISTRY], "addOrUpdateLazyWalletRegistryAddress(address)"),
        (platform_accounts.admin, book[DEVICE_WALLET_FACTORY], "addRegistryAddress(address)"),
        (platform_accounts.upgrade_manager, book[ESIM_WALLET_FACTORY], "addRegistryAddress(address)"),
        (platform_accounts.vault, book[DEVICE_WALLET_FACTORY], "setVault(address)"),
    ]
    assert {tx[0] for tx in calls[4:]} == {role_accounts[Role.deployer].address}


def test_wiring_by_wrong_account(simulated_network: SimulatedNetwork, orchestrator: DeploymentOrchestrator, platform_accounts: ESIMWalletAccounts, signers):
    """Registry rejects the lazy wallet registry from anyone but the upgrade manager."""
    signers = dict(signers)
    signers[Role.upgrade_manager] = signers[Role.admin]

    with pytest.raises(DeploymentHalted) as exc_info:
        orchestrator.deploy(build_esim_wallet_plan(platform_accounts), signers)

    assert exc_info.value.phase == "wiring"
    assert exc_info.value.index == 0
    assert "Only upgrade manager" in str(exc_info.value)


def test_external_entry_point(simulated_network: SimulatedNetwork, artifacts, orchestrator: DeploymentOrchestrator, platform_accounts: ESIMWalletAccounts, signers):
    """An entry point already on the chain is used as is."""
    entry_point = simulated_network.submit_creation(artifacts.get("EntryPoint").bytecode, b"", signers[Role.deployer]).address

    plan = build_esim_wallet_plan(platform_accounts, entry_point=entry_point)
    record = orchestrator.deploy(plan, signers)

    assert plan.get_unit(ENTRY_POINT).kind == UnitKind.external
    assert record.get_address(ENTRY_POINT) == entry_point
    assert read_address(simulated_network, record.get_address(DEVICE_WALLET_IMPLEMENTATION), "entryPoint()") == entry_point
    assert count_creations(simulated_network) == 12


def test_resume_completed_deployment(simulated_network: SimulatedNetwork, orchestrator: DeploymentOrchestrator, platform_accounts: ESIMWalletAccounts, signers, tmp_path):
    """Running the deployment script again does nothing."""
    record = DeploymentRecord.load(tmp_path, simulated_network.name)
    orchestrator.deploy(build_esim_wallet_plan(platform_accounts), signers, record)
    tx_count = len(simulated_network.transactions)

    record = DeploymentRecord.load(tmp_path, simulated_network.name)
    orchestrator.deploy(build_esim_wallet_plan(platform_accounts), signers, record)
    assert len(simulated_network.transactions) == tx_count

    path = tmp_path / "address.json"
    record.export_address_book(path)
    with open(path, "rt") as f:
        book = json.load(f)
    assert book[simulated_network.name][REGISTRY] == record.get_address(REGISTRY)


def test_upgrade_device_wallet(simulated_network: SimulatedNetwork, orchestrator: DeploymentOrchestrator, platform: DeploymentRecord, signers):
    """Device wallet beacon moves to a new implementation once."""
    coordinator = UpgradeCoordinator(orchestrator)
    factory = platform.get_address(DEVICE_WALLET_FACTORY)
    entry_point = platform.get_address(ENTRY_POINT)
    verifier = platform.get_address(P256_VERIFIER)

    result = upgrade_device_wallet(coordinator, factory, entry_point, verifier, signers, platform)
    assert result.state == UpgradeState.verified
    assert result.previous_implementation == platform.get_address(DEVICE_WALLET_IMPLEMENTATION)
    assert read_address(simulated_network, factory, "getCurrentDeviceWalletImplementation()") == result.new_implementation

    again = upgrade_device_wallet(coordinator, factory, entry_point, verifier, signers, platform)
    assert again.state == UpgradeState.verified
    assert again.new_implementation == result.new_implementation
    assert again.tx_hash is None

    upgrade_calls = [tx for tx in simulated_network.transactions if tx[2] == "updateDeviceWalletImplementation(address)"]
    assert upgrade_calls == [(signers[Role.upgrade_manager].address, factory, "updateDeviceWalletImplementation(address)")]
    assert len(platform.upgrades) == 2
