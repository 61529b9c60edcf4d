"""Beacon implementation upgrades on the simulated network."""

import logging

import pytest
from eth_abi import encode
from web3 import Web3

from eth_deploy.abi import ArtifactStore
from eth_deploy.confirmation import TransactionFailure
from eth_deploy.orchestrator import DeploymentOrchestrator
from eth_deploy.plan import DeploymentPlan, DeploymentUnit, MissingSigner, Ref, Role
from eth_deploy.record import DeploymentRecord
from eth_deploy.testing import SimulatedContract, SimulatedNetwork, SimulatedUpgradeableBeacon, contract_function
from eth_deploy.upgrade import UpgradeCoordinator, UpgradeState, UpgradeVerificationFailed


class Implementation(SimulatedContract):
    """Logic contract behind the beacon."""


class BeaconOwner(SimulatedContract):
    """Creates and owns a beacon, like a wallet factory does."""

    constructor_types = ["address", "address"]

    def constructor(self, sender, implementation, upgrader):
        beacon_code = self.network.get_bytecode(SimulatedUpgradeableBeacon) + encode(["address", "address"], [implementation, self.address])
        self.beacon = self.network.create(self.address, beacon_code)
        self.upgrader = Web3.to_checksum_address(upgrader)

    @contract_function("implementation()", returns=["address"])
    def implementation(self, sender):
        return self.call(self.beacon, "implementation()")

    @contract_function("upgrade(address)")
    def upgrade(self, sender, new_implementation):
        self.require(sender == self.upgrader, "Only upgrader")
        self.call(self.beacon, "upgradeTo(address)", new_implementation)


class NoopBeaconOwner(BeaconOwner):
    """Accepts the upgrade call, but never touches the beacon."""

    @contract_function("upgrade(address)")
    def upgrade(self, sender, new_implementation):
        self.require(sender == self.upgrader, "Only upgrader")


@pytest.fixture()
def network() -> SimulatedNetwork:
    return SimulatedNetwork("test")


@pytest.fixture()
def artifacts(network) -> ArtifactStore:
    artifacts = ArtifactStore()
    network.register_openzeppelin_artifacts(artifacts)
    network.register_artifact(artifacts, "Implementation", Implementation)
    network.register_artifact(artifacts, "BeaconOwner", BeaconOwner)
    network.register_artifact(artifacts, "NoopBeaconOwner", NoopBeaconOwner)
    return artifacts


@pytest.fixture()
def orchestrator(network, artifacts) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(network, artifacts)


@pytest.fixture()
def signers(role_accounts) -> dict:
    return {Role.deployer: role_accounts[Role.deployer], Role.upgrade_manager: role_accounts[Role.upgrade_manager]}


def deploy_beacon_owner(orchestrator: DeploymentOrchestrator, signers: dict, record: DeploymentRecord, artifact="BeaconOwner") -> DeploymentPlan:
    plan = DeploymentPlan("beacon")
    plan.add_unit(DeploymentUnit("ImplementationV1", artifact="Implementation"))
    plan.add_unit(DeploymentUnit("BeaconOwner", artifact=artifact, args=[Ref("ImplementationV1"), signers[Role.upgrade_manager].address]))
    orchestrator.deploy(plan, signers, record)
    return plan


def upgrade(coordinator: UpgradeCoordinator, beacon_owner: str, signers: dict, record: DeploymentRecord | None):
    return coordinator.upgrade_beacon_implementation(
        beacon_owner,
        DeploymentUnit("ImplementationV2", artifact="Implementation"),
        "upgrade(address)",
        "implementation()",
        Role.upgrade_manager,
        signers,
        record,
    )


def count_upgrade_calls(network: SimulatedNetwork) -> int:
    return len([tx for tx in network.transactions if tx[2] == "upgrade(address)"])


def test_upgrade_verified(network: SimulatedNetwork, orchestrator: DeploymentOrchestrator, signers):
    record = DeploymentRecord(network.name)
    deploy_beacon_owner(orchestrator, signers, record)
    beacon_owner = record.get_address("BeaconOwner")

    result = upgrade(UpgradeCoordinator(orchestrator), beacon_owner, signers, record)

    assert result.state == UpgradeState.verified
    assert result.is_verified()
    assert result.previous_implementation == record.get_address("ImplementationV1")
    assert result.new_implementation == record.get_address("ImplementationV2")
    assert result.reported_implementation == result.new_implementation
    assert result.tx_hash is not None
    result.raise_for_state()

    assert record.upgrades[0].state == "verified"
    assert record.upgrades[0].beacon_owner == beacon_owner
    assert count_upgrade_calls(network) == 1


def test_upgrade_twice(network: SimulatedNetwork, orchestrator: DeploymentOrchestrator, signers, tmp_path):
    """Running the same upgrade again only verifies the state."""
    record = DeploymentRecord.load(tmp_path, network.name)
    deploy_beacon_owner(orchestrator, signers, record)
    beacon_owner = record.get_address("BeaconOwner")
    coordinator = UpgradeCoordinator(orchestrator)

    first = upgrade(coordinator, beacon_owner, signers, record)
    tx_count = len(network.transactions)

    record = DeploymentRecord.load(tmp_path, network.name)
    second = upgrade(coordinator, beacon_owner, signers, record)

    assert first.is_verified()
    assert second.is_verified()
    assert second.new_implementation == first.new_implementation
    assert second.previous_implementation == first.new_implementation
    assert second.tx_hash is None

    # No new implementation, no new upgrade transaction
    assert len(network.transactions) == tx_count
    assert count_upgrade_calls(network) == 1
    assert len(record.upgrades) == 2


def test_upgrade_did_not_take_effect(network: SimulatedNetwork, orchestrator: DeploymentOrchestrator, signers, caplog):
    """Upgrade transaction succeeds, but the beacon still points to the old implementation."""
    record = DeploymentRecord(network.name)
    deploy_beacon_owner(orchestrator, signers, record, artifact="NoopBeaconOwner")

    with caplog.at_level(logging.ERROR):
        result = upgrade(UpgradeCoordinator(orchestrator), record.get_address("BeaconOwner"), signers, record)

    assert result.state == UpgradeState.verification_failed
    assert result.reported_implementation == record.get_address("ImplementationV1")
    assert result.new_implementation == record.get_address("ImplementationV2")
    assert "Upgrade verification failed" in caplog.text
    assert record.upgrades[0].state == "verification_failed"

    with pytest.raises(UpgradeVerificationFailed):
        result.raise_for_state()


def test_upgrade_missing_signer(network: SimulatedNetwork, orchestrator: DeploymentOrchestrator, signers):
    record = DeploymentRecord(network.name)
    deploy_beacon_owner(orchestrator, signers, record)
    tx_count = len(network.transactions)

    with pytest.raises(MissingSigner):
        upgrade(UpgradeCoordinator(orchestrator), record.get_address("BeaconOwner"), {Role.deployer: signers[Role.deployer]}, record)

    assert len(network.transactions) == tx_count


def test_upgrade_wrong_signer(network: SimulatedNetwork, orchestrator: DeploymentOrchestrator, signers, role_accounts):
    """The upgrade call reverts if sent by an account not allowed to upgrade."""
    record = DeploymentRecord(network.name)
    deploy_beacon_owner(orchestrator, signers, record)

    wrong_signers = {Role.deployer: signers[Role.deployer], Role.upgrade_manager: role_accounts[Role.admin]}
    with pytest.raises(TransactionFailure):
        upgrade(UpgradeCoordinator(orchestrator), record.get_address("BeaconOwner"), wrong_signers, record)

    # Implementation got deployed, but nothing was upgraded
    assert record.get_address("ImplementationV2") is not None
    assert record.upgrades == []
    assert count_upgrade_calls(network) == 0
