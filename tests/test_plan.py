"""Deployment plan declaration and validation."""

import pytest
from eth_utils import keccak

from eth_deploy.plan import (
    CyclicConstructorDependency,
    DeploymentPlan,
    DeploymentUnit,
    MissingSigner,
    PlanError,
    Ref,
    Role,
    UnitKind,
    WiringStep,
    get_references,
    resolve_args,
    role_id,
)

ADMIN = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
EXTERNAL = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


@pytest.fixture()
def plan() -> DeploymentPlan:
    plan = DeploymentPlan("test")
    plan.add_unit(DeploymentUnit("RegistryImpl", artifact="Registry"))
    plan.add_unit(
        DeploymentUnit(
            "Registry",
            kind=UnitKind.uups_proxy,
            implementation=Ref("RegistryImpl"),
            initializer="initialize(address)",
            args=[ADMIN],
        )
    )
    plan.add_unit(DeploymentUnit("Factory", artifact="Factory", args=[Ref("Registry")], role=Role.admin))
    return plan


def test_proxy_default_artifact():
    unit = DeploymentUnit("Proxy", kind=UnitKind.uups_proxy, implementation=EXTERNAL)
    assert unit.artifact == "ERC1967Proxy"
    assert unit.is_proxy()

    beacon_proxy = DeploymentUnit("Wallet", kind=UnitKind.beacon_proxy, implementation=EXTERNAL)
    assert beacon_proxy.artifact == "BeaconProxy"


def test_duplicate_unit(plan: DeploymentPlan):
    with pytest.raises(PlanError):
        plan.add_unit(DeploymentUnit("Registry", artifact="Registry"))


def test_forward_reference(plan: DeploymentPlan):
    """Constructors can refer only to units declared before."""
    with pytest.raises(CyclicConstructorDependency):
        plan.add_unit(DeploymentUnit("Vault", artifact="Vault", args=[Ref("NotYetDeclared")]))

    assert "Vault" not in plan.units


def test_self_reference(plan: DeploymentPlan):
    with pytest.raises(CyclicConstructorDependency):
        plan.add_unit(DeploymentUnit("Vault", artifact="Vault", args=[[Ref("Vault")]]))


def test_cyclic_dependency_is_plan_error():
    assert issubclass(CyclicConstructorDependency, PlanError)
    assert issubclass(MissingSigner, PlanError)


def test_incomplete_units():
    plan = DeploymentPlan()

    with pytest.raises(PlanError):
        plan.add_unit(DeploymentUnit("EntryPoint", kind=UnitKind.external))

    with pytest.raises(PlanError):
        plan.add_unit(DeploymentUnit("Proxy", kind=UnitKind.uups_proxy))

    with pytest.raises(PlanError):
        plan.add_unit(DeploymentUnit("Proxy", kind=UnitKind.uups_proxy, implementation=EXTERNAL, args=[ADMIN]))

    with pytest.raises(PlanError):
        plan.add_unit(DeploymentUnit("Beacon", kind=UnitKind.beacon, implementation=EXTERNAL))

    with pytest.raises(PlanError):
        plan.add_unit(DeploymentUnit("Contract", artifact="Contract", address=EXTERNAL))

    assert plan.units == {}


def test_wiring_step_undeclared_unit(plan: DeploymentPlan):
    with pytest.raises(PlanError):
        plan.add_wiring_step(WiringStep("Vault", "setVault(address)", [ADMIN], Role.vault))

    with pytest.raises(PlanError):
        plan.add_wiring_step(WiringStep("Registry", "addFactory(address)", [Ref("Vault")], Role.admin))

    assert plan.wiring_steps == []


def test_wiring_step_may_refer_later_units(plan: DeploymentPlan):
    """Circular references are resolved with wiring steps."""
    step = plan.add_wiring_step(WiringStep("Registry", "addFactory(address)", [Ref("Factory")], Role.admin))
    assert step.get_references() == ["Registry", "Factory"]
    assert step.get_fingerprint() == "Registry.addFactory(address)[@Factory]"


def test_fingerprint_with_bytes():
    step = WiringStep("Registry", "grantRole(bytes32,address)", [b"\x01" * 2, ADMIN], Role.deployer)
    assert step.get_fingerprint() == f"Registry.grantRole(bytes32,address)[0x0101,{ADMIN}]"


def test_required_roles(plan: DeploymentPlan):
    plan.add_unit(DeploymentUnit("EntryPoint", kind=UnitKind.external, address=EXTERNAL, role=Role.vault))
    plan.add_wiring_step(WiringStep("Registry", "addFactory(address)", [Ref("Factory")], Role.upgrade_manager))

    # External units need no signer
    assert plan.required_roles() == {Role.deployer, Role.admin, Role.upgrade_manager}


def test_check_signers(plan: DeploymentPlan):
    plan.check_signers({Role.deployer: object(), Role.admin: object()})

    with pytest.raises(MissingSigner) as exc_info:
        plan.check_signers({Role.deployer: object()})

    assert "admin" in str(exc_info.value)


def test_resolve_args():
    addresses = {"Registry": EXTERNAL}
    value = [ADMIN, Ref("Registry"), (Ref("Registry"), 1), [[Ref("Registry")]]]
    assert resolve_args(value, addresses) == [ADMIN, EXTERNAL, (EXTERNAL, 1), [[EXTERNAL]]]
    assert get_references(value) == ["Registry", "Registry", "Registry"]

    with pytest.raises(PlanError):
        resolve_args([Ref("Factory")], addresses)


def test_get_addresses(plan: DeploymentPlan):
    assert plan.get_addresses() == {}
    plan.get_unit("RegistryImpl").address = EXTERNAL.lower()
    assert plan.get_addresses() == {"RegistryImpl": EXTERNAL}

    with pytest.raises(PlanError):
        plan.get_unit("Nope")


def test_role_id():
    """OpenZeppelin AccessControl role hash."""
    assert role_id("UPGRADER_ROLE") == keccak(text="UPGRADER_ROLE")
    assert role_id("UPGRADER_ROLE").hex() == "189ab7a9244df0848122154315af71fe140f3db0fe014031783b0946b8c9d2e3"
