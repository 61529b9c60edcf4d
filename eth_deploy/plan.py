"""Declarative deployment plans.

A plan is a list of deployable units and a list of post-deployment wiring steps.

- Units may take the addresses of *earlier* units as constructor or initialiser arguments, using :py:class:`Ref`

- Circular references between contracts are never resolved at construction time.
  Instead the plan declares :py:class:`WiringStep` setter calls that run after all units exist.

- Each wiring step declares the :py:class:`Role` whose signer must send it

Example:

.. code-block:: python

    plan = DeploymentPlan("example")
    plan.add_unit(DeploymentUnit("RegistryImpl", artifact="Registry"))
    plan.add_unit(DeploymentUnit(
        "RegistryProxy",
        kind=UnitKind.uups_proxy,
        implementation=Ref("RegistryImpl"),
        initializer="initialize(address)",
        args=[admin],
    ))
    plan.add_unit(DeploymentUnit("FactoryImpl", artifact="Factory"))
    plan.add_unit(DeploymentUnit(
        "FactoryProxy",
        kind=UnitKind.uups_proxy,
        implementation=Ref("FactoryImpl"),
        initializer="initialize(address)",
        args=[admin],
    ))
    plan.add_wiring_step(WiringStep("RegistryProxy", "addFactory(address)", [Ref("FactoryProxy")], Role.admin))
    plan.add_wiring_step(WiringStep("FactoryProxy", "addRegistryAddress(address)", [Ref("RegistryProxy")], Role.admin))

Plans are validated when declared, before any network call.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from eth_typing import HexAddress
from eth_utils import keccak
from web3 import Web3


class PlanError(Exception):
    """Deployment plan is not valid."""


class CyclicConstructorDependency(PlanError):
    """A unit constructor refers to a unit that is not declared before it.

    Circular references must be resolved with wiring steps.
    """


class MissingSigner(PlanError):
    """There is no signer for a role the plan needs."""


class Role(enum.Enum):
    """Authorisation roles of a deployment.

    Each role maps to one signing account when the plan is executed.
    """

    #: Sends creation transactions
    deployer = "deployer"

    #: Platform administrator
    admin = "admin"

    #: Vault account
    vault = "vault"

    #: Can upgrade implementations
    upgrade_manager = "upgrade_manager"


class UnitKind(enum.Enum):
    """What kind of contract a deployment unit is."""

    #: Plain contract, artifact constructor
    contract = "contract"

    #: ERC-1967 proxy of an UUPS implementation, ``constructor(address implementation, bytes data)``
    uups_proxy = "uups_proxy"

    #: ``constructor(address logic, address initialOwner, bytes data)``
    transparent_proxy = "transparent_proxy"

    #: ``UpgradeableBeacon``, ``constructor(address implementation, address initialOwner)``
    beacon = "beacon"

    #: ``BeaconProxy``, ``constructor(address beacon, bytes data)``
    beacon_proxy = "beacon_proxy"

    #: Already exists on the chain, address given in the plan
    external = "external"


class UnitStatus(enum.Enum):
    """Deployment progress of a unit."""

    pending = "pending"

    #: Creation transaction confirmed
    deployed = "deployed"

    #: We have checked the address has code
    verified = "verified"


#: Default OpenZeppelin artifact names for proxy kinds
DEFAULT_PROXY_ARTIFACTS = {
    UnitKind.uups_proxy: "ERC1967Proxy",
    UnitKind.transparent_proxy: "TransparentUpgradeableProxy",
    UnitKind.beacon: "UpgradeableBeacon",
    UnitKind.beacon_proxy: "BeaconProxy",
}

#: OpenZeppelin v5 constructor schemas of proxy kinds
PROXY_CONSTRUCTOR_TYPES = {
    UnitKind.uups_proxy: ["address", "bytes"],
    UnitKind.transparent_proxy: ["address", "address", "bytes"],
    UnitKind.beacon: ["address", "address"],
    UnitKind.beacon_proxy: ["address", "bytes"],
}


def role_id(name: str) -> bytes:
    """OpenZeppelin AccessControl role identifier.

    Example:

    .. code-block:: python

        upgrader_role = role_id("UPGRADER_ROLE")
    """
    return keccak(text=name)


@dataclass(slots=True, frozen=True)
class Ref:
    """Argument placeholder resolving to the address of an earlier unit."""

    #: Unit name
    unit: str

    def __repr__(self):
        return f"@{self.unit}"


def get_references(value: Any) -> list[str]:
    """Find all unit names referred in a (nested) argument value."""
    if isinstance(value, Ref):
        return [value.unit]
    if isinstance(value, (list, tuple)):
        refs = []
        for v in value:
            refs += get_references(v)
        return refs
    return []


def resolve_args(value: Any, addresses: Mapping[str, HexAddress]) -> Any:
    """Replace :py:class:`Ref` placeholders with the resolved addresses.

    Lists and tuples are resolved recursively and keep their type.

    :raise PlanError:
        A referred unit has no address yet
    """
    if isinstance(value, Ref):
        address = addresses.get(value.unit)
        if address is None:
            raise PlanError(f"Unit {value.unit} has no resolved address yet")
        return address
    if isinstance(value, list):
        return [resolve_args(v, addresses) for v in value]
    if isinstance(value, tuple):
        return tuple(resolve_args(v, addresses) for v in value)
    return value


def format_arg(value: Any) -> str:
    """Stable human readable form of an argument, used in fingerprints and logs."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(format_arg(v) for v in value) + "]"
    return repr(value) if isinstance(value, Ref) else str(value)


@dataclass(slots=True)
class DeploymentUnit:
    """One contract or proxy to deploy.

    For proxy kinds ``args`` are the initialiser arguments, encoded as
    ``initializer`` call data and passed to the proxy constructor.
    For plain contracts ``args`` are the constructor arguments.
    """

    #: Logical name, the key in the address book
    name: str

    #: Compiled artifact name.
    #:
    #: Proxy kinds default to OpenZeppelin artifacts.
    artifact: str | None = None

    #: Constructor or initialiser arguments, may contain :py:class:`Ref`
    args: list = field(default_factory=list)

    kind: UnitKind = UnitKind.contract

    #: Proxy implementation, or the beacon of a beacon proxy
    implementation: Ref | str | None = None

    #: Initialiser function signature for proxy kinds, like ``initialize(address,address)``
    initializer: str | None = None

    #: Beacon owner or transparent proxy admin
    owner: Ref | str | None = None

    #: Who sends the creation transaction
    role: Role = Role.deployer

    #: Set by the orchestrator, or given for external units
    address: HexAddress | None = None

    #: Set by the orchestrator
    status: UnitStatus = UnitStatus.pending

    def __post_init__(self):
        assert type(self.name) == str and self.name, f"Bad unit name: {self.name}"
        assert isinstance(self.kind, UnitKind), f"Bad kind: {self.kind}"
        assert isinstance(self.role, Role), f"Bad role: {self.role}"
        assert type(self.args) in (list, tuple), f"Args must be a list: {self.args}"

        if self.artifact is None:
            self.artifact = DEFAULT_PROXY_ARTIFACTS.get(self.kind)

    def __repr__(self):
        return f"<Unit {self.name} {self.kind.name} {self.status.name} {self.address or '-'}>"

    def get_references(self) -> list[str]:
        """All unit names this unit needs at the construction time."""
        return get_references(self.args) + get_references(self.implementation) + get_references(self.owner)

    def is_proxy(self) -> bool:
        return self.kind in PROXY_CONSTRUCTOR_TYPES

    def validate(self):
        """Check the unit declaration is complete for its kind.

        :raise PlanError:
        """
        if self.kind == UnitKind.external:
            if not self.address:
                raise PlanError(f"External unit {self.name} must have an address")
            return

        if self.address:
            raise PlanError(f"Unit {self.name} has an address, but is not external")

        if not self.artifact:
            raise PlanError(f"Unit {self.name} has no artifact")

        if self.is_proxy() and self.implementation is None:
            raise PlanError(f"Unit {self.name} of kind {self.kind.name} needs implementation")

        if self.kind == UnitKind.beacon and self.args:
            raise PlanError(f"Beacon {self.name} takes no initialiser arguments")

        if self.kind in (UnitKind.uups_proxy, UnitKind.transparent_proxy, UnitKind.beacon_proxy):
            if self.args and not self.initializer:
                raise PlanError(f"Unit {self.name} has initialiser arguments but no initializer signature")

        if self.kind in (UnitKind.beacon, UnitKind.transparent_proxy) and self.owner is None:
            raise PlanError(f"Unit {self.name} of kind {self.kind.name} needs owner")


@dataclass(slots=True)
class WiringStep:
    """A configuration call after all units are deployed."""

    #: Unit name of the called contract
    target: str

    #: Canonical Solidity signature like ``addRegistryAddress(address)``
    function_signature: str

    #: Call arguments, may contain :py:class:`Ref`
    args: list

    #: Role whose signer sends the call
    role: Role

    #: Human readable description for logs
    description: str = ""

    def __post_init__(self):
        assert isinstance(self.role, Role), f"Bad role: {self.role}"
        assert "(" in self.function_signature, f"Not a function signature: {self.function_signature}"
        assert type(self.args) in (list, tuple), f"Args must be a list: {self.args}"

    def __repr__(self):
        return f"<WiringStep {self.get_fingerprint()} as {self.role.name}>"

    def get_references(self) -> list[str]:
        return [self.target] + get_references(self.args)

    def get_fingerprint(self) -> str:
        """Identify what this step does.

        Used to detect a plan that changed under a partially applied deployment record.
        """
        return f"{self.target}.{self.function_signature}{format_arg(list(self.args))}"


class DeploymentPlan:
    """Ordered deployment units and wiring steps.

    The declaration order of units is a valid topological order,
    as each unit can refer only to units declared before it.
    """

    def __init__(self, name: str = "deployment"):
        self.name = name
        self.units: dict[str, DeploymentUnit] = {}
        self.wiring_steps: list[WiringStep] = []

    def __repr__(self):
        return f"<DeploymentPlan {self.name} units:{len(self.units)} wiring steps:{len(self.wiring_steps)}>"

    def add_unit(self, unit: DeploymentUnit) -> DeploymentUnit:
        """Declare a new unit.

        :raise CyclicConstructorDependency:
            The unit refers to a unit not declared before it

        :raise PlanError:
            Duplicate name or otherwise incomplete declaration
        """
        assert isinstance(unit, DeploymentUnit), f"Got {type(unit)}"

        if unit.name in self.units:
            raise PlanError(f"Duplicate unit name: {unit.name}")

        for ref in unit.get_references():
            if ref == unit.name:
                raise CyclicConstructorDependency(f"Unit {unit.name} refers to itself in its constructor")
            if ref not in self.units:
                raise CyclicConstructorDependency(f"Unit {unit.name} constructor refers to {ref} that is not declared before it. Use a wiring step for circular references.")

        unit.validate()
        self.units[unit.name] = unit
        return unit

    def add_wiring_step(self, step: WiringStep) -> WiringStep:
        """Declare a configuration call.

        Steps run in the declaration order.

        :raise PlanError:
            Step refers to an undeclared unit
        """
        assert isinstance(step, WiringStep), f"Got {type(step)}"
        for ref in step.get_references():
            if ref not in self.units:
                raise PlanError(f"Wiring step {step.get_fingerprint()} refers to undeclared unit {ref}")
        self.wiring_steps.append(step)
        return step

    def get_unit(self, name: str) -> DeploymentUnit:
        try:
            return self.units[name]
        except KeyError as e:
            raise PlanError(f"No unit {name} in plan {self.name}") from e

    def required_roles(self) -> set[Role]:
        """Every role needed to run the plan from start to finish."""
        roles = {u.role for u in self.units.values() if u.kind != UnitKind.external}
        roles |= {s.role for s in self.wiring_steps}
        return roles

    def check_signers(self, signers: Mapping[Role, Any], roles: Iterable[Role] | None = None):
        """Check we have a signer for every role.

        :raise MissingSigner:
        """
        if roles is None:
            roles = self.required_roles()
        missing = sorted(r.name for r in roles if signers.get(r) is None)
        if missing:
            raise MissingSigner(f"Plan {self.name} needs signers for roles: {', '.join(missing)}")

    def get_addresses(self) -> dict[str, HexAddress]:
        """Resolved addresses of units so far."""
        return {name: Web3.to_checksum_address(u.address) for name, u in self.units.items() if u.address}
