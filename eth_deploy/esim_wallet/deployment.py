"""eSIM wallet platform deployment.

- :py:func:`build_esim_wallet_plan` declares the full platform deployment:
  implementations, UUPS proxies in the order their initialisers need them,
  and the post-deployment wiring that links registry and factories together

- :py:func:`upgrade_device_wallet` rolls all device wallets forward to a new ``DeviceWallet`` implementation

Example:

.. code-block:: python

    accounts = ESIMWalletAccounts(
        admin=os.environ["ESIM_WALLET_ADMIN"],
        vault=os.environ["VAULT"],
        upgrade_manager=os.environ["UPGRADE_MANAGER"],
    )
    plan = build_esim_wallet_plan(accounts, entry_point=os.environ.get("ENTRY_POINT_ZERO_POINT_SEVEN_ADDRESS"))
    record = orchestrator.deploy(plan, signers, record)
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from eth_typing import HexAddress
from web3 import Web3

from eth_deploy.plan import DeploymentPlan, DeploymentUnit, Ref, Role, UnitKind, WiringStep, role_id
from eth_deploy.record import DeploymentRecord
from eth_deploy.upgrade import UpgradeCoordinator, UpgradeResult

logger = logging.getLogger(__name__)

#: Unit names. Proxies use the keys of the Hardhat address book of the platform.
ENTRY_POINT = "EntryPoint"
P256_VERIFIER = "P256Verifier"
DEVICE_WALLET_IMPLEMENTATION = "DeviceWalletImplementation"
DEVICE_WALLET_FACTORY_IMPLEMENTATION = "DeviceWalletFactoryImplementation"
DEVICE_WALLET_FACTORY = "DeviceWalletFactoryProxy"
ESIM_WALLET_IMPLEMENTATION = "ESIMWalletImplementation"
ESIM_WALLET_FACTORY_IMPLEMENTATION = "ESIMWalletFactoryImplementation"
ESIM_WALLET_FACTORY = "ESIMWalletFactoryProxy"
REGISTRY_IMPLEMENTATION = "RegistryImplementation"
REGISTRY = "RegistryProxy"
LAZY_WALLET_REGISTRY_IMPLEMENTATION = "LazyWalletRegistryImplementation"
LAZY_WALLET_REGISTRY = "LazyWalletRegistryProxy"

UPGRADER_ROLE = role_id("UPGRADER_ROLE")

DEVICE_WALLET_UPGRADE_FUNCTION = "updateDeviceWalletImplementation(address)"
DEVICE_WALLET_IMPLEMENTATION_GETTER = "getCurrentDeviceWalletImplementation()"


@dataclass(slots=True, frozen=True)
class ESIMWalletAccounts:
    """Platform accounts written to the contracts at initialisation."""

    #: eSIM wallet admin, creates device wallets
    admin: HexAddress

    #: Receives the platform funds
    vault: HexAddress

    #: Can upgrade the platform contracts
    upgrade_manager: HexAddress

    def __post_init__(self):
        for name in ("admin", "vault", "upgrade_manager"):
            value = getattr(self, name)
            assert Web3.is_address(value), f"{name} is not an address: {value}"


def build_esim_wallet_plan(accounts: ESIMWalletAccounts, entry_point: HexAddress | None = None) -> DeploymentPlan:
    """Declare the eSIM wallet platform deployment.

    :param accounts:
        Admin, vault and upgrade manager

    :param entry_point:
        Address of an already deployed ERC-4337 entry point.

        If not given, ``EntryPoint`` is deployed as a part of the plan.
    """
    admin = Web3.to_checksum_address(accounts.admin)
    vault = Web3.to_checksum_address(accounts.vault)
    upgrade_manager = Web3.to_checksum_address(accounts.upgrade_manager)

    plan = DeploymentPlan("esim-wallet")

    if entry_point:
        plan.add_unit(DeploymentUnit(ENTRY_POINT, kind=UnitKind.external, address=Web3.to_checksum_address(entry_point)))
    else:
        plan.add_unit(DeploymentUnit(ENTRY_POINT, artifact="EntryPoint"))

    plan.add_unit(DeploymentUnit(P256_VERIFIER, artifact="P256Verifier"))

    plan.add_unit(DeploymentUnit(DEVICE_WALLET_IMPLEMENTATION, artifact="DeviceWallet", args=[Ref(ENTRY_POINT), Ref(P256_VERIFIER)]))
    plan.add_unit(DeploymentUnit(DEVICE_WALLET_FACTORY_IMPLEMENTATION, artifact="DeviceWalletFactory"))
    plan.add_unit(
        DeploymentUnit(
            DEVICE_WALLET_FACTORY,
            kind=UnitKind.uups_proxy,
            implementation=Ref(DEVICE_WALLET_FACTORY_IMPLEMENTATION),
            initializer="initialize(address,address,address,address,address,address)",
            args=[Ref(DEVICE_WALLET_IMPLEMENTATION), admin, vault, upgrade_manager, Ref(ENTRY_POINT), Ref(P256_VERIFIER)],
        )
    )

    plan.add_unit(DeploymentUnit(ESIM_WALLET_IMPLEMENTATION, artifact="ESIMWallet"))
    plan.add_unit(DeploymentUnit(ESIM_WALLET_FACTORY_IMPLEMENTATION, artifact="ESIMWalletFactory"))
    plan.add_unit(
        DeploymentUnit(
            ESIM_WALLET_FACTORY,
            kind=UnitKind.uups_proxy,
            implementation=Ref(ESIM_WALLET_FACTORY_IMPLEMENTATION),
            initializer="initialize(address,address)",
            args=[Ref(ESIM_WALLET_IMPLEMENTATION), upgrade_manager],
        )
    )

    plan.add_unit(DeploymentUnit(REGISTRY_IMPLEMENTATION, artifact="Registry"))
    plan.add_unit(
        DeploymentUnit(
            REGISTRY,
            kind=UnitKind.uups_proxy,
            implementation=Ref(REGISTRY_IMPLEMENTATION),
            initializer="initialize(address,address,address,address,address,address,address)",
            args=[admin, vault, upgrade_manager, Ref(DEVICE_WALLET_FACTORY), Ref(ESIM_WALLET_FACTORY), Ref(ENTRY_POINT), Ref(P256_VERIFIER)],
        )
    )

    plan.add_unit(DeploymentUnit(LAZY_WALLET_REGISTRY_IMPLEMENTATION, artifact="LazyWalletRegistry"))
    plan.add_unit(
        DeploymentUnit(
            LAZY_WALLET_REGISTRY,
            kind=UnitKind.uups_proxy,
            implementation=Ref(LAZY_WALLET_REGISTRY_IMPLEMENTATION),
            initializer="initialize(address,address)",
            args=[Ref(REGISTRY), upgrade_manager],
        )
    )

    add_esim_wallet_wiring(plan, accounts)
    return plan


def add_esim_wallet_wiring(plan: DeploymentPlan, accounts: ESIMWalletAccounts):
    """Declare the post-deployment configuration calls.

    The factories and the lazy wallet registry check the registry points back to them,
    so these can only run after every proxy is initialised.
    """
    plan.add_wiring_step(
        WiringStep(
            REGISTRY,
            "addOrUpdateLazyWalletRegistryAddress(address)",
            [Ref(LAZY_WALLET_REGISTRY)],
            Role.upgrade_manager,
            "Registry learns lazy wallet registry",
        )
    )
    plan.add_wiring_step(
        WiringStep(
            DEVICE_WALLET_FACTORY,
            "addRegistryAddress(address)",
            [Ref(REGISTRY)],
            Role.admin,
            "Device wallet factory learns registry",
        )
    )
    plan.add_wiring_step(
        WiringStep(
            ESIM_WALLET_FACTORY,
            "addRegistryAddress(address)",
            [Ref(REGISTRY)],
            Role.upgrade_manager,
            "eSIM wallet factory learns registry",
        )
    )
    plan.add_wiring_step(
        WiringStep(
            DEVICE_WALLET_FACTORY,
            "setVault(address)",
            [Web3.to_checksum_address(accounts.vault)],
            Role.vault,
            "Device wallet factory vault",
        )
    )

    if Web3.to_checksum_address(accounts.upgrade_manager) != Web3.to_checksum_address(accounts.admin):
        for name in (REGISTRY, LAZY_WALLET_REGISTRY, DEVICE_WALLET_FACTORY, ESIM_WALLET_FACTORY):
            plan.add_wiring_step(
                WiringStep(
                    name,
                    "grantRole(bytes32,address)",
                    [UPGRADER_ROLE, Web3.to_checksum_address(accounts.upgrade_manager)],
                    Role.deployer,
                    "Upgrade manager gets upgrader role",
                )
            )


def upgrade_device_wallet(
    coordinator: UpgradeCoordinator,
    device_wallet_factory: HexAddress,
    entry_point: HexAddress,
    p256_verifier: HexAddress,
    signers: Mapping[Role, Any],
    record: DeploymentRecord | None = None,
    unit_name: str = "DeviceWalletImplementationUpgrade",
) -> UpgradeResult:
    """Deploy a new ``DeviceWallet`` implementation and point the device wallet beacon to it.

    Needs signers for the deployer and upgrade manager roles.

    :param unit_name:
        Name of the new implementation in the deployment record.

        Use a new name for each upgrade. Calling again with the same name
        and record does not redeploy, but verifies the beacon again.

    :return:
        Verified or verification failed result.
        Call :py:meth:`UpgradeResult.raise_for_state` to make the latter an exception.
    """
    unit = DeploymentUnit(
        unit_name,
        artifact="DeviceWallet",
        args=[Web3.to_checksum_address(entry_point), Web3.to_checksum_address(p256_verifier)],
    )

    return coordinator.upgrade_beacon_implementation(
        device_wallet_factory,
        unit,
        DEVICE_WALLET_UPGRADE_FUNCTION,
        DEVICE_WALLET_IMPLEMENTATION_GETTER,
        Role.upgrade_manager,
        signers,
        record,
    )
