"""eSIM wallet platform contract models for :py:class:`eth_deploy.testing.SimulatedNetwork`.

The models keep the access control and the cross contract checks
of the Solidity contracts that matter for deployment:

- Implementations disable their initialisers, proxies are initialised once

- Setters are limited to the admin, vault or upgrade manager account like on the chain

- ``addRegistryAddress()`` and ``addOrUpdateLazyWalletRegistryAddress()`` revert
  unless the other side already points back

- Device wallets are ``BeaconProxy`` instances created with ``CREATE2``

Example:

.. code-block:: python

    network = SimulatedNetwork()
    artifacts = ArtifactStore()
    register_esim_wallet_artifacts(network, artifacts)

    orchestrator = DeploymentOrchestrator(network, artifacts)
    record = orchestrator.deploy(build_esim_wallet_plan(accounts), signers)
"""

from eth_abi import encode
from eth_utils import keccak
from web3 import Web3

from eth_deploy.abi import ZERO_ADDRESS, ArtifactStore
from eth_deploy.esim_wallet.device_wallet import BEACON_PROXY_ARTIFACT, InitPayloadVersion
from eth_deploy.plan import role_id
from eth_deploy.testing import SimulatedBeaconProxy, SimulatedContract, SimulatedNetwork, SimulatedUpgradeableBeacon, contract_function

DEFAULT_ADMIN_ROLE = b"\x00" * 32

UPGRADER_ROLE = role_id("UPGRADER_ROLE")


class SimulatedInitializable(SimulatedContract):
    """OpenZeppelin ``Initializable``.

    Deployed implementations are locked in their constructor,
    proxies start uninitialised.
    """

    initialized = False

    def constructor(self, sender, *args):
        self.initialized = True

    def check_not_initialized(self):
        self.require(not self.initialized, "InvalidInitialization")


class SimulatedAccessControl(SimulatedInitializable):
    """OpenZeppelin ``AccessControl`` with the initialising account as the default admin."""

    def init_roles(self, default_admin: str, upgrader: str):
        self.roles = {
            DEFAULT_ADMIN_ROLE: {Web3.to_checksum_address(default_admin)},
            UPGRADER_ROLE: {Web3.to_checksum_address(upgrader)},
        }

    @contract_function("hasRole(bytes32,address)", returns=["bool"])
    def has_role(self, sender, role, account):
        return Web3.to_checksum_address(account) in getattr(self, "roles", {}).get(bytes(role), set())

    @contract_function("grantRole(bytes32,address)")
    def grant_role(self, sender, role, account):
        self.require(self.has_role(sender, DEFAULT_ADMIN_ROLE, sender), "AccessControlUnauthorizedAccount")
        self.roles.setdefault(bytes(role), set()).add(Web3.to_checksum_address(account))


class SimulatedEntryPoint(SimulatedContract):
    """ERC-4337 ``EntryPoint`` placeholder."""


class SimulatedP256Verifier(SimulatedContract):
    """Passkey signature verifier placeholder."""


class SimulatedESIMWallet(SimulatedInitializable):
    """``ESIMWallet`` implementation."""


class SimulatedDeviceWallet(SimulatedInitializable):
    """``DeviceWallet(address entryPoint, address p256Verifier)``"""

    constructor_types = ["address", "address"]
    immutables = ("entry_point", "verifier")

    def constructor(self, sender, entry_point, verifier):
        self.initialized = True
        self.entry_point = Web3.to_checksum_address(entry_point)
        self.verifier = Web3.to_checksum_address(verifier)

    def init_wallet(self, registry, owner_key, device_id, secondary_factory=ZERO_ADDRESS):
        self.check_not_initialized()
        self.initialized = True
        self.registry_address = Web3.to_checksum_address(registry)
        self.owner_key = [bytes(k) for k in owner_key]
        self.device_id = device_id
        self.secondary_factory = Web3.to_checksum_address(secondary_factory)

    @contract_function(InitPayloadVersion.v1.value)
    def init_v1(self, sender, registry, owner_key, device_id):
        self.init_wallet(registry, owner_key, device_id)

    @contract_function(InitPayloadVersion.v2.value)
    def init_v2(self, sender, registry, owner_key, device_id, secondary_factory):
        self.init_wallet(registry, owner_key, device_id, secondary_factory)

    @contract_function("registry()", returns=["address"])
    def registry(self, sender):
        return self.registry_address

    @contract_function("deviceUniqueIdentifier()", returns=["string"])
    def device_unique_identifier(self, sender):
        return self.device_id

    @contract_function("entryPoint()", returns=["address"])
    def get_entry_point(self, sender):
        return self.entry_point


class SimulatedDeviceWalletFactory(SimulatedAccessControl):
    """``DeviceWalletFactory`` behind an UUPS proxy.

    Owns the ``UpgradeableBeacon`` of device wallets.
    """

    #: Initialiser layout of the device wallets this factory creates
    init_payload_version = InitPayloadVersion.v1

    registry_address = ZERO_ADDRESS
    secondary_factory = ZERO_ADDRESS

    @contract_function("initialize(address,address,address,address,address,address)")
    def initialize(self, sender, device_wallet_implementation, esim_wallet_admin, vault, upgrade_manager, entry_point, p256_verifier):
        self.check_not_initialized()
        beacon_code = self.network.get_bytecode(SimulatedUpgradeableBeacon) + encode(["address", "address"], [device_wallet_implementation, self.address])
        self.beacon_address = self.network.create(self.address, beacon_code)
        self.initialized = True
        self.init_roles(sender, upgrade_manager)
        self.esim_wallet_admin = Web3.to_checksum_address(esim_wallet_admin)
        self.vault_address = Web3.to_checksum_address(vault)
        self.upgrade_manager = Web3.to_checksum_address(upgrade_manager)
        self.entry_point = Web3.to_checksum_address(entry_point)
        self.p256_verifier = Web3.to_checksum_address(p256_verifier)

    @contract_function("beacon()", returns=["address"])
    def beacon(self, sender):
        return self.beacon_address

    @contract_function("registry()", returns=["address"])
    def registry(self, sender):
        return self.registry_address

    @contract_function("vault()", returns=["address"])
    def vault(self, sender):
        return self.vault_address

    @contract_function("eSIMWalletAdmin()", returns=["address"])
    def get_esim_wallet_admin(self, sender):
        return self.esim_wallet_admin

    @contract_function("getCurrentDeviceWalletImplementation()", returns=["address"])
    def get_current_device_wallet_implementation(self, sender):
        return self.call(self.beacon_address, "implementation()")

    @contract_function("updateDeviceWalletImplementation(address)")
    def update_device_wallet_implementation(self, sender, implementation):
        self.require(sender == self.upgrade_manager, "Only upgrade manager")
        self.call(self.beacon_address, "upgradeTo(address)", implementation)

    @contract_function("addRegistryAddress(address)")
    def add_registry_address(self, sender, registry):
        self.require(sender == self.esim_wallet_admin, "Only eSIM wallet admin")
        self.require(self.registry_address == ZERO_ADDRESS, "Registry already set")
        device_wallet_factory = self.call(registry, "deviceWalletFactory()")
        self.require(Web3.to_checksum_address(device_wallet_factory) == self.address, "Registry does not know this factory")
        self.secondary_factory = Web3.to_checksum_address(self.call(registry, "eSIMWalletFactory()"))
        self.registry_address = Web3.to_checksum_address(registry)

    @contract_function("setVault(address)")
    def set_vault(self, sender, vault):
        self.require(sender == self.vault_address, "Only vault")
        self.require(vault != ZERO_ADDRESS, "Vault cannot be zero address")
        self.vault_address = Web3.to_checksum_address(vault)

    def get_init_code(self, owner_key, device_id) -> bytes:
        """Beacon proxy creation code of a device wallet, encoded the Solidity way."""
        signature = self.init_payload_version.value
        if self.init_payload_version == InitPayloadVersion.v1:
            init_data = keccak(text=signature)[0:4] + encode(["address", "bytes32[2]", "string"], [self.registry_address, owner_key, device_id])
        else:
            init_data = keccak(text=signature)[0:4] + encode(["address", "bytes32[2]", "string", "address"], [self.registry_address, owner_key, device_id, self.secondary_factory])
        return self.network.get_bytecode(SimulatedBeaconProxy) + encode(["address", "bytes"], [self.beacon_address, init_data])

    def get_salt(self, salt: int) -> bytes:
        return keccak(encode(["address", "uint256"], [self.esim_wallet_admin, salt]))

    @contract_function("getCounterfactualAddress(bytes32[2],string,uint256)", returns=["address"])
    def get_counterfactual_address(self, sender, owner_key, device_id, salt):
        init_code_hash = keccak(self.get_init_code(owner_key, device_id))
        return Web3.to_checksum_address(keccak(b"\xff" + bytes.fromhex(self.address[2:]) + self.get_salt(salt) + init_code_hash)[12:])

    @contract_function("createAccount(string,bytes32[2],uint256,uint256)", returns=["address"])
    def create_account(self, sender, device_id, owner_key, salt, deposit_amount):
        self.require(sender == self.esim_wallet_admin, "Only eSIM wallet admin")
        self.require(self.registry_address != ZERO_ADDRESS, "Registry not set")
        self.require(deposit_amount == 0, "Deposits are not simulated")
        return self.network.create2(self.address, self.get_salt(salt), self.get_init_code(owner_key, device_id))


class SimulatedDeviceWalletFactoryV2(SimulatedDeviceWalletFactory):
    """Factory creating device wallets with the secondary factory initialiser argument."""

    init_payload_version = InitPayloadVersion.v2


class SimulatedESIMWalletFactory(SimulatedAccessControl):
    """``ESIMWalletFactory`` behind an UUPS proxy."""

    registry_address = ZERO_ADDRESS

    @contract_function("initialize(address,address)")
    def initialize(self, sender, esim_wallet_implementation, upgrade_manager):
        self.check_not_initialized()
        self.initialized = True
        self.init_roles(sender, upgrade_manager)
        self.esim_wallet_implementation = Web3.to_checksum_address(esim_wallet_implementation)
        self.upgrade_manager = Web3.to_checksum_address(upgrade_manager)

    @contract_function("registry()", returns=["address"])
    def registry(self, sender):
        return self.registry_address

    @contract_function("addRegistryAddress(address)")
    def add_registry_address(self, sender, registry):
        self.require(sender == self.upgrade_manager, "Only upgrade manager")
        self.require(self.registry_address == ZERO_ADDRESS, "Registry already set")
        esim_wallet_factory = self.call(registry, "eSIMWalletFactory()")
        self.require(Web3.to_checksum_address(esim_wallet_factory) == self.address, "Registry does not know this factory")
        self.registry_address = Web3.to_checksum_address(registry)


class SimulatedRegistry(SimulatedAccessControl):
    """``Registry`` behind an UUPS proxy."""

    lazy_wallet_registry_address = ZERO_ADDRESS

    @contract_function("initialize(address,address,address,address,address,address,address)")
    def initialize(self, sender, esim_wallet_admin, vault, upgrade_manager, device_wallet_factory, esim_wallet_factory, entry_point, p256_verifier):
        self.check_not_initialized()
        self.initialized = True
        self.init_roles(sender, upgrade_manager)
        self.esim_wallet_admin = Web3.to_checksum_address(esim_wallet_admin)
        self.vault = Web3.to_checksum_address(vault)
        self.upgrade_manager = Web3.to_checksum_address(upgrade_manager)
        self.device_wallet_factory = Web3.to_checksum_address(device_wallet_factory)
        self.esim_wallet_factory = Web3.to_checksum_address(esim_wallet_factory)
        self.entry_point = Web3.to_checksum_address(entry_point)
        self.p256_verifier = Web3.to_checksum_address(p256_verifier)

    @contract_function("deviceWalletFactory()", returns=["address"])
    def get_device_wallet_factory(self, sender):
        return self.device_wallet_factory

    @contract_function("eSIMWalletFactory()", returns=["address"])
    def get_esim_wallet_factory(self, sender):
        return self.esim_wallet_factory

    @contract_function("lazyWalletRegistry()", returns=["address"])
    def get_lazy_wallet_registry(self, sender):
        return self.lazy_wallet_registry_address

    @contract_function("addOrUpdateLazyWalletRegistryAddress(address)")
    def add_or_update_lazy_wallet_registry_address(self, sender, lazy_wallet_registry):
        self.require(sender == self.upgrade_manager, "Only upgrade manager")
        registry = self.call(lazy_wallet_registry, "registry()")
        self.require(Web3.to_checksum_address(registry) == self.address, "Lazy wallet registry does not know this registry")
        self.lazy_wallet_registry_address = Web3.to_checksum_address(lazy_wallet_registry)


class SimulatedLazyWalletRegistry(SimulatedAccessControl):
    """``LazyWalletRegistry`` behind an UUPS proxy."""

    @contract_function("initialize(address,address)")
    def initialize(self, sender, registry, upgrade_manager):
        self.check_not_initialized()
        self.initialized = True
        self.init_roles(sender, upgrade_manager)
        self.registry_address = Web3.to_checksum_address(registry)
        self.upgrade_manager = Web3.to_checksum_address(upgrade_manager)

    @contract_function("registry()", returns=["address"])
    def registry(self, sender):
        return self.registry_address


#: Platform models by artifact name
ESIM_WALLET_MODELS = {
    "EntryPoint": SimulatedEntryPoint,
    "P256Verifier": SimulatedP256Verifier,
    "DeviceWallet": SimulatedDeviceWallet,
    "DeviceWalletFactory": SimulatedDeviceWalletFactory,
    "ESIMWallet": SimulatedESIMWallet,
    "ESIMWalletFactory": SimulatedESIMWalletFactory,
    "Registry": SimulatedRegistry,
    "LazyWalletRegistry": SimulatedLazyWalletRegistry,
}


def register_esim_wallet_artifacts(
    network: SimulatedNetwork,
    artifacts: ArtifactStore,
    device_wallet_factory_model=SimulatedDeviceWalletFactory,
):
    """Register the platform and OpenZeppelin models as artifacts.

    The beacon proxy is also registered under its fully qualified Hardhat name
    with the same bytecode the factory uses.

    :param device_wallet_factory_model:
        Use :py:class:`SimulatedDeviceWalletFactoryV2` for v2 device wallet initialiser
    """
    network.register_openzeppelin_artifacts(artifacts)
    for name, model_cls in ESIM_WALLET_MODELS.items():
        if name == "DeviceWalletFactory":
            model_cls = device_wallet_factory_model
        network.register_artifact(artifacts, name, model_cls)

    artifacts.register(BEACON_PROXY_ARTIFACT, SimulatedBeaconProxy.get_abi(), network.get_bytecode(SimulatedBeaconProxy))
