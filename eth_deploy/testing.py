"""In-process simulated network for tests.

Contracts are Python models instead of EVM bytecode:

- Each model class is registered for a placeholder creation bytecode.
  :py:meth:`SimulatedNetwork.register_artifact` creates the placeholder and
  a matching ABI, so the orchestrator deploys models exactly like compiled contracts.

- Calls are ABI encoded by the caller and decoded by the network before dispatching
  to the model method, so encoding mistakes show up the same way they would on a real chain.

- :py:class:`SimulatedRevert` raised by a model becomes :py:class:`eth_deploy.confirmation.TransactionFailure`.
  Models must check their requirements before changing any state, there is no rollback.

OpenZeppelin proxy and beacon models are included.

Example:

.. code-block:: python

    class Counter(SimulatedContract):

        def constructor(self, sender):
            self.count = 0

        @contract_function("increment()")
        def increment(self, sender):
            self.count += 1

        @contract_function("count()", returns=["uint256"])
        def get_count(self, sender):
            return self.count

    network = SimulatedNetwork()
    artifacts = ArtifactStore()
    network.register_artifact(artifacts, "Counter", Counter)
"""

import logging
import threading
from typing import Any, Sequence, Type

from eth_typing import HexAddress
from eth_utils import keccak
from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.abi import ZERO_ADDRESS, ArtifactStore, ContractArtifact
from eth_deploy.codec import EncodingError, decode_tuple, encode_call, encode_tuple, get_function_selector, parse_signature_types
from eth_deploy.confirmation import TransactionFailure
from eth_deploy.create2 import get_create2_address
from eth_deploy.network import CreationResult, Network

logger = logging.getLogger(__name__)

#: Minimal CREATE2 factory for EVM tests.
#:
#: Call data is ``salt (32 bytes) ++ init code``.
#: Runs ``CREATE2`` and returns the created address as a 32 bytes word.
CREATE2_FACTORY_BYTECODE = HexBytes("0x601c80600b6000396000f3" + "36602090038060206000376000359060006000f560005260206000f3")

#: Creation code of a contract whose code is one ``STOP`` byte.
#:
#: Constructor arguments appended to it are ignored.
STOP_CONTRACT_BYTECODE = HexBytes("0x600180600b6000396000f300")


class SimulatedRevert(Exception):
    """A contract model rejected the call."""


def contract_function(signature: str, returns: Sequence[str] = ()):
    """Expose a model method as a contract function.

    The method is called with ``msg.sender`` as the first argument,
    followed by the decoded call arguments.

    :param signature:
        Canonical Solidity signature

    :param returns:
        Output types of view functions
    """

    def decorator(func):
        func.signature = signature
        func.returns = list(returns)
        return func

    return decorator


class SimulatedContract:
    """Base class of contract models."""

    #: Constructor argument types
    constructor_types: list[str] = []

    #: Attributes a proxy copies from its implementation, like Solidity immutables
    immutables: tuple[str, ...] = ()

    #: Selector -> (signature, method name, output types), collected from :py:func:`contract_function`
    functions: dict[bytes, tuple[str, str, list[str]]] = {}

    def __init__(self, network: "SimulatedNetwork", address: HexAddress):
        self.network = network
        self.address = address

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        functions = {}
        for name in dir(cls):
            attr = getattr(cls, name)
            signature = getattr(attr, "signature", None)
            if callable(attr) and signature:
                functions[get_function_selector(signature)] = (signature, name, attr.returns)
        cls.functions = functions

    def __repr__(self):
        return f"<{self.__class__.__name__} at {self.address}>"

    def constructor(self, sender: HexAddress, *args):
        """Run once when the model is deployed directly, not behind a proxy."""

    def require(self, condition: bool, message: str):
        if not condition:
            raise SimulatedRevert(message)

    def call(self, target: HexAddress, function_signature: str, *args) -> Any:
        """Call another contract with this contract as ``msg.sender``."""
        return self.network.call_contract(self.address, target, function_signature, list(args))

    @classmethod
    def get_abi(cls) -> list:
        """Minimal ABI with constructor and function entries."""
        abi = [{"type": "constructor", "inputs": [{"name": "", "type": t} for t in cls.constructor_types]}]
        for signature, name, returns in cls.functions.values():
            abi.append(
                {
                    "type": "function",
                    "name": signature.split("(")[0],
                    "inputs": [{"name": "", "type": t} for t in parse_signature_types(signature)],
                    "outputs": [{"name": "", "type": t} for t in returns],
                }
            )
        return abi


class SimulatedProxyBase(SimulatedContract):
    """Proxy models become an instance of the implementation model at the proxy address."""

    def create_proxied(self, sender: HexAddress, implementation: HexAddress, init_data: bytes) -> SimulatedContract:
        implementation_contract = self.network.get_contract(implementation)
        proxied = implementation_contract.__class__(self.network, self.address)
        for name in proxied.immutables:
            setattr(proxied, name, getattr(implementation_contract, name))
        proxied.proxy_implementation = implementation
        self.network.replace_contract(self.address, proxied)
        if init_data:
            self.network.dispatch(sender, self.address, init_data)
        return proxied


class SimulatedERC1967Proxy(SimulatedProxyBase):
    """``ERC1967Proxy(address implementation, bytes data)``"""

    constructor_types = ["address", "bytes"]

    def constructor(self, sender, implementation, data):
        self.require(len(self.network.get_code(implementation)) > 0, "ERC1967InvalidImplementation")
        self.create_proxied(sender, Web3.to_checksum_address(implementation), data)


class SimulatedTransparentUpgradeableProxy(SimulatedProxyBase):
    """``TransparentUpgradeableProxy(address logic, address initialOwner, bytes data)``"""

    constructor_types = ["address", "address", "bytes"]

    def constructor(self, sender, logic, initial_owner, data):
        self.require(len(self.network.get_code(logic)) > 0, "ERC1967InvalidImplementation")
        proxied = self.create_proxied(sender, Web3.to_checksum_address(logic), data)
        proxied.proxy_admin_owner = Web3.to_checksum_address(initial_owner)


class SimulatedBeaconProxy(SimulatedProxyBase):
    """``BeaconProxy(address beacon, bytes data)``"""

    constructor_types = ["address", "bytes"]

    def constructor(self, sender, beacon, data):
        implementation = self.call(beacon, "implementation()")
        self.create_proxied(sender, Web3.to_checksum_address(implementation), data)


class SimulatedUpgradeableBeacon(SimulatedContract):
    """``UpgradeableBeacon(address implementation, address initialOwner)``"""

    constructor_types = ["address", "address"]

    def constructor(self, sender, implementation, initial_owner):
        self.require(len(self.network.get_code(implementation)) > 0, "BeaconInvalidImplementation")
        self.current_implementation = Web3.to_checksum_address(implementation)
        self.current_owner = Web3.to_checksum_address(initial_owner)

    @contract_function("implementation()", returns=["address"])
    def implementation(self, sender):
        return self.current_implementation

    @contract_function("owner()", returns=["address"])
    def owner(self, sender):
        return self.current_owner

    @contract_function("upgradeTo(address)")
    def upgrade_to(self, sender, new_implementation):
        self.require(sender == self.current_owner, "OwnableUnauthorizedAccount")
        self.require(len(self.network.get_code(new_implementation)) > 0, "BeaconInvalidImplementation")
        self.current_implementation = Web3.to_checksum_address(new_implementation)


#: OpenZeppelin models by the artifact name the plan uses
OPENZEPPELIN_MODELS = {
    "ERC1967Proxy": SimulatedERC1967Proxy,
    "TransparentUpgradeableProxy": SimulatedTransparentUpgradeableProxy,
    "BeaconProxy": SimulatedBeaconProxy,
    "UpgradeableBeacon": SimulatedUpgradeableBeacon,
}


class SimulatedNetwork(Network):
    """Deterministic in-process network of contract models.

    All state changes happen under one lock, so the orchestrator may
    deploy from several threads.
    """

    def __init__(self, name: str = "simulated", chain_id: int = 31337):
        self.name = name
        self._chain_id = chain_id
        self.contracts: dict[HexAddress, SimulatedContract] = {}
        self.code: dict[HexAddress, bytes] = {}
        self.balances: dict[HexAddress, int] = {}
        self.nonces: dict[HexAddress, int] = {}
        self.models: dict[bytes, Type[SimulatedContract]] = {}
        self.bytecodes: dict[Type[SimulatedContract], bytes] = {}

        #: Every successful transaction as (sender, target, signature)
        self.transactions: list[tuple[HexAddress, HexAddress | None, str]] = []

        self._lock = threading.RLock()

    def __repr__(self):
        return f"<SimulatedNetwork {self.name} contracts:{len(self.contracts)}>"

    @property
    def chain_id(self) -> int:
        return self._chain_id

    def register_model(self, bytecode: bytes, model_cls: Type[SimulatedContract]):
        assert issubclass(model_cls, SimulatedContract), f"Got {model_cls}"
        self.models[bytes(bytecode)] = model_cls
        self.bytecodes[model_cls] = bytes(bytecode)

    def register_artifact(self, artifacts: ArtifactStore, name: str, model_cls: Type[SimulatedContract]) -> ContractArtifact:
        """Register a model as a compiled artifact.

        The placeholder bytecode is derived from the name and is unique per artifact.
        """
        bytecode = b"\x60\x80" + keccak(text=f"simulated:{name}")
        self.register_model(bytecode, model_cls)
        return artifacts.register(name, model_cls.get_abi(), bytecode)

    def register_openzeppelin_artifacts(self, artifacts: ArtifactStore):
        """Register proxy and beacon models under their OpenZeppelin names."""
        for name, model_cls in OPENZEPPELIN_MODELS.items():
            self.register_artifact(artifacts, name, model_cls)

    def get_contract(self, address: HexAddress) -> SimulatedContract:
        contract = self.contracts.get(Web3.to_checksum_address(address))
        if contract is None:
            raise SimulatedRevert(f"No contract at {address}")
        return contract

    def replace_contract(self, address: HexAddress, contract: SimulatedContract):
        self.contracts[Web3.to_checksum_address(address)] = contract

    def _next_nonce(self, sender: HexAddress) -> int:
        nonce = self.nonces.get(sender, 0)
        self.nonces[sender] = nonce + 1
        return nonce

    def _instantiate(self, sender: HexAddress, address: HexAddress, init_code: bytes) -> SimulatedContract:
        model_cls = None
        for bytecode, candidate in self.models.items():
            if init_code.startswith(bytecode):
                model_cls = candidate
                break

        if model_cls is None:
            raise SimulatedRevert(f"No model registered for creation code {init_code[:8].hex()}...")

        bytecode = self.bytecodes[model_cls]

        if address in self.code:
            raise SimulatedRevert(f"Address collision at {address}")

        try:
            args = decode_tuple(model_cls.constructor_types, init_code[len(bytecode) :])
        except EncodingError as e:
            raise SimulatedRevert(f"Bad constructor arguments for {model_cls.__name__}: {e}") from e

        contract = model_cls(self, address)
        self.contracts[address] = contract
        self.code[address] = bytecode
        try:
            contract.constructor(sender, *args)
        except Exception:
            del self.contracts[address]
            del self.code[address]
            raise
        logger.debug("Created %s at %s", model_cls.__name__, address)
        return self.contracts[address]

    def create(self, sender: HexAddress, init_code: bytes) -> HexAddress:
        """``CREATE`` from an account or a contract model."""
        sender = Web3.to_checksum_address(sender)
        nonce = self._next_nonce(sender)
        address = Web3.to_checksum_address(keccak(b"simulated-create" + HexBytes(sender) + nonce.to_bytes(32, "big"))[12:])
        self._instantiate(sender, address, init_code)
        return address

    def create2(self, sender: HexAddress, salt: bytes, init_code: bytes) -> HexAddress:
        """``CREATE2`` from a contract model, EIP-1014 addressing."""
        address = get_create2_address(sender, salt, keccak(init_code))
        self._instantiate(Web3.to_checksum_address(sender), address, init_code)
        return address

    def get_bytecode(self, model_cls: Type[SimulatedContract]) -> bytes:
        return self.bytecodes[model_cls]

    def dispatch(self, sender: HexAddress, target: HexAddress, data: bytes) -> Any:
        """Decode call data and run the model function."""
        contract = self.get_contract(target)
        selector = bytes(data[0:4])
        entry = contract.functions.get(selector)
        if entry is None:
            raise SimulatedRevert(f"{contract} has no function with selector {selector.hex()}")
        signature, method_name, returns = entry
        try:
            args = decode_tuple(parse_signature_types(signature), bytes(data[4:]))
        except EncodingError as e:
            raise SimulatedRevert(f"Bad call data for {signature}: {e}") from e
        return getattr(contract, method_name)(Web3.to_checksum_address(sender), *args)

    def call_contract(self, sender: HexAddress, target: HexAddress, function_signature: str, args: Sequence[Any]) -> Any:
        """Internal call between models. Returns the Python value."""
        return self.dispatch(sender, target, encode_call(function_signature, args))

    def _make_tx_hash(self, sender: HexAddress, data: bytes) -> HexBytes:
        return HexBytes(keccak(HexBytes(sender) + self.nonces.get(sender, 0).to_bytes(32, "big") + data))

    def submit_creation(self, bytecode: bytes, constructor_args: bytes, signer: Any) -> CreationResult:
        sender = Web3.to_checksum_address(signer.address)
        init_code = bytes(bytecode) + bytes(constructor_args)
        with self._lock:
            tx_hash = self._make_tx_hash(sender, init_code)
            try:
                address = self.create(sender, init_code)
            except SimulatedRevert as e:
                raise TransactionFailure(f"Contract creation reverted: {e}", tx_hash=tx_hash, revert_reason=str(e)) from e
            self.transactions.append((sender, None, "constructor"))

        receipt = {"transactionHash": tx_hash, "status": 1, "from": sender, "to": None, "contractAddress": address}
        return CreationResult(address=address, tx_hash=tx_hash, receipt=receipt)

    def submit_call(self, target: HexAddress, function_signature: str, args: Sequence[Any], signer: Any) -> dict:
        sender = Web3.to_checksum_address(signer.address)
        data = encode_call(function_signature, args)
        with self._lock:
            tx_hash = self._make_tx_hash(sender, data)
            self._next_nonce(sender)
            try:
                self.dispatch(sender, target, data)
            except SimulatedRevert as e:
                raise TransactionFailure(f"{function_signature} on {target} reverted: {e}", tx_hash=tx_hash, revert_reason=str(e)) from e
            self.transactions.append((sender, Web3.to_checksum_address(target), function_signature))

        return {"transactionHash": tx_hash, "status": 1, "from": sender, "to": target, "contractAddress": None}

    def read_state(self, target: HexAddress, function_signature: str, args: Sequence[Any], output_types: Sequence[str]) -> Any:
        with self._lock:
            try:
                value = self.dispatch(ZERO_ADDRESS, target, encode_call(function_signature, args))
            except SimulatedRevert as e:
                raise TransactionFailure(f"View call {function_signature} on {target} reverted: {e}", revert_reason=str(e)) from e

        # Pass the result through the ABI like a real node would
        values = value if len(output_types) > 1 else [value]
        decoded = decode_tuple(output_types, encode_tuple(output_types, values))
        if len(output_types) == 1:
            return decoded[0]
        return decoded

    def get_code(self, address: HexAddress) -> bytes:
        return self.code.get(Web3.to_checksum_address(address), b"")

    def get_balance(self, address: HexAddress) -> int:
        return self.balances.get(Web3.to_checksum_address(address), 0)

    def set_balance(self, address: HexAddress, amount: int):
        assert amount >= 0
        self.balances[Web3.to_checksum_address(address)] = amount
