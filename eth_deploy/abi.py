"""Compiled contract artifact loading.

Read ABI and creation bytecode from compiler output, so that the
orchestrator can submit creation transactions and encode constructor arguments.

Supported artifact formats

- Hardhat ``artifacts/`` directory (``contracts/File.sol/Name.json``)

- Forge ``out/`` directory, where ``bytecode`` is a dict with ``object`` key

- Plain solc output with bytecode hex directly in the ``bytecode`` key

The results are cached for the speedup.
"""

import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from hexbytes import HexBytes

logger = logging.getLogger(__name__)

# How big are our artifact caches
_CACHE_SIZE = 512


#: Ethereum 0x0000000000000000000000000000000000000000 address
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class ArtifactNotFound(Exception):
    """No compiled artifact for a contract name."""


@dataclass(slots=True, frozen=True)
class ContractArtifact:
    """ABI and creation bytecode of one compiled contract."""

    #: Contract name, as it is in Solidity source
    name: str

    #: ABI as a list of dicts
    abi: list = field(repr=False)

    #: Creation bytecode.
    #:
    #: Empty for interfaces and abstract contracts.
    bytecode: bytes = field(repr=False)

    @property
    def constructor_types(self) -> list[str]:
        """Solidity types of the constructor arguments.

        Tuple arguments are expanded to ``(type1,type2)`` form.
        """
        for entry in self.abi:
            if entry.get("type") == "constructor":
                return [_abi_input_type(i) for i in entry.get("inputs", [])]
        return []

    def has_function(self, function_signature: str) -> bool:
        """Check if the ABI declares a function with the canonical signature."""
        for entry in self.abi:
            if entry.get("type") == "function":
                types = ",".join(_abi_input_type(i) for i in entry.get("inputs", []))
                if f"{entry['name']}({types})" == function_signature:
                    return True
        return False

    @staticmethod
    def from_json(name: str, contract_interface: dict | list) -> "ContractArtifact":
        """Create from a parsed compiler artifact.

        :param contract_interface:
            Solc/Hardhat/Forge artifact dict, or Etherscan copy-pasted ABI list
        """
        if type(contract_interface) == list:
            # Etherscan
            return ContractArtifact(name=name, abi=contract_interface, bytecode=b"")

        abi = contract_interface["abi"]
        bytecode = contract_interface.get("bytecode")

        if type(bytecode) == dict:
            # Sol 0.8 / Forge
            # Contains keys object, sourceMap, linkReferences
            bytecode = bytecode["object"]

        if not bytecode or bytecode == "0x":
            data = b""
        else:
            if not bytecode.startswith("0x"):
                bytecode = "0x" + bytecode
            data = bytes(HexBytes(bytecode))

        return ContractArtifact(name=contract_interface.get("contractName", name), abi=abi, bytecode=data)


def _abi_input_type(abi_input: dict) -> str:
    type_str = abi_input["type"]
    if type_str.startswith("tuple"):
        inner = ",".join(_abi_input_type(c) for c in abi_input["components"])
        return f"({inner}){type_str[len('tuple'):]}"
    return type_str


@lru_cache(maxsize=_CACHE_SIZE)
def read_artifact_file(path: Path) -> ContractArtifact:
    """Read one compiler artifact JSON file.

    Any results are cached.
    """
    with open(path, "rt", encoding="utf-8") as f:
        contract_interface = json.load(f)
    return ContractArtifact.from_json(path.stem, contract_interface)


class ArtifactStore:
    """Look up compiled artifacts by contract name.

    Example:

    .. code-block:: python

        artifacts = ArtifactStore(Path("artifacts"))
        registry = artifacts.get("Registry")
        beacon_proxy = artifacts.get("@openzeppelin/contracts/proxy/beacon/BeaconProxy.sol:BeaconProxy")

    Contracts can be also registered directly, which is what
    tests and simulated networks do.
    """

    def __init__(self, path: Path | None = None):
        """
        :param path:
            Hardhat ``artifacts`` or Forge ``out`` folder.

            If not given, only registered artifacts are available.
        """
        if path is not None:
            assert isinstance(path, Path), f"Expected Path, got {type(path)}"
        self.path = path
        self.artifacts: dict[str, ContractArtifact] = {}

    def __repr__(self):
        return f"<ArtifactStore {self.path} registered:{len(self.artifacts)}>"

    def register(self, name: str, abi: list, bytecode: bytes | str) -> ContractArtifact:
        """Add an artifact that does not come from the compiler output folder."""
        if isinstance(bytecode, str):
            bytecode = bytes(HexBytes(bytecode))
        artifact = ContractArtifact(name=name, abi=abi, bytecode=bytes(bytecode))
        self.artifacts[name] = artifact
        return artifact

    def get(self, name: str) -> ContractArtifact:
        """Get an artifact by a bare contract name or a fully qualified ``path/File.sol:Name``.

        :raise ArtifactNotFound:
            No artifact or more than one candidate for a bare name
        """
        if name in self.artifacts:
            return self.artifacts[name]

        if self.path is None:
            raise ArtifactNotFound(f"Artifact {name} not registered and no artifact folder configured")

        if ":" in name:
            source, contract_name = name.split(":")
            candidate = self.path / source / f"{contract_name}.json"
            if not candidate.exists():
                raise ArtifactNotFound(f"Artifact file {candidate} does not exist")
            artifact = read_artifact_file(candidate)
        else:
            candidates = [p for p in self.path.rglob(f"{name}.json") if not p.name.endswith(".dbg.json")]
            if len(candidates) == 0:
                raise ArtifactNotFound(f"No artifact {name}.json under {self.path}")
            if len(candidates) > 1:
                raise ArtifactNotFound(f"Ambiguous contract name {name}, use fully qualified name. Candidates: {candidates}")
            artifact = read_artifact_file(candidates[0])

        logger.debug("Loaded artifact %s, bytecode %d bytes", name, len(artifact.bytecode))
        self.artifacts[name] = artifact
        return artifact
