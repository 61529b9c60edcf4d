"""Persisted deployment record.

The system-of-record of a deployment run: which units exist at which address,
which wiring steps have been applied, and which upgrades were made.

- Every change is appended as one JSON line to ``<folder>/<network>.jsonl``.
  The log is never rewritten, so an interrupted run leaves a valid record behind.

- Loading replays the log, which lets a new run resume where the previous one stopped.

- :py:meth:`DeploymentRecord.export_address_book` writes the Hardhat style
  ``{network: {name: address}}`` file other scripts read.

Example:

.. code-block:: python

    record = DeploymentRecord.load(Path("deployments"), "sepolia")
    record = orchestrator.deploy(plan, signers, record)
    record.export_address_book(Path("deployments/addresses.json"))
"""

import datetime
import json
import logging
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from pprint import pformat

from eth_typing import HexAddress
from web3 import Web3

logger = logging.getLogger(__name__)


class RecordMismatch(Exception):
    """The deployment record disagrees with the plan being executed.

    E.g. the plan was edited after some of its wiring steps were already applied.
    """


@dataclass(slots=True)
class UnitEntry:
    """A deployed or adopted unit."""

    name: str
    address: HexAddress
    kind: str
    tx_hash: str | None = None


@dataclass(slots=True)
class WiringEntry:
    """An applied wiring step."""

    index: int
    fingerprint: str
    tx_hash: str | None = None


@dataclass(slots=True)
class UpgradeEntry:
    """An implementation upgrade attempt that reached a terminal state."""

    unit: str
    beacon_owner: HexAddress
    previous_implementation: HexAddress | None
    new_implementation: HexAddress
    reported_implementation: HexAddress | None
    state: str
    tx_hash: str | None = None


class DeploymentRecord:
    """Versioned, append-only record of one network.

    Thread safe: units of one deployment wave are recorded from worker threads.
    """

    def __init__(self, network: str, folder: Path | None = None):
        """
        :param network:
            Network identifier, like ``sepolia``

        :param folder:
            Where to write the log.

            If not given, the record lives in the memory only.
        """
        assert type(network) == str and network, f"Bad network name: {network}"
        if folder is not None:
            assert isinstance(folder, Path), f"Expected Path, got {type(folder)}"
        self.network = network
        self.folder = folder
        self.version = 0
        self.units: dict[str, UnitEntry] = {}
        self.wiring_steps: dict[int, WiringEntry] = {}
        self.upgrades: list[UpgradeEntry] = []
        self._lock = threading.Lock()

    def __repr__(self):
        return f"<DeploymentRecord {self.network} v{self.version} units:{len(self.units)} wiring steps:{len(self.wiring_steps)} upgrades:{len(self.upgrades)}>"

    @property
    def log_file(self) -> Path | None:
        if self.folder is None:
            return None
        return self.folder / f"{self.network}.jsonl"

    @staticmethod
    def load(folder: Path, network: str) -> "DeploymentRecord":
        """Replay the log of a network.

        Returns an empty record if there is no log yet.
        """
        record = DeploymentRecord(network, folder)
        log_file = record.log_file
        if not log_file.exists():
            logger.info("No existing deployment record at %s, starting a new one", log_file)
            return record

        with open(log_file, "rt", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError as e:
                    raise RecordMismatch(f"Corrupted deployment record {log_file} line {line_no}: {line}") from e
                record._apply(entry)

        logger.info("Loaded deployment record %s", record)
        return record

    def _apply(self, entry: dict):
        match entry["type"]:
            case "unit":
                self.units[entry["name"]] = UnitEntry(entry["name"], entry["address"], entry["kind"], entry.get("tx_hash"))
            case "wiring":
                self.wiring_steps[entry["index"]] = WiringEntry(entry["index"], entry["fingerprint"], entry.get("tx_hash"))
            case "upgrade":
                self.upgrades.append(
                    UpgradeEntry(
                        unit=entry["unit"],
                        beacon_owner=entry["beacon_owner"],
                        previous_implementation=entry.get("previous_implementation"),
                        new_implementation=entry["new_implementation"],
                        reported_implementation=entry.get("reported_implementation"),
                        state=entry["state"],
                        tx_hash=entry.get("tx_hash"),
                    )
                )
            case _:
                raise RecordMismatch(f"Unknown deployment record entry: {entry}")
        self.version = max(self.version + 1, entry.get("version", 0))

    def _append(self, type: str, data: dict):
        entry = {"type": type, **data}
        with self._lock:
            self._apply(entry)
            entry["version"] = self.version
            entry["timestamp"] = datetime.datetime.now(datetime.timezone.utc).isoformat()
            if self.folder is not None:
                self.folder.mkdir(parents=True, exist_ok=True)
                with open(self.log_file, "at", encoding="utf-8") as f:
                    f.write(json.dumps(entry) + "\n")

    def record_unit(self, name: str, address: HexAddress, kind: str, tx_hash: str | None = None):
        """Record a deployed unit.

        :raise RecordMismatch:
            The unit is already recorded at a different address
        """
        address = Web3.to_checksum_address(address)
        existing = self.units.get(name)
        if existing:
            if existing.address != address:
                raise RecordMismatch(f"Unit {name} is already recorded at {existing.address}, cannot record it at {address}")
            return
        self._append("unit", asdict(UnitEntry(name, address, kind, tx_hash)))
        logger.info("Recorded %s at %s on %s", name, address, self.network)

    def record_wiring_step(self, index: int, fingerprint: str, tx_hash: str | None = None):
        if self.is_wiring_step_complete(index, fingerprint):
            return
        self._append("wiring", asdict(WiringEntry(index, fingerprint, tx_hash)))

    def record_upgrade(self, entry: UpgradeEntry):
        self._append("upgrade", asdict(entry))

    def get_address(self, name: str) -> HexAddress | None:
        entry = self.units.get(name)
        return entry.address if entry else None

    def is_wiring_step_complete(self, index: int, fingerprint: str) -> bool:
        """Has the wiring step at this position been applied.

        :raise RecordMismatch:
            A different step was applied at this position
        """
        entry = self.wiring_steps.get(index)
        if entry is None:
            return False
        if entry.fingerprint != fingerprint:
            raise RecordMismatch(f"Wiring step #{index} in the record is {entry.fingerprint}, but the plan has {fingerprint}")
        return True

    def get_address_book(self) -> dict[str, HexAddress]:
        return {name: e.address for name, e in self.units.items()}

    def export_address_book(self, path: Path):
        """Write the ``{network: {name: address}}`` JSON file.

        Other networks already in the file are kept.
        """
        assert isinstance(path, Path), f"Expected Path, got {type(path)}"
        if path.exists():
            with open(path, "rt", encoding="utf-8") as f:
                book = json.load(f)
        else:
            book = {}

        book[self.network] = self.get_address_book()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wt", encoding="utf-8") as f:
            json.dump(book, f, indent=2)
        logger.info("Exported %d addresses of %s to %s", len(book[self.network]), self.network, path)

    def pformat(self) -> str:
        """Human readable record contents for error messages."""
        data = {
            "network": self.network,
            "version": self.version,
            "units": self.get_address_book(),
            "wiring steps applied": sorted(self.wiring_steps.keys()),
            "upgrades": [f"{u.unit}: {u.previous_implementation} -> {u.new_implementation} {u.state}" for u in self.upgrades],
        }
        return pformat(data)
