"""Deployment record persistence."""

import json
from pathlib import Path

import pytest

from eth_deploy.record import DeploymentRecord, RecordMismatch, UpgradeEntry

REGISTRY = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
FACTORY = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"


def test_record_replay(tmp_path: Path):
    """A loaded record has everything the previous run appended."""
    record = DeploymentRecord.load(tmp_path, "sepolia")
    assert record.version == 0

    record.record_unit("RegistryProxy", REGISTRY.lower(), "uups_proxy", "0x01")
    record.record_unit("DeviceWalletFactoryProxy", FACTORY, "uups_proxy", "0x02")
    record.record_wiring_step(0, "RegistryProxy.addFactory(address)[@DeviceWalletFactoryProxy]", "0x03")
    record.record_upgrade(
        UpgradeEntry(
            unit="DeviceWalletImplementation_2",
            beacon_owner=FACTORY,
            previous_implementation=REGISTRY,
            new_implementation=FACTORY,
            reported_implementation=FACTORY,
            state="verified",
        )
    )
    assert record.version == 4
    assert (tmp_path / "sepolia.jsonl").exists()

    loaded = DeploymentRecord.load(tmp_path, "sepolia")
    assert loaded.version == 4
    assert loaded.get_address("RegistryProxy") == REGISTRY
    assert loaded.get_address("Nope") is None
    assert loaded.is_wiring_step_complete(0, "RegistryProxy.addFactory(address)[@DeviceWalletFactoryProxy]")
    assert not loaded.is_wiring_step_complete(1, "RegistryProxy.setVault(address)[]")
    assert loaded.upgrades[0].state == "verified"

    # Networks do not mix
    assert DeploymentRecord.load(tmp_path, "optimism-sepolia").units == {}


def test_record_same_unit_twice():
    """Recording the same address again is not a new version."""
    record = DeploymentRecord("test")
    record.record_unit("RegistryProxy", REGISTRY, "uups_proxy")
    record.record_unit("RegistryProxy", REGISTRY.lower(), "uups_proxy")
    assert record.version == 1


def test_record_unit_moved():
    record = DeploymentRecord("test")
    record.record_unit("RegistryProxy", REGISTRY, "uups_proxy")
    with pytest.raises(RecordMismatch):
        record.record_unit("RegistryProxy", FACTORY, "uups_proxy")


def test_wiring_fingerprint_mismatch():
    """The plan changed under a partially applied record."""
    record = DeploymentRecord("test")
    record.record_wiring_step(0, "RegistryProxy.addFactory(address)[@Factory]")
    with pytest.raises(RecordMismatch):
        record.is_wiring_step_complete(0, "Factory.addRegistryAddress(address)[@RegistryProxy]")


def test_corrupted_record(tmp_path: Path):
    record = DeploymentRecord(folder=tmp_path, network="sepolia")
    record.record_unit("RegistryProxy", REGISTRY, "uups_proxy")
    with open(record.log_file, "at") as f:
        f.write("{not json\n")

    with pytest.raises(RecordMismatch):
        DeploymentRecord.load(tmp_path, "sepolia")


def test_export_address_book(tmp_path: Path):
    """Other networks in the address book are kept."""
    path = tmp_path / "address.json"
    with open(path, "wt") as f:
        json.dump({"optimism-sepolia": {"RegistryProxy": FACTORY}}, f)

    record = DeploymentRecord("sepolia")
    record.record_unit("RegistryProxy", REGISTRY, "uups_proxy")
    record.export_address_book(path)

    with open(path, "rt") as f:
        book = json.load(f)

    assert book == {
        "optimism-sepolia": {"RegistryProxy": FACTORY},
        "sepolia": {"RegistryProxy": REGISTRY},
    }


def test_pformat():
    record = DeploymentRecord("sepolia")
    record.record_unit("RegistryProxy", REGISTRY, "uups_proxy")
    assert REGISTRY in record.pformat()
