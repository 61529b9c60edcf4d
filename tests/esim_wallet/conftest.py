"""eSIM wallet platform deployed on the simulated network."""

import pytest

from eth_deploy.esim_wallet.deployment import ESIMWalletAccounts, build_esim_wallet_plan
from eth_deploy.orchestrator import DeploymentOrchestrator
from eth_deploy.record import DeploymentRecord
from eth_deploy.testing import SimulatedNetwork

#: P-256 public key of a test passkey
OWNER_KEY = (
    "0x6B17D1F2E12C4247F8BCE6E563A440F277037D812DEB33A0F4A13945D898C291",
    "0x4FE342E2FE1A7F9B8EE7EB4A7C0F9E162BCE33576B315ECECBB6406837BF51F1",
)


@pytest.fixture()
def owner_key() -> tuple[str, str]:
    return OWNER_KEY


@pytest.fixture()
def signers(role_accounts) -> dict:
    """A different signer for each role."""
    return dict(role_accounts)


@pytest.fixture()
def orchestrator(simulated_network, artifacts) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(simulated_network, artifacts)


@pytest.fixture()
def platform(simulated_network: SimulatedNetwork, orchestrator: DeploymentOrchestrator, platform_accounts: ESIMWalletAccounts, signers) -> DeploymentRecord:
    """Fully deployed and wired platform."""
    record = DeploymentRecord(simulated_network.name)
    return orchestrator.deploy(build_esim_wallet_plan(platform_accounts), signers, record)
