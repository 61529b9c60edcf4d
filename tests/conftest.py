"""Shared test fixtures.

- ``web3`` fixtures run a real EVM with :py:class:`web3.EthereumTesterProvider`

- ``simulated_network`` fixtures run the eSIM wallet platform models
"""

import pytest
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import EthereumTesterProvider, Web3

from eth_deploy.abi import ArtifactStore
from eth_deploy.esim_wallet.deployment import ESIMWalletAccounts
from eth_deploy.esim_wallet.simulated import register_esim_wallet_artifacts
from eth_deploy.plan import Role
from eth_deploy.testing import CREATE2_FACTORY_BYTECODE, SimulatedNetwork


@pytest.fixture
def tester_provider():
    # https://web3py.readthedocs.io/en/stable/examples.html#contract-unit-tests-in-python
    return EthereumTesterProvider()


@pytest.fixture
def eth_tester(tester_provider):
    # https://web3py.readthedocs.io/en/stable/examples.html#contract-unit-tests-in-python
    return tester_provider.ethereum_tester


@pytest.fixture
def web3(tester_provider):
    """Set up a local unit testing blockchain."""
    # https://web3py.readthedocs.io/en/stable/examples.html#contract-unit-tests-in-python
    return Web3(tester_provider)


@pytest.fixture()
def deployer(web3) -> str:
    """Deploy account.

    Do some account allocation for tests.
    """
    return web3.eth.accounts[0]


@pytest.fixture()
def create2_factory(web3, deployer) -> str:
    """Deploy the minimal CREATE2 factory."""
    tx_hash = web3.eth.send_transaction({"from": deployer, "data": CREATE2_FACTORY_BYTECODE, "gas": 500_000})
    receipt = web3.eth.wait_for_transaction_receipt(tx_hash)
    assert receipt["status"] == 1
    return receipt["contractAddress"]


@pytest.fixture()
def simulated_network() -> SimulatedNetwork:
    return SimulatedNetwork()


@pytest.fixture()
def artifacts(simulated_network) -> ArtifactStore:
    """eSIM wallet platform and OpenZeppelin models as artifacts."""
    artifacts = ArtifactStore()
    register_esim_wallet_artifacts(simulated_network, artifacts)
    return artifacts


@pytest.fixture()
def role_accounts() -> dict[Role, LocalAccount]:
    """A different account for each role."""
    return {role: Account.create() for role in Role}


@pytest.fixture()
def platform_accounts(role_accounts) -> ESIMWalletAccounts:
    return ESIMWalletAccounts(
        admin=role_accounts[Role.admin].address,
        vault=role_accounts[Role.vault].address,
        upgrade_manager=role_accounts[Role.upgrade_manager].address,
    )
