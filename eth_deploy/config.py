"""Environment configuration of deployment scripts.

Everything comes from environment variables:

- ``DEPLOYMENT_NETWORK``: one of :py:data:`KNOWN_NETWORKS`

- ``JSON_RPC_URL``: overrides the RPC URL of the network

- ``ALCHEMY_SEPOLIA_HTTPS``, ``ALCHEMY_OP_SEPOLIA_HTTPS``: RPC URLs of the public testnets

- ``PRIVATE_KEY_1``: deployer and upgrade manager key,
  ``PRIVATE_KEY_2``: vault key,
  ``PRIVATE_KEY_3``: eSIM wallet admin key

- ``ESIM_WALLET_ADMIN``, ``VAULT``, ``UPGRADE_MANAGER``: platform account addresses

- ``ENTRY_POINT_ZERO_POINT_SEVEN_ADDRESS``: already deployed ERC-4337 entry point

- ``DEPLOYMENTS_FOLDER``: where deployment records and the address book are kept, default ``deployments``

- ``ARTIFACTS_FOLDER``: compiled contract artifacts, default ``artifacts``

Example:

.. code-block:: shell

    export DEPLOYMENT_NETWORK=sepolia
    export ALCHEMY_SEPOLIA_HTTPS=...
    export PRIVATE_KEY_1=...
    python scripts/esim-wallet/deploy-esim-wallet-platform.py
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from web3 import HTTPProvider, Web3

from eth_deploy.esim_wallet.deployment import ESIMWalletAccounts
from eth_deploy.hotwallet import HotWallet
from eth_deploy.network import Web3Network
from eth_deploy.plan import Role

logger = logging.getLogger(__name__)


#: Refuse to broadcast above this fee, 50 gwei
DEFAULT_MAX_FEE_PER_GAS_LIMIT = 50 * 10**9


@dataclass(slots=True, frozen=True)
class NetworkConfig:
    """A network we know how to deploy to."""

    #: Network identifier, also the deployment record and the address book key
    name: str

    chain_id: int

    #: Environment variable holding the RPC URL
    rpc_url_env: str | None = None

    #: RPC URL if the environment variable is not needed
    default_rpc_url: str | None = None

    max_fee_per_gas_limit: int = DEFAULT_MAX_FEE_PER_GAS_LIMIT

    #: Local development node
    test_network: bool = False


#: Networks by name
KNOWN_NETWORKS = {
    "sepolia": NetworkConfig("sepolia", 11155111, rpc_url_env="ALCHEMY_SEPOLIA_HTTPS"),
    "optimism-sepolia": NetworkConfig("optimism-sepolia", 11155420, rpc_url_env="ALCHEMY_OP_SEPOLIA_HTTPS"),
    "hardhat": NetworkConfig("hardhat", 31337, default_rpc_url="http://127.0.0.1:8545", test_network=True),
    "localhost": NetworkConfig("localhost", 31337, default_rpc_url="http://127.0.0.1:8545", test_network=True),
}


def get_env(name: str, env: Mapping[str, str] | None = None) -> str:
    """Read a mandatory environment variable.

    :raise ValueError:
        Variable is missing or empty
    """
    if env is None:
        env = os.environ
    value = env.get(name)
    if not value:
        raise ValueError(f"Environment variable {name} is not set")
    return value


def get_network_config(name: str) -> NetworkConfig:
    """
    :raise ValueError:
        Unknown network
    """
    config = KNOWN_NETWORKS.get(name)
    if config is None:
        raise ValueError(f"Unknown network {name}, known networks are: {', '.join(KNOWN_NETWORKS)}")
    return config


def get_rpc_url(config: NetworkConfig, env: Mapping[str, str] | None = None) -> str:
    """Resolve the RPC URL of a network.

    ``JSON_RPC_URL`` wins over the network specific variable.

    :raise ValueError:
        No URL configured
    """
    if env is None:
        env = os.environ

    url = env.get("JSON_RPC_URL")
    if url:
        return url

    if config.rpc_url_env:
        return get_env(config.rpc_url_env, env)

    if config.default_rpc_url:
        return config.default_rpc_url

    raise ValueError(f"No RPC URL for network {config.name}, set JSON_RPC_URL")


def create_web3_network(name: str | None = None, env: Mapping[str, str] | None = None) -> Web3Network:
    """Connect to the deployment network.

    :param name:
        Network name, default ``DEPLOYMENT_NETWORK``

    :raise ValueError:
        Missing configuration, or the node is for a different chain
    """
    if env is None:
        env = os.environ

    if name is None:
        name = get_env("DEPLOYMENT_NETWORK", env)

    config = get_network_config(name)
    web3 = Web3(HTTPProvider(get_rpc_url(config, env)))

    chain_id = web3.eth.chain_id
    if chain_id != config.chain_id:
        raise ValueError(f"RPC node of {name} is for chain {chain_id}, expected {config.chain_id}")

    logger.info("Connected to %s, chain %d, block %d", name, chain_id, web3.eth.block_number)

    return Web3Network(
        web3,
        name,
        max_fee_per_gas_limit=config.max_fee_per_gas_limit,
        test_network=config.test_network,
    )


def load_private_key_wallet(name: str, env: Mapping[str, str]) -> HotWallet | None:
    key = env.get(name)
    if not key:
        return None
    if not key.startswith("0x"):
        key = "0x" + key
    return HotWallet.from_private_key(key)


def load_role_signers(env: Mapping[str, str] | None = None) -> dict[Role, HotWallet]:
    """Map roles to hot wallets from ``PRIVATE_KEY_1``, ``PRIVATE_KEY_2`` and ``PRIVATE_KEY_3``.

    Roles with no key are left out, so that a plan needing them fails with
    :py:class:`eth_deploy.plan.MissingSigner` before anything is sent.

    The deployer and the upgrade manager share one wallet, and one nonce counter.
    """
    if env is None:
        env = os.environ

    signers = {}

    deployer = load_private_key_wallet("PRIVATE_KEY_1", env)
    if deployer:
        signers[Role.deployer] = deployer
        signers[Role.upgrade_manager] = deployer

    vault = load_private_key_wallet("PRIVATE_KEY_2", env)
    if vault:
        signers[Role.vault] = vault

    admin = load_private_key_wallet("PRIVATE_KEY_3", env)
    if admin:
        signers[Role.admin] = admin

    logger.info("Loaded signers for roles: %s", ", ".join(f"{r.name}={w.address}" for r, w in signers.items()))
    return signers


def load_esim_wallet_accounts(env: Mapping[str, str] | None = None) -> ESIMWalletAccounts:
    """Platform accounts from ``ESIM_WALLET_ADMIN``, ``VAULT`` and ``UPGRADE_MANAGER``.

    :raise ValueError:
        A variable is missing
    """
    return ESIMWalletAccounts(
        admin=Web3.to_checksum_address(get_env("ESIM_WALLET_ADMIN", env)),
        vault=Web3.to_checksum_address(get_env("VAULT", env)),
        upgrade_manager=Web3.to_checksum_address(get_env("UPGRADE_MANAGER", env)),
    )


def get_entry_point(env: Mapping[str, str] | None = None) -> str | None:
    """Already deployed entry point, if configured."""
    if env is None:
        env = os.environ
    return env.get("ENTRY_POINT_ZERO_POINT_SEVEN_ADDRESS") or None


def get_deployments_folder(env: Mapping[str, str] | None = None) -> Path:
    if env is None:
        env = os.environ
    return Path(env.get("DEPLOYMENTS_FOLDER", "deployments"))


def get_artifacts_folder(env: Mapping[str, str] | None = None) -> Path:
    """Compiled contracts, the Hardhat ``artifacts`` folder by default."""
    if env is None:
        env = os.environ
    return Path(env.get("ARTIFACTS_FOLDER", "artifacts"))
