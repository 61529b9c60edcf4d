"""Upgrade the device wallet implementation of all device wallets.

- Deploys a new ``DeviceWallet(entryPoint, p256Verifier)`` implementation

- Points the device wallet beacon to it as the upgrade manager

- Reads the implementation back and reports if the upgrade did not take effect

Give each upgrade a new ``UPGRADE_NAME``. Running again with the same name
does not deploy again, but verifies the beacon.

Example how to run:

.. code-block:: shell

    export DEPLOYMENT_NETWORK=sepolia
    export ALCHEMY_SEPOLIA_HTTPS=...
    export PRIVATE_KEY_1=...
    export UPGRADE_NAME=DeviceWalletImplementation_2
    python scripts/esim-wallet/upgrade-device-wallet.py
"""

import logging
import os
import sys

from eth_deploy.abi import ArtifactStore
from eth_deploy.config import create_web3_network, get_artifacts_folder, get_deployments_folder, load_role_signers
from eth_deploy.esim_wallet.deployment import DEVICE_WALLET_FACTORY, ENTRY_POINT, P256_VERIFIER, upgrade_device_wallet
from eth_deploy.orchestrator import DeploymentOrchestrator
from eth_deploy.record import DeploymentRecord
from eth_deploy.upgrade import UpgradeCoordinator
from eth_deploy.utils import setup_console_logging

logger = logging.getLogger(__name__)


def main():
    setup_console_logging(default_log_level="info", log_file=get_deployments_folder() / "deploy.log")

    network = create_web3_network()
    signers = load_role_signers()

    record = DeploymentRecord.load(get_deployments_folder(), network.name)
    for name in (DEVICE_WALLET_FACTORY, ENTRY_POINT, P256_VERIFIER):
        assert record.get_address(name), f"{name} is not in the deployment record of {network.name}"

    orchestrator = DeploymentOrchestrator(network, ArtifactStore(get_artifacts_folder()))
    coordinator = UpgradeCoordinator(orchestrator)

    result = upgrade_device_wallet(
        coordinator,
        record.get_address(DEVICE_WALLET_FACTORY),
        record.get_address(ENTRY_POINT),
        record.get_address(P256_VERIFIER),
        signers,
        record,
        unit_name=os.environ.get("UPGRADE_NAME", "DeviceWalletImplementationUpgrade"),
    )

    print(f"Implementation before: {result.previous_implementation}")
    print(f"Implementation after:  {result.reported_implementation}")

    if not result.is_verified():
        print(f"Upgrade failed, expected {result.new_implementation}")
        sys.exit(1)

    print("Upgrade verified")


if __name__ == "__main__":
    main()
