"""Deploy the full eSIM wallet platform.

- Deploys implementations and UUPS proxies, in parallel where possible

- Applies the post-deployment wiring

- Writes the deployment record to ``deployments/<network>.jsonl``
  and the address book to ``deployments/address.json``

- Appends the log to ``deployments/deploy.log``

Running the script again resumes from the record: deployed units and applied wiring steps are skipped.

Example how to run:

.. code-block:: shell

    export DEPLOYMENT_NETWORK=sepolia
    export ALCHEMY_SEPOLIA_HTTPS=...
    export PRIVATE_KEY_1=...
    export PRIVATE_KEY_2=...
    export PRIVATE_KEY_3=...
    export ESIM_WALLET_ADMIN=...
    export VAULT=...
    export UPGRADE_MANAGER=...
    export ENTRY_POINT_ZERO_POINT_SEVEN_ADDRESS=...
    python scripts/esim-wallet/deploy-esim-wallet-platform.py
"""

import logging

from web3 import Web3

from eth_deploy.abi import ArtifactStore
from eth_deploy.config import (
    create_web3_network,
    get_artifacts_folder,
    get_deployments_folder,
    get_entry_point,
    load_esim_wallet_accounts,
    load_role_signers,
)
from eth_deploy.esim_wallet.deployment import build_esim_wallet_plan
from eth_deploy.orchestrator import DeploymentOrchestrator
from eth_deploy.record import DeploymentRecord
from eth_deploy.utils import setup_console_logging

logger = logging.getLogger(__name__)


def main():
    setup_console_logging(default_log_level="info", log_file=get_deployments_folder() / "deploy.log")

    network = create_web3_network()
    signers = load_role_signers()
    for role, signer in signers.items():
        logger.info("%s %s balance %s ETH", role.name, signer.address, Web3.from_wei(network.get_balance(signer.address), "ether"))
    accounts = load_esim_wallet_accounts()
    entry_point = get_entry_point()

    plan = build_esim_wallet_plan(accounts, entry_point=entry_point)

    folder = get_deployments_folder()
    record = DeploymentRecord.load(folder, network.name)
    if record.version:
        logger.info("Resuming from %s", record)

    orchestrator = DeploymentOrchestrator(network, ArtifactStore(get_artifacts_folder()))
    record = orchestrator.deploy(plan, signers, record)
    record.export_address_book(folder / "address.json")

    print(f"eSIM wallet platform deployed on {network.name}")
    for name, address in record.get_address_book().items():
        print(f"{name}: {address}")


if __name__ == "__main__":
    main()
