"""Apply the post-deployment wiring of an already deployed eSIM wallet platform.

Uses the units in the deployment record and runs only the wiring steps
that are not yet applied. Needs the same environment as ``deploy-esim-wallet-platform.py``.

Example how to run:

.. code-block:: shell

    export DEPLOYMENT_NETWORK=optimism-sepolia
    python scripts/esim-wallet/post-deployment.py
"""

import logging
import sys

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
from eth_deploy.plan import UnitKind
from eth_deploy.record import DeploymentRecord
from eth_deploy.utils import setup_console_logging

logger = logging.getLogger(__name__)


def main():
    setup_console_logging(default_log_level="info")

    network = create_web3_network()
    signers = load_role_signers()
    plan = build_esim_wallet_plan(load_esim_wallet_accounts(), entry_point=get_entry_point())

    folder = get_deployments_folder()
    record = DeploymentRecord.load(folder, network.name)

    missing = [u.name for u in plan.units.values() if u.kind != UnitKind.external and not record.get_address(u.name)]
    if missing:
        print(f"Not deployed on {network.name} yet: {', '.join(missing)}")
        print("Run deploy-esim-wallet-platform.py first")
        sys.exit(1)

    orchestrator = DeploymentOrchestrator(network, ArtifactStore(get_artifacts_folder()))
    record = orchestrator.deploy(plan, signers, record)

    print(f"Post-deployment wiring complete on {network.name}, {len(record.wiring_steps)} steps applied")


if __name__ == "__main__":
    main()
