"""Compute a device wallet address and compare it with the factory.

- Predicts the ``CREATE2`` address of a device wallet locally

- Asks the ``DeviceWalletFactory`` for the counterfactual address

- Optionally creates the wallet with ``CREATE_ACCOUNT=true`` and checks the wallet landed at the predicted address

Example how to run:

.. code-block:: shell

    export DEPLOYMENT_NETWORK=sepolia
    export ALCHEMY_SEPOLIA_HTTPS=...
    export ESIM_WALLET_ADMIN=...
    export DEVICE_ID=Device_11
    export SALT=111
    export OWNER_KEY_X=0x...
    export OWNER_KEY_Y=0x...
    # v2 device wallets also take the eSIM wallet factory from the address book
    export INIT_PAYLOAD_VERSION=v1
    python scripts/esim-wallet/compute-device-wallet-address.py
"""

import json
import logging
import os

from eth_deploy.abi import ArtifactStore
from eth_deploy.config import create_web3_network, get_artifacts_folder, get_deployments_folder, get_env, load_role_signers
from eth_deploy.create2 import SaltStrategy
from eth_deploy.esim_wallet.deployment import DEVICE_WALLET_FACTORY
from eth_deploy.esim_wallet.device_wallet import InitPayloadVersion, check_address_book_device_wallet_address, parse_owner_key
from eth_deploy.plan import Role
from eth_deploy.utils import addr, setup_console_logging

logger = logging.getLogger(__name__)


def main():
    setup_console_logging(default_log_level="info")

    network = create_web3_network()

    address_book_path = get_deployments_folder() / "address.json"
    with open(address_book_path, "rt", encoding="utf-8") as f:
        address_book = json.load(f)[network.name]

    factory = addr(address_book[DEVICE_WALLET_FACTORY])
    requester = addr(get_env("ESIM_WALLET_ADMIN"))
    device_id = os.environ.get("DEVICE_ID", "Device_11")
    nonce = int(os.environ.get("SALT", "111"))
    owner_key = parse_owner_key([get_env("OWNER_KEY_X"), get_env("OWNER_KEY_Y")])
    version = InitPayloadVersion[os.environ.get("INIT_PAYLOAD_VERSION", "v1")]
    strategy = SaltStrategy[os.environ.get("SALT_STRATEGY", "hashed")]

    artifacts = ArtifactStore(get_artifacts_folder())

    check = check_address_book_device_wallet_address(
        network,
        artifacts,
        address_book,
        owner_key,
        device_id,
        nonce,
        requester,
        version=version,
        strategy=strategy,
    )
    print(f"Predicted address: {check.derived}")
    print(f"Factory address:   {check.reported}")
    check.assert_match()

    if os.environ.get("CREATE_ACCOUNT", "false").lower() == "true":
        signers = load_role_signers()
        admin = signers.get(Role.admin)
        assert admin, "PRIVATE_KEY_3 of the eSIM wallet admin needed to create the account"
        assert admin.address == requester, f"PRIVATE_KEY_3 is for {admin.address}, ESIM_WALLET_ADMIN is {requester}"

        receipt = network.submit_call(
            factory,
            "createAccount(string,bytes32[2],uint256,uint256)",
            [device_id, owner_key, nonce, 0],
            admin,
        )
        print(f"Created in tx {receipt['transactionHash'].hex()}")

        code = network.get_code(check.derived)
        assert len(code) > 0, f"No device wallet at the predicted address {check.derived}"
        print(f"Device wallet deployed at {check.derived}")


if __name__ == "__main__":
    main()
