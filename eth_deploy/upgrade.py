"""Beacon implementation upgrades.

Roll all proxies behind a beacon forward to a new implementation:

- Deploy the new implementation, unless it is already deployed

- Read the currently reported implementation (pre-check)

- Send the upgrade call as the role that is allowed to upgrade

- Read the reported implementation again (post-check) and compare

The upgrade transaction can succeed and still leave the beacon pointing elsewhere,
e.g. when the wrong beacon owner was targeted. This ends in
:py:attr:`UpgradeState.verification_failed` state, which is logged and recorded,
but not raised unless the caller asks with :py:meth:`UpgradeResult.raise_for_state`.
There is no automatic rollback.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from eth_typing import HexAddress
from web3 import Web3

from eth_deploy.orchestrator import DeploymentOrchestrator, format_tx_hash
from eth_deploy.plan import DeploymentUnit, MissingSigner, Role, UnitStatus
from eth_deploy.record import DeploymentRecord, UpgradeEntry

logger = logging.getLogger(__name__)


class UpgradeVerificationFailed(Exception):
    """Upgrade transaction went through, but the reported implementation is not the new one."""


class UpgradeState(enum.Enum):
    """Upgrade progress.

    ``verified`` and ``verification_failed`` are terminal.
    """

    not_started = "not_started"
    implementation_deployed = "implementation_deployed"
    upgrade_submitted = "upgrade_submitted"
    verified = "verified"
    verification_failed = "verification_failed"


@dataclass(slots=True)
class UpgradeResult:
    """Outcome of :py:meth:`UpgradeCoordinator.upgrade_beacon_implementation`."""

    #: Implementation unit name
    unit: str

    #: Contract that owns the beacon and exposes the upgrade function
    beacon_owner: HexAddress

    state: UpgradeState = UpgradeState.not_started

    #: Reported implementation before the upgrade
    previous_implementation: HexAddress | None = None

    #: The implementation we upgraded to
    new_implementation: HexAddress | None = None

    #: Reported implementation after the upgrade
    reported_implementation: HexAddress | None = None

    #: Upgrade transaction, if one was needed
    tx_hash: str | None = None

    def is_verified(self) -> bool:
        return self.state == UpgradeState.verified

    def raise_for_state(self):
        """Raise if the post-check failed.

        :raise UpgradeVerificationFailed:
        """
        if self.state == UpgradeState.verification_failed:
            raise UpgradeVerificationFailed(
                f"Upgrade of {self.unit} via {self.beacon_owner} did not take effect. Expected implementation {self.new_implementation}, reported {self.reported_implementation}, tx {self.tx_hash}"
            )


class UpgradeCoordinator:
    """Upgrade beacon implementations using the orchestrator transaction primitives."""

    def __init__(self, orchestrator: DeploymentOrchestrator):
        assert isinstance(orchestrator, DeploymentOrchestrator), f"Got {type(orchestrator)}"
        self.orchestrator = orchestrator

    @property
    def network(self):
        return self.orchestrator.network

    def read_implementation(self, beacon_owner: HexAddress, implementation_getter: str) -> HexAddress:
        address = self.network.read_state(beacon_owner, implementation_getter, [], ["address"])
        return Web3.to_checksum_address(address)

    def upgrade_beacon_implementation(
        self,
        beacon_owner: HexAddress,
        new_implementation_unit: DeploymentUnit,
        upgrade_function: str,
        implementation_getter: str,
        required_role: Role,
        signers: Mapping[Role, Any],
        record: DeploymentRecord | None = None,
    ) -> UpgradeResult:
        """Deploy a new implementation and point the beacon to it.

        Calling this again with the same implementation unit does not redeploy
        or resend anything, it only verifies the state again.

        Example:

        .. code-block:: python

            coordinator = UpgradeCoordinator(orchestrator)
            result = coordinator.upgrade_beacon_implementation(
                device_wallet_factory,
                DeploymentUnit("DeviceWalletImplementationV2", artifact="DeviceWallet", args=[entry_point, p256_verifier]),
                "updateDeviceWalletImplementation(address)",
                "getCurrentDeviceWalletImplementation()",
                Role.upgrade_manager,
                signers,
                record,
            )
            result.raise_for_state()

        :param beacon_owner:
            Contract exposing ``upgrade_function`` and ``implementation_getter``

        :param new_implementation_unit:
            The implementation to deploy and upgrade to

        :param upgrade_function:
            Signature taking the new implementation address, like ``updateImplementation(address)``

        :param implementation_getter:
            View function signature returning the current implementation address

        :param required_role:
            Role allowed to call ``upgrade_function``

        :raise MissingSigner:
            No signer for the needed roles

        :raise TransactionFailure:
            Implementation deployment or upgrade call failed

        :return:
            Result in a terminal state
        """
        unit = new_implementation_unit
        for role in (unit.role, required_role):
            if signers.get(role) is None:
                raise MissingSigner(f"Upgrade of {unit.name} needs a signer for role {role.name}")

        beacon_owner = Web3.to_checksum_address(beacon_owner)
        result = UpgradeResult(unit=unit.name, beacon_owner=beacon_owner)

        recorded_address = record.get_address(unit.name) if record else None
        if unit.address:
            logger.info("Implementation %s already deployed at %s", unit.name, unit.address)
        elif recorded_address:
            logger.info("Implementation %s already deployed at %s according to the record", unit.name, recorded_address)
            unit.address = recorded_address
            unit.status = UnitStatus.deployed
        else:
            self.orchestrator.deploy_unit(unit, signers[unit.role], record)

        result.new_implementation = Web3.to_checksum_address(unit.address)
        result.state = UpgradeState.implementation_deployed

        result.previous_implementation = self.read_implementation(beacon_owner, implementation_getter)
        logger.info("%s reports implementation %s before upgrade", beacon_owner, result.previous_implementation)

        if result.previous_implementation == result.new_implementation:
            logger.info("Implementation is already %s, not sending upgrade transaction", result.new_implementation)
        else:
            receipt = self.orchestrator.execute_call(beacon_owner, upgrade_function, [result.new_implementation], signers[required_role])
            result.tx_hash = format_tx_hash(receipt.get("transactionHash"))
            result.state = UpgradeState.upgrade_submitted

        result.reported_implementation = self.read_implementation(beacon_owner, implementation_getter)

        if result.reported_implementation == result.new_implementation:
            result.state = UpgradeState.verified
            logger.info("Upgrade of %s verified, %s now reports %s", unit.name, beacon_owner, result.reported_implementation)
        else:
            result.state = UpgradeState.verification_failed
            logger.error(
                "Upgrade verification failed for %s: expected implementation %s, %s reports %s",
                unit.name,
                result.new_implementation,
                beacon_owner,
                result.reported_implementation,
            )

        if record is not None:
            record.record_upgrade(
                UpgradeEntry(
                    unit=unit.name,
                    beacon_owner=beacon_owner,
                    previous_implementation=result.previous_implementation,
                    new_implementation=result.new_implementation,
                    reported_implementation=result.reported_implementation,
                    state=result.state.value,
                    tx_hash=result.tx_hash,
                )
            )

        return result
