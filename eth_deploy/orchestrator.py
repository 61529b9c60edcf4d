"""Execute deployment plans.

:py:class:`DeploymentOrchestrator` runs a :py:class:`eth_deploy.plan.DeploymentPlan` in phases:

1. Check there is a signer for every role the plan needs,
   and the wiring step functions exist in the artifacts

2. Adopt external units and units already in the deployment record

3. Deploy the remaining units in waves. A wave is every pending unit whose references
   are already deployed, and its units are deployed in parallel

4. Check every unit address has code

5. Run wiring steps one by one, in the declared order, skipping the ones the record marks done

Nothing is retried. A creation transaction sent again would give a different address
and break any address already derived from the earlier one, so any failure
halts the run with :py:class:`DeploymentHalted` and leaves the record for the operator
to resume from.

Example:

.. code-block:: python

    network = Web3Network(web3, "sepolia")
    orchestrator = DeploymentOrchestrator(network, ArtifactStore(Path("artifacts")))
    record = DeploymentRecord.load(Path("deployments"), "sepolia")
    record = orchestrator.deploy(plan, {Role.deployer: deployer, Role.admin: admin}, record)
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Mapping, Sequence

from eth_typing import HexAddress
from hexbytes import HexBytes

from eth_deploy.abi import ArtifactStore
from eth_deploy.codec import encode_call, encode_tuple
from eth_deploy.network import CreationResult, Network
from eth_deploy.plan import PROXY_CONSTRUCTOR_TYPES, DeploymentPlan, DeploymentUnit, PlanError, Ref, Role, UnitKind, UnitStatus, resolve_args
from eth_deploy.record import DeploymentRecord, RecordMismatch

logger = logging.getLogger(__name__)


class DeploymentHalted(Exception):
    """A deployment run stopped at a failed unit or wiring step.

    Units and steps before the failure are in :py:attr:`record`,
    so the run can be resumed by passing the record back to :py:meth:`DeploymentOrchestrator.deploy`.
    """

    def __init__(
        self,
        phase: str,
        index: int,
        name: str,
        record: DeploymentRecord,
        cause: Exception | None,
        expected: str | None = None,
        actual: str | None = None,
    ):
        msg = f"Deployment halted in {phase} phase at #{index} {name}: {cause or 'failed'}"
        if expected is not None or actual is not None:
            msg += f"\nExpected: {expected}\nActual: {actual}"
        msg += f"\nDeployment record:\n{record.pformat()}"
        super().__init__(msg)

        #: adoption, deployment, verification or wiring
        self.phase = phase

        #: Position of the unit or the wiring step in the plan
        self.index = index

        #: Unit name or wiring step fingerprint
        self.name = name

        #: Record with everything done before the failure
        self.record = record

        self.cause = cause


def format_tx_hash(tx_hash: Any) -> str | None:
    if tx_hash is None:
        return None
    return HexBytes(tx_hash).hex()


class DeploymentOrchestrator:
    """Deploys units and applies wiring steps on a network."""

    def __init__(self, network: Network, artifacts: ArtifactStore, max_workers: int = 4):
        """
        :param max_workers:
            How many creation transactions we keep in flight in parallel.

            Tune down for nodes with strict rate limits.
        """
        assert isinstance(network, Network), f"Got {type(network)}"
        assert isinstance(artifacts, ArtifactStore), f"Got {type(artifacts)}"
        assert max_workers >= 1
        self.network = network
        self.artifacts = artifacts
        self.max_workers = max_workers

    def __repr__(self):
        return f"<DeploymentOrchestrator {self.network.name} workers:{self.max_workers}>"

    def encode_constructor_args(self, unit: DeploymentUnit, addresses: Mapping[str, HexAddress]) -> bytes:
        """Encode the constructor arguments of a unit.

        - Plain contracts: ``args`` by the artifact constructor ABI

        - Proxies: implementation and the encoded initialiser call, in the proxy constructor layout
        """
        args = resolve_args(list(unit.args), addresses)

        if unit.kind == UnitKind.contract:
            artifact = self.artifacts.get(unit.artifact)
            return encode_tuple(artifact.constructor_types, args)

        implementation = resolve_args(unit.implementation, addresses)
        owner = resolve_args(unit.owner, addresses)

        if unit.initializer:
            init_data = encode_call(unit.initializer, args)
        else:
            init_data = b""

        match unit.kind:
            case UnitKind.uups_proxy | UnitKind.beacon_proxy:
                values = [implementation, init_data]
            case UnitKind.transparent_proxy:
                values = [implementation, owner, init_data]
            case UnitKind.beacon:
                values = [implementation, owner]
            case _:
                raise PlanError(f"Cannot encode constructor for unit {unit.name} of kind {unit.kind.name}")

        return encode_tuple(PROXY_CONSTRUCTOR_TYPES[unit.kind], values)

    def deploy_unit(
        self,
        unit: DeploymentUnit,
        signer: Any,
        record: DeploymentRecord | None = None,
        addresses: Mapping[str, HexAddress] | None = None,
    ) -> CreationResult:
        """Deploy one unit and record it.

        :param signer:
            Signer of the unit role

        :param addresses:
            Resolved addresses for references of the unit.

            Defaults to the record address book.

        :raise TransactionFailure:
            Creation failed
        """
        assert unit.status == UnitStatus.pending, f"Unit already deployed: {unit}"
        assert unit.kind != UnitKind.external, f"External units are not deployed: {unit}"

        if addresses is None:
            addresses = record.get_address_book() if record else {}

        artifact = self.artifacts.get(unit.artifact)
        if not artifact.bytecode:
            raise PlanError(f"Artifact {unit.artifact} of unit {unit.name} has no creation bytecode")

        constructor_args = self.encode_constructor_args(unit, addresses)

        logger.info("Deploying %s (%s, %s), constructor args %d bytes", unit.name, unit.artifact, unit.kind.name, len(constructor_args))
        result = self.network.submit_creation(artifact.bytecode, constructor_args, signer)

        unit.address = result.address
        unit.status = UnitStatus.deployed
        logger.info("Deployed %s at %s, tx %s", unit.name, result.address, format_tx_hash(result.tx_hash))

        if record is not None:
            record.record_unit(unit.name, result.address, unit.kind.value, format_tx_hash(result.tx_hash))

        return result

    def execute_call(self, target: HexAddress, function_signature: str, args: Sequence[Any], signer: Any) -> dict:
        """Send one configuration transaction and wait for its receipt.

        :raise TransactionFailure:
            The call reverted or was rejected
        """
        logger.info("Calling %s on %s as %s", function_signature, target, signer.address)
        return self.network.submit_call(target, function_signature, args, signer)

    def deploy(
        self,
        plan: DeploymentPlan,
        signers: Mapping[Role, Any],
        record: DeploymentRecord | None = None,
    ) -> DeploymentRecord:
        """Run a deployment plan to the end.

        :param signers:
            Role -> signer mapping.

            The same signer may serve several roles.

        :param record:
            Existing record to resume from.

            If not given, a new in-memory record is created.

        :raise MissingSigner:
            Before any network call

        :raise DeploymentHalted:
            A unit or a wiring step failed

        :return:
            The record with all units and wiring steps
        """
        assert isinstance(plan, DeploymentPlan), f"Got {type(plan)}"

        if record is None:
            record = DeploymentRecord(self.network.name)

        assert record.network == self.network.name, f"Record is for {record.network}, but we deploy on {self.network.name}"

        plan.check_signers(signers)
        self.check_wiring_functions(plan)

        logger.info("Starting deployment %s on %s, %d units, %d wiring steps", plan.name, self.network.name, len(plan.units), len(plan.wiring_steps))

        self.adopt_existing_units(plan, record)
        self.deploy_pending_units(plan, signers, record)
        self.verify_units(plan, record)
        self.run_wiring_steps(plan, signers, record)

        logger.info("Deployment %s complete on %s", plan.name, self.network.name)
        return record

    def check_wiring_functions(self, plan: DeploymentPlan):
        """Check the wiring step functions exist in the ABI of their targets.

        Proxies are checked against their implementation artifact.
        External units, beacon proxies and implementations given as a literal address are not checked.

        :raise PlanError:
            A wiring step calls a function the target does not have
        """
        for index, step in enumerate(plan.wiring_steps):
            unit = plan.get_unit(step.target)
            if unit.kind in (UnitKind.uups_proxy, UnitKind.transparent_proxy) and isinstance(unit.implementation, Ref):
                unit = plan.get_unit(unit.implementation.unit)

            if unit.kind != UnitKind.contract:
                continue

            artifact = self.artifacts.get(unit.artifact)
            if not artifact.has_function(step.function_signature):
                raise PlanError(f"Wiring step #{index} calls {step.function_signature}, but {unit.artifact} of {step.target} has no such function")

    def adopt_existing_units(self, plan: DeploymentPlan, record: DeploymentRecord):
        """Take addresses of external and previously deployed units.

        :raise DeploymentHalted:
            An external unit address differs from the recorded one
        """
        for index, unit in enumerate(plan.units.values()):
            if unit.kind == UnitKind.external:
                try:
                    record.record_unit(unit.name, unit.address, unit.kind.value)
                except RecordMismatch as e:
                    raise DeploymentHalted("adoption", index, unit.name, record, e, expected=record.get_address(unit.name), actual=unit.address) from e
                unit.status = UnitStatus.deployed
                continue

            address = record.get_address(unit.name)
            if address and unit.status == UnitStatus.pending:
                logger.warning("Unit %s already deployed at %s according to the record, not deploying again", unit.name, address)
                unit.address = address
                unit.status = UnitStatus.deployed

    def deploy_pending_units(self, plan: DeploymentPlan, signers: Mapping[Role, Any], record: DeploymentRecord):
        """Deploy all pending units in dependency waves.

        A unit is recorded as soon as its creation confirms,
        so that the record is complete even if another unit of the same wave fails.
        """
        positions = {name: idx for idx, name in enumerate(plan.units)}
        pending = [u for u in plan.units.values() if u.status == UnitStatus.pending]
        wave_no = 0

        while pending:
            addresses = plan.get_addresses()
            wave = [u for u in pending if all(ref in addresses for ref in u.get_references())]
            assert wave, f"No deployable units left, but still pending: {pending}"

            wave_no += 1
            logger.info("Deployment wave #%d: %s", wave_no, ", ".join(u.name for u in wave))

            failures: list[tuple[DeploymentUnit, Exception]] = []
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = {executor.submit(self.deploy_unit, unit, signers[unit.role], record, addresses): unit for unit in wave}
                for future in as_completed(futures):
                    unit = futures[future]
                    try:
                        future.result()
                    except Exception as e:
                        logger.error("Deployment of %s failed: %s", unit.name, e)
                        failures.append((unit, e))

            if failures:
                unit, cause = min(failures, key=lambda f: positions[f[0].name])
                raise DeploymentHalted("deployment", positions[unit.name], unit.name, record, cause) from cause

            pending = [u for u in pending if u.status == UnitStatus.pending]

    def verify_units(self, plan: DeploymentPlan, record: DeploymentRecord):
        """Check every unit address has contract code."""
        for index, unit in enumerate(plan.units.values()):
            if unit.status == UnitStatus.verified:
                continue

            code = self.network.get_code(unit.address)
            if len(code) == 0:
                raise DeploymentHalted(
                    "verification",
                    index,
                    unit.name,
                    record,
                    None,
                    expected=f"contract code at {unit.address}",
                    actual="no code",
                )

            unit.status = UnitStatus.verified
            logger.debug("Verified %s at %s, code %d bytes", unit.name, unit.address, len(code))

    def run_wiring_steps(self, plan: DeploymentPlan, signers: Mapping[Role, Any], record: DeploymentRecord):
        """Apply wiring steps strictly in the declared order.

        Each step waits for its confirmation before the next one is sent.
        """
        addresses = plan.get_addresses()

        for index, step in enumerate(plan.wiring_steps):
            fingerprint = step.get_fingerprint()

            try:
                done = record.is_wiring_step_complete(index, fingerprint)
            except RecordMismatch as e:
                raise DeploymentHalted("wiring", index, fingerprint, record, e) from e

            if done:
                logger.warning("Wiring step #%d %s already applied according to the record, skipping", index, fingerprint)
                continue

            logger.info("Wiring step #%d: %s as %s %s", index, fingerprint, step.role.name, step.description)

            try:
                target = addresses[step.target]
                args = resolve_args(list(step.args), addresses)
                receipt = self.execute_call(target, step.function_signature, args, signers[step.role])
            except Exception as e:
                logger.error("Wiring step #%d %s failed: %s", index, fingerprint, e)
                raise DeploymentHalted("wiring", index, fingerprint, record, e) from e

            record.record_wiring_step(index, fingerprint, format_tx_hash(receipt.get("transactionHash")))
