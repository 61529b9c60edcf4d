"""Network and signer abstraction.

The orchestrator talks to the chain only through :py:class:`Network`:

- :py:meth:`Network.submit_creation` deploys bytecode and returns the new address

- :py:meth:`Network.submit_call` sends a state changing call

- :py:meth:`Network.read_state` makes a view call

:py:class:`Web3Network` implements it over a JSON-RPC connection,
:py:class:`eth_deploy.testing.SimulatedNetwork` in-process for tests.
"""

import datetime
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Sequence

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3RPCError

from eth_deploy.codec import decode_tuple, encode_call
from eth_deploy.confirmation import ConfirmationTimedOut, TransactionFailure, wait_and_check_receipt
from eth_deploy.gas import GasPriceTooHigh
from eth_deploy.hotwallet import HotWallet

logger = logging.getLogger(__name__)


__all__ = [
    "ConfirmationTimedOut",
    "CreationResult",
    "Network",
    "TransactionFailure",
    "Web3Network",
]


@dataclass(slots=True, frozen=True)
class CreationResult:
    """Result of a confirmed creation transaction."""

    #: Address of the new contract
    address: HexAddress

    #: Transaction hash
    tx_hash: HexBytes

    #: Transaction receipt
    receipt: dict


class Network(ABC):
    """Narrow interface to a chain.

    Signers are passed per call. Any object with ``address`` attribute works
    for simulated networks, :py:class:`Web3Network` needs :py:class:`HotWallet`.
    """

    #: Network identifier, like ``sepolia``.
    #:
    #: Deployment records are keyed by this.
    name: str

    @property
    @abstractmethod
    def chain_id(self) -> int:
        pass

    @abstractmethod
    def submit_creation(self, bytecode: bytes, constructor_args: bytes, signer: HotWallet) -> CreationResult:
        """Deploy a contract and wait for the confirmation.

        :param bytecode:
            Creation bytecode

        :param constructor_args:
            ABI encoded constructor arguments, appended to the bytecode

        :raise TransactionFailure:
            Creation reverted or was rejected
        """

    @abstractmethod
    def submit_call(self, target: HexAddress, function_signature: str, args: Sequence[Any], signer: HotWallet) -> dict:
        """Send a transaction calling a contract function and wait for the confirmation.

        :return:
            Transaction receipt

        :raise TransactionFailure:
            The call reverted or was rejected
        """

    @abstractmethod
    def read_state(self, target: HexAddress, function_signature: str, args: Sequence[Any], output_types: Sequence[str]) -> Any:
        """Make a view call.

        :return:
            Decoded value if ``output_types`` has one element, otherwise a tuple
        """

    @abstractmethod
    def get_code(self, address: HexAddress) -> bytes:
        pass

    @abstractmethod
    def get_balance(self, address: HexAddress) -> int:
        pass

    def set_balance(self, address: HexAddress, amount: int):
        """Set native currency balance.

        Only test networks support this.
        """
        raise NotImplementedError(f"Network {self.name} does not support setting balances")


class Web3Network(Network):
    """Network over a web3.py connection.

    - Transactions are signed locally with :py:class:`HotWallet` and broadcast as raw transactions

    - Each signer address has its own lock around nonce allocation, signing and broadcast.
      Confirmation waits happen outside the lock, so transactions of different signers
      and pending creations of the same signer overlap.
    """

    def __init__(
        self,
        web3: Web3,
        name: str,
        gas_limit: int | None = None,
        gas_estimate_buffer: float = 1.2,
        max_fee_per_gas_limit: int | None = None,
        confirmation_timeout=datetime.timedelta(minutes=5),
        poll_delay=datetime.timedelta(seconds=1),
        test_network: bool = False,
    ):
        """
        :param gas_limit:
            Use a fixed gas limit instead of ``eth_estimateGas``

        :param gas_estimate_buffer:
            Multiply the gas estimation by this

        :param max_fee_per_gas_limit:
            Refuse to broadcast if the fee suggestion is above this, in wei

        :param test_network:
            Anvil or Hardhat node, which supports setting balances
        """
        assert isinstance(web3, Web3), f"Got {type(web3)}"
        self.web3 = web3
        self.name = name
        self.gas_limit = gas_limit
        self.gas_estimate_buffer = gas_estimate_buffer
        self.max_fee_per_gas_limit = max_fee_per_gas_limit
        self.confirmation_timeout = confirmation_timeout
        self.poll_delay = poll_delay
        self.test_network = test_network
        self._chain_id = None
        self._signer_locks: dict[str, threading.Lock] = {}
        self._signer_locks_lock = threading.Lock()

    def __repr__(self):
        return f"<Web3Network {self.name} chain:{self.chain_id}>"

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self.web3.eth.chain_id
        return self._chain_id

    def get_signer_lock(self, address: HexAddress) -> threading.Lock:
        """One lock per signing address."""
        with self._signer_locks_lock:
            lock = self._signer_locks.get(address.lower())
            if lock is None:
                lock = self._signer_locks[address.lower()] = threading.Lock()
            return lock

    def _estimate_gas(self, tx: dict, description: str) -> int:
        try:
            estimate = self.web3.eth.estimate_gas(tx)
        except ContractLogicError as e:
            raise TransactionFailure(f"{description} would revert: {e}", revert_reason=str(e)) from e
        except (Web3RPCError, ValueError) as e:
            raise TransactionFailure(f"{description} gas estimation failed: {e}", revert_reason=str(e)) from e
        return int(estimate * self.gas_estimate_buffer)

    def _broadcast(self, signer: HotWallet, tx: dict, description: str) -> HexBytes:
        """Sign and send under the signer lock."""
        assert isinstance(signer, HotWallet), f"Web3Network signs with HotWallet, got {type(signer)}"

        tx["from"] = signer.address
        chain_id = self.chain_id

        with self.get_signer_lock(signer.address):
            if signer.current_nonce is None:
                signer.sync_nonce(self.web3, "pending")

            if self.gas_limit:
                tx["gas"] = self.gas_limit
            else:
                tx["gas"] = self._estimate_gas(tx, description)

            tx["chainId"] = chain_id

            try:
                signer.fill_in_gas_price(self.web3, tx, max_fee_per_gas_limit=self.max_fee_per_gas_limit)
            except GasPriceTooHigh as e:
                raise TransactionFailure(f"{description} not broadcasted: {e}") from e

            signed = signer.sign_transaction_with_new_nonce(tx)
            try:
                tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
            except (Web3RPCError, ValueError) as e:
                # Pending transactions of the same signer keep their nonces
                signer.release_nonce(signed.nonce)
                signer.sync_nonce(self.web3, "pending")
                raise TransactionFailure(f"{description} broadcast rejected: {e}", tx_hash=signed.hash) from e

        logger.info("Broadcasted %s from %s, nonce %d, tx %s", description, signer.address, signed.nonce, signed.hash.hex())
        return HexBytes(tx_hash)

    def _wait(self, tx_hash: HexBytes, description: str) -> dict:
        return wait_and_check_receipt(
            self.web3,
            tx_hash,
            description,
            max_timeout=self.confirmation_timeout,
            poll_delay=self.poll_delay,
        )

    def submit_creation(self, bytecode: bytes, constructor_args: bytes, signer: HotWallet) -> CreationResult:
        assert len(bytecode) > 0, "Empty creation bytecode"
        tx = {
            "data": HexBytes(bytes(bytecode) + bytes(constructor_args)),
            "value": 0,
        }
        description = f"contract creation ({len(bytecode)} bytes)"
        tx_hash = self._broadcast(signer, tx, description)
        receipt = self._wait(tx_hash, description)
        address = receipt["contractAddress"]
        if not address:
            raise TransactionFailure(f"Creation transaction {tx_hash.hex()} receipt has no contract address", tx_hash=tx_hash)
        return CreationResult(address=Web3.to_checksum_address(address), tx_hash=tx_hash, receipt=receipt)

    def submit_call(self, target: HexAddress, function_signature: str, args: Sequence[Any], signer: HotWallet) -> dict:
        tx = {
            "to": Web3.to_checksum_address(target),
            "data": HexBytes(encode_call(function_signature, args)),
            "value": 0,
        }
        description = f"{function_signature} on {target}"
        tx_hash = self._broadcast(signer, tx, description)
        return self._wait(tx_hash, description)

    def read_state(self, target: HexAddress, function_signature: str, args: Sequence[Any], output_types: Sequence[str]) -> Any:
        call = {
            "to": Web3.to_checksum_address(target),
            "data": HexBytes(encode_call(function_signature, args)),
        }
        try:
            result = self.web3.eth.call(call)
        except ContractLogicError as e:
            raise TransactionFailure(f"View call {function_signature} on {target} reverted: {e}", revert_reason=str(e)) from e
        values = decode_tuple(output_types, result)
        if len(output_types) == 1:
            return values[0]
        return values

    def get_code(self, address: HexAddress) -> bytes:
        return bytes(self.web3.eth.get_code(Web3.to_checksum_address(address)))

    def get_balance(self, address: HexAddress) -> int:
        return self.web3.eth.get_balance(Web3.to_checksum_address(address))

    def set_balance(self, address: HexAddress, amount: int):
        """Set balance on Anvil or Hardhat node.

        Tries ``anvil_setBalance`` first, then ``hardhat_setBalance``.
        """
        if not self.test_network:
            raise NotImplementedError(f"Network {self.name} is not a test network")

        address = Web3.to_checksum_address(address)
        for method in ("anvil_setBalance", "hardhat_setBalance"):
            response = self.web3.provider.make_request(method, [address, hex(amount)])
            if "error" not in response:
                return
            logger.debug("%s failed: %s", method, response["error"])
        raise NotImplementedError(f"Node of {self.name} supports neither anvil_setBalance nor hardhat_setBalance")
