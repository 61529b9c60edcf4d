"""Hot wallet management utilities.

- Create local wallets from a private key

- Sign transactions with manually managed nonces

"""

import logging
import secrets
from typing import NamedTuple, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.gas import apply_gas, estimate_gas_price
from eth_deploy.tx import decode_signed_transaction, get_tx_broadcast_data

logger = logging.getLogger(__name__)


class SignedTransactionWithNonce(NamedTuple):
    """A better signed transaction structure.

    Helper class to pass around the used nonce when signing txs from the wallet.

    - Compatible with :py:class:`eth_account.datastructures.SignedTransaction`

    - Retains more information about the transaction source,
      to allow us to diagnose broadcasting failures better
    """

    #: See SignedTransaction
    raw_transaction: HexBytes

    #: See SignedTransaction
    hash: HexBytes

    #: See SignedTransaction
    r: int

    #: See SignedTransaction
    s: int

    #: See SignedTransaction
    v: int

    #: What was the source nonce for this transaction
    nonce: int

    #: Whas was the source address for this trasaction
    address: str

    #: Unencoded transaction data as a dict.
    #:
    #: If broadcast fails, retain the source so we can debug the cause,
    #: like the original gas parameters.
    #:
    source: Optional[dict] = None

    def __eq__(self, other):
        assert isinstance(other, SignedTransactionWithNonce)
        return self.hash == other.hash

    def __hash__(self) -> int:
        # Python hash must be int
        return hash(self.hash)

    def __repr__(self):
        return f"<SignedTransactionWithNonce hash:{self.hash.hex()} nonce:{self.nonce} from:{self.address}>"


class HotWallet:
    """Hot wallet for signing transactions effectively.

    - A hot wallet maintains an plain text private key of an Ethereum address in the process memory
      using :py:class:`eth_account.signers.local.LocalAccount` and nonce counter.

    - It is able to sign transactions, including batches, using manual nonce management.
      See :py:meth:`sync_nonce`, :py:meth:`allocate_nonce` and :py:meth:`sign_transaction_with_new_nonce`.

    Example:

    .. code-block:: python

        deployer = HotWallet.from_private_key(os.environ["PRIVATE_KEY_1"])
        deployer.sync_nonce(web3)

        tx = {"chainId": web3.eth.chain_id, "from": deployer.address, "to": vault, "value": 1, "gas": 21_000}
        deployer.fill_in_gas_price(web3, tx)
        signed_tx = deployer.sign_transaction_with_new_nonce(tx)
        tx_hash = web3.eth.send_raw_transaction(signed_tx.raw_transaction)

    .. note ::

        This class is not thread safe. If multiple threads try to sign transactions
        at the same time, nonce tracking may be lost. :py:class:`eth_deploy.network.Web3Network`
        serialises the access per wallet address.

    `See also how to create private keys from command line <https://ethereum.stackexchange.com/q/82926/620>`_.
    """

    def __init__(self, account: LocalAccount):
        """Create a hot wallet from a local account."""
        self.account = account
        self.current_nonce: Optional[int] = None

    def __repr__(self):
        return f"<Hot wallet {self.account.address}>"

    @property
    def address(self) -> HexAddress:
        """Ethereum address of the wallet."""
        return self.account.address

    def sync_nonce(self, web3: Web3, block_identifier: str = "latest"):
        """Initialise the current nonce from the on-chain data.

        The on-chain nonce is ignored if it is older than the nonce we have
        already allocated, as the node may not yet see our last broadcast.

        :param block_identifier:
            Use ``pending`` to count our transactions in the node mempool
        """
        new_nonce = web3.eth.get_transaction_count(self.account.address, block_identifier)
        if self.current_nonce is not None:
            if new_nonce < self.current_nonce:
                logger.warning("Nonce sync skipped, read onchain nonce %d that is older than our current nonce %d for %s", new_nonce, self.current_nonce, self.address)
                return
        self.current_nonce = new_nonce
        logger.debug("Synced nonce for %s to %d", self.account.address, self.current_nonce)

    def release_nonce(self, nonce: int):
        """Give back the last allocated nonce of a transaction the node did not accept."""
        assert self.current_nonce == nonce + 1, f"Can only release the last allocated nonce {self.current_nonce - 1}, got {nonce}"
        self.current_nonce = nonce

    def allocate_nonce(self) -> int:
        """Get the next free available nonce to be used with a transaction.

        Ethereum tx nonces are a counter.

        Increase the nonce counter
        """
        assert self.current_nonce is not None, f"Nonce is not yet synced from the blockchain: {self}"
        nonce = self.current_nonce
        self.current_nonce += 1
        return nonce

    def sign_transaction_with_new_nonce(self, tx: dict) -> SignedTransactionWithNonce:
        """Signs a transaction and allocates a nonce for it.

        :param tx:
            Ethereum transaction data as a dict.
            This is modified in-place to include nonce.

        :return:
            A transaction payload and nonce with used to generate this transaction.
        """
        assert type(tx) == dict
        assert "nonce" not in tx
        tx["nonce"] = self.allocate_nonce()
        _signed = self.account.sign_transaction(tx)

        raw_bytes = get_tx_broadcast_data(_signed)
        # Check that we can decode
        decode_signed_transaction(raw_bytes)

        signed = SignedTransactionWithNonce(
            raw_transaction=raw_bytes,
            hash=HexBytes(_signed.hash),
            v=_signed.v,
            r=_signed.r,
            s=_signed.s,
            nonce=tx["nonce"],
            source=tx,
            address=self.address,
        )
        return signed

    @staticmethod
    def fill_in_gas_price(web3: Web3, tx: dict, max_fee_per_gas_limit: int | None = None) -> dict:
        """Fills in the gas value fields for a transaction.

        .. note ::

            Mutates ``tx`` in place.

        :param tx:
            Transaction data as a dictionary.

            Contains keys like ``to``, ``data``, ``gas``.

        :param max_fee_per_gas_limit:
            Refuse to sign above this fee, in wei

        :return:
            Transaction data (mutated) with gas values filled in.
        """
        price_data = estimate_gas_price(web3)
        apply_gas(tx, price_data, max_fee_per_gas_limit=max_fee_per_gas_limit)
        return tx

    @staticmethod
    def from_private_key(key: str) -> "HotWallet":
        """Create a hot wallet from a private key that is passed in as a hex string.

        Example:

        .. code-block::

            # Generated with  openssl rand -hex 32
            wallet = HotWallet.from_private_key("0x54c137e27d2930f7b3433249c5f07b37ddcfea70871c0a4ef9e0f65655faf957")

        :param key: 0x prefixed hex string
        :return: Ready to go hot wallet account
        """
        assert type(key) == str, f"Expected private key as string, got {type(key)}"
        assert key.startswith("0x"), f"This system assumes private keys are prefixed with 0x, your key starts with {key[0:8]}... Please add 0x prefix to your private key hex string"
        account = Account.from_key(key)
        return HotWallet(account)

    @staticmethod
    def create_for_testing(
        web3: Web3,
        test_account_n=0,
        eth_amount=1,
    ) -> "HotWallet":
        """Creates a new hot wallet and seeds it with ETH from one of well-known test accounts.

        Shortcut method for unit testing.
        """
        wallet = HotWallet.from_private_key("0x" + secrets.token_hex(32))
        tx_hash = web3.eth.send_transaction(
            {
                "from": web3.eth.accounts[test_account_n],
                "to": wallet.address,
                "value": eth_amount * 10**18,
            }
        )
        web3.eth.wait_for_transaction_receipt(tx_hash)
        wallet.sync_nonce(web3)
        return wallet
