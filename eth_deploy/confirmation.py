"""Transaction confirmation and completion monitoring.

- Wait for transactions to be confirmed and read back the results from the blockchain

- Turn reverted receipts to :py:class:`TransactionFailure` with the revert reason
"""

import datetime
import logging
import time
from typing import Dict, List, Set, Union

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TransactionNotFound

from eth_deploy.revert_reason import fetch_transaction_revert_reason

logger = logging.getLogger(__name__)


class TransactionFailure(Exception):
    """The network rejected or reverted a submitted transaction.

    Creation and configuration transactions are not retried,
    see :py:mod:`eth_deploy.orchestrator`.
    """

    def __init__(self, msg: str, tx_hash: HexBytes | None = None, revert_reason: str | None = None):
        super().__init__(msg)
        self.tx_hash = tx_hash
        self.revert_reason = revert_reason


class ConfirmationTimedOut(TransactionFailure):
    """We exceeded the transaction confirmation timeout.

    The transaction may still be included later.
    """


def wait_transactions_to_complete(
    web3: Web3,
    txs: List[Union[HexBytes, str]],
    max_timeout=datetime.timedelta(minutes=5),
    poll_delay=datetime.timedelta(seconds=1),
) -> Dict[HexBytes, dict]:
    """Watch multiple transactions executed at parallel.

    Use simple poll loop to wait all transactions to complete.

    Example:

    .. code-block:: python

        complete = wait_transactions_to_complete(web3, [tx_hash1, tx_hash2])

        # Check both transaction succeeded
        for receipt in complete.values():
            assert receipt["status"] == 1  # tx success

    :param txs:
        List of transaction hashes

    :raise ConfirmationTimedOut:
        Some of the transactions did not get a receipt in ``max_timeout``

    :return:
        Map of transaction hashes -> receipt
    """

    assert isinstance(poll_delay, datetime.timedelta)
    assert isinstance(max_timeout, datetime.timedelta)

    logger.debug("Waiting %d transactions to confirm, timeout is %s", len(txs), max_timeout)

    started_at = datetime.datetime.now(datetime.timezone.utc)

    receipts_received = {}

    unconfirmed_txs: Set[HexBytes] = {HexBytes(tx) for tx in txs}

    while len(unconfirmed_txs) > 0:
        # Transaction hashes that receive confirmation on this round
        confirmation_received = set()

        for tx_hash in unconfirmed_txs:
            try:
                receipt = web3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound as e:
                # BNB Chain get does this instead of returning None
                logger.debug("Transaction not found yet: %s", e)
                receipt = None

            if receipt:
                receipts_received[tx_hash] = receipt
                confirmation_received.add(tx_hash)

        # Remove confirmed txs from the working set
        unconfirmed_txs -= confirmation_received

        if unconfirmed_txs:
            time.sleep(poll_delay.total_seconds())

            if datetime.datetime.now(datetime.timezone.utc) > started_at + max_timeout:
                unconfirmed = ", ".join(tx.hex() for tx in unconfirmed_txs)
                raise ConfirmationTimedOut(f"Transaction confirmation failed. Started: {started_at}, timed out after {max_timeout}. Still unconfirmed: {unconfirmed}", tx_hash=next(iter(unconfirmed_txs)))

    return receipts_received


def wait_and_check_receipt(
    web3: Web3,
    tx_hash: HexBytes,
    description: str,
    max_timeout=datetime.timedelta(minutes=5),
    poll_delay=datetime.timedelta(seconds=1),
) -> dict:
    """Wait one transaction and check it did not revert.

    :param description:
        What this transaction was doing, for the error message

    :raise TransactionFailure:
        The transaction reverted. Revert reason is attached if we could replay it.

    :return:
        The receipt
    """
    receipts = wait_transactions_to_complete(web3, [tx_hash], max_timeout=max_timeout, poll_delay=poll_delay)
    receipt = receipts[HexBytes(tx_hash)]
    if receipt["status"] != 1:
        reason = fetch_transaction_revert_reason(web3, tx_hash)
        raise TransactionFailure(f"{description} reverted, tx hash {HexBytes(tx_hash).hex()}, reason: {reason}", tx_hash=HexBytes(tx_hash), revert_reason=reason)
    return receipt
