"""Revert reason extraction.

Further reading

- `Web3.py Patterns: Revert Reason Lookups <https://snakecharmers.ethereum.org/web3py-revert-reason-parsing/>`_

"""

import logging
from typing import Union

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3RPCError

logger = logging.getLogger(__name__)


#: Returned when the replay does not tell why the transaction failed
UNKNOWN_REVERT_REASON = "<could not extract the revert reason>"


def fetch_transaction_revert_reason(
    web3: Web3,
    tx_hash: Union[HexBytes, str],
) -> str:
    """Gets a transaction revert reason.

    Ethereum nodes do not store the transaction failure reason in any database or index.
    We replay the failed creation or wiring call against the current state,
    which needs no archive node. The reason may differ from the original one
    if the state has changed since.

    Example:

    .. code-block:: python

        receipts = wait_transactions_to_complete(web3, [tx_hash])
        receipt = receipts[tx_hash]
        if receipt["status"] == 0:
            reason = fetch_transaction_revert_reason(web3, tx_hash)

    :param web3: Our JSON-RPC connection

    :param tx_hash: Transaction hash of which reason we extract by simulation.

    :return: The revert reason or :py:data:`UNKNOWN_REVERT_REASON`
    """

    # Normalise type
    if not isinstance(tx_hash, HexBytes):
        if type(tx_hash) == str:
            tx_hash = HexBytes(tx_hash)
        else:
            raise AssertionError(f"Unknown type: {tx_hash.__class__} {tx_hash}")

    tx = web3.eth.get_transaction(tx_hash)

    # Contract creations have no target
    replay_tx = {
        "from": tx["from"],
        "value": tx["value"],
        "data": tx["input"],
        "gas": tx["gas"],
    }

    if tx.get("to"):
        replay_tx["to"] = tx["to"]
        code = web3.eth.get_code(tx["to"])
        if len(code) == 0:
            logger.warning("Wiring target %s has no contract code, likely cannot fetch the revert reason", tx["to"])

    try:
        web3.eth.call(replay_tx)
    except ContractLogicError as e:
        return e.args[0]
    except Web3RPCError as e:
        logger.debug("Revert exception result is: %s", e)
        return str(e)
    except ValueError as e:
        logger.debug("Revert exception result is: %s", e)
        data = e.args[0]
        if type(data) == str:
            return data
        return data.get("message", UNKNOWN_REVERT_REASON)

    logger.error(
        "Transaction %s to %s mined in block %s reverted, but its replay at block %s succeeded. The state has changed since.",
        tx_hash.hex(),
        tx.get("to"),
        tx.get("blockNumber"),
        web3.eth.block_number,
    )
    return UNKNOWN_REVERT_REASON
