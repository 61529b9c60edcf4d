"""Gas price strategies.

`Web3.py no longer support gas price strategies post London hard work <https://web3py.readthedocs.io/en/stable/gas_price.html>`_.
"""

import enum
from dataclasses import dataclass
from pprint import pformat
from typing import Optional

from web3 import Web3


class GasPriceMethod(enum.Enum):
    """What method we did use for setting the gas price."""

    #: Legacy chains
    legacy = "legacy"

    #: Post London hard work
    london = "london"


class GasPriceTooHigh(Exception):
    """Suggested gas price exceeds the configured maximum for the network."""


@dataclass
class GasPriceSuggestion:
    """Gas price details.

    Capture the necessary information for the gas price to used during the transaction building.

    - EIP-1559 London hard fork chains (Ethereum mainnet, Sepolia, OP Sepolia)

    - Legacy EVM
    """

    #: How the gas price was determined
    method: GasPriceMethod

    #: Non London hard fork chains
    legacy_gas_price: Optional[int] = None

    #: London hard fork chains
    base_fee: Optional[int] = None

    #: London hard fork chains
    max_priority_fee_per_gas: Optional[int] = None

    #: London hard fork chains
    max_fee_per_gas: Optional[int] = None

    def __repr__(self):
        return f"<Gas pricing method:{self.method.name} base:{self.base_fee} priority:{self.max_priority_fee_per_gas} max:{self.max_fee_per_gas} legacy:{self.legacy_gas_price}>"

    def get_max_price(self) -> int:
        """The most we may pay per gas unit with this suggestion."""
        if self.method == GasPriceMethod.london:
            return self.max_fee_per_gas
        return self.legacy_gas_price

    def pformat(self) -> str:
        """Pretty format for logging."""

        def _format(value: Optional[int]) -> str:
            if value is None:
                return "-"
            return f"{value / 10**9:.2f}G ({value:,})"

        data = {
            "Base Fee": _format(self.base_fee),
            "Max priority fee per gas": _format(self.max_priority_fee_per_gas),
            "Max fee per gas": _format(self.max_fee_per_gas),
            "Legacy gas price": _format(self.legacy_gas_price),
        }
        return pformat(data)


def estimate_gas_price(web3: Web3, method=None) -> GasPriceSuggestion:
    """Get a good gas price for a transaction.

    - London chains: ``max_fee = max_priority_fee + 2 * base_fee``

    - Legacy chains: whatever the node suggests
    """

    last_block = web3.eth.get_block("latest")
    base_fee = last_block.get("baseFeePerGas")

    if method is None:
        if base_fee is not None:
            method = GasPriceMethod.london
        else:
            method = GasPriceMethod.legacy

    if method == GasPriceMethod.london:
        # see https://github.com/ethereum/web3.py/blob/c70f7fbe1cfa98b1ce8597a08c99e05759a9667b/web3/_utils/transactions.py#L57
        max_priority_fee_per_gas = web3.eth.max_priority_fee
        max_fee_per_gas = max_priority_fee_per_gas + (2 * base_fee)
        return GasPriceSuggestion(method=GasPriceMethod.london, base_fee=base_fee, max_priority_fee_per_gas=max_priority_fee_per_gas, max_fee_per_gas=max_fee_per_gas)
    else:
        return GasPriceSuggestion(method=GasPriceMethod.legacy, legacy_gas_price=web3.eth.gas_price)


def apply_gas(tx: dict, suggestion: GasPriceSuggestion, max_fee_per_gas_limit: int | None = None) -> dict:
    """Apply gas fees to a raw transaction dict.

    :param max_fee_per_gas_limit:
        Refuse to fill in a price above this, in wei.

    :raise GasPriceTooHigh:
        If the suggestion exceeds ``max_fee_per_gas_limit``

    :return:
        Mutated dict
    """

    assert isinstance(tx, dict), f"Expected tx to be dict, got {type(tx)}"

    if max_fee_per_gas_limit is not None:
        if suggestion.get_max_price() > max_fee_per_gas_limit:
            raise GasPriceTooHigh(f"Gas price suggestion {suggestion} exceeds the configured limit {max_fee_per_gas_limit / 10**9:.2f} gwei")

    if suggestion.method == GasPriceMethod.london:
        tx["maxFeePerGas"] = suggestion.max_fee_per_gas
        tx["maxPriorityFeePerGas"] = suggestion.max_priority_fee_per_gas

        if "gasPrice" in tx:
            # Cannot have both maxFeePerGas + maxPriorityFeePerGas and gasPrice
            del tx["gasPrice"]
    else:
        tx["gasPrice"] = suggestion.legacy_gas_price

    return tx
