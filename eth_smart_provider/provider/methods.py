"""The closed set of calls the smart provider knows how to make.

Each :py:class:`ProviderMethod` maps to one Ethereum JSON-RPC method.
"""

import enum
from dataclasses import dataclass
from typing import Any

from web3.types import RPCEndpoint


class ProviderMethod(enum.Enum):
    """Logical calls supported by :py:class:`eth_smart_provider.provider.smart_provider.SmartProvider`."""

    get_block = "get_block"
    get_block_number = "get_block_number"
    get_gas_price = "get_gas_price"
    get_balance = "get_balance"
    get_code = "get_code"
    get_storage_at = "get_storage_at"
    get_transaction_count = "get_transaction_count"
    get_transaction = "get_transaction"
    get_transaction_receipt = "get_transaction_receipt"
    get_logs = "get_logs"
    estimate_gas = "estimate_gas"
    call = "call"
    send_transaction = "send_transaction"
    get_chain_id = "get_chain_id"


#: Provider method -> JSON-RPC method
JSON_RPC_METHODS: dict[ProviderMethod, RPCEndpoint] = {
    ProviderMethod.get_block: RPCEndpoint("eth_getBlockByNumber"),
    ProviderMethod.get_block_number: RPCEndpoint("eth_blockNumber"),
    ProviderMethod.get_gas_price: RPCEndpoint("eth_gasPrice"),
    ProviderMethod.get_balance: RPCEndpoint("eth_getBalance"),
    ProviderMethod.get_code: RPCEndpoint("eth_getCode"),
    ProviderMethod.get_storage_at: RPCEndpoint("eth_getStorageAt"),
    ProviderMethod.get_transaction_count: RPCEndpoint("eth_getTransactionCount"),
    ProviderMethod.get_transaction: RPCEndpoint("eth_getTransactionByHash"),
    ProviderMethod.get_transaction_receipt: RPCEndpoint("eth_getTransactionReceipt"),
    ProviderMethod.get_logs: RPCEndpoint("eth_getLogs"),
    ProviderMethod.estimate_gas: RPCEndpoint("eth_estimateGas"),
    ProviderMethod.call: RPCEndpoint("eth_call"),
    ProviderMethod.send_transaction: RPCEndpoint("eth_sendRawTransaction"),
    ProviderMethod.get_chain_id: RPCEndpoint("eth_chainId"),
}

#: JSON-RPC method -> provider method, used by web3.py integration.
#:
#: Both block getters map to :py:attr:`ProviderMethod.get_block`.
PROVIDER_METHODS: dict[str, ProviderMethod] = {v: k for k, v in JSON_RPC_METHODS.items()}
PROVIDER_METHODS["eth_getBlockByHash"] = ProviderMethod.get_block

#: Methods that return a hex encoded integer quantity
QUANTITY_METHODS = frozenset(
    {
        ProviderMethod.get_block_number,
        ProviderMethod.get_gas_price,
        ProviderMethod.get_balance,
        ProviderMethod.get_transaction_count,
        ProviderMethod.estimate_gas,
        ProviderMethod.get_chain_id,
    }
)

#: Methods that return hex encoded byte data
DATA_METHODS = frozenset(
    {
        ProviderMethod.get_code,
        ProviderMethod.get_storage_at,
        ProviderMethod.call,
        ProviderMethod.send_transaction,
    }
)

#: Methods that return a JSON object or ``null``
OBJECT_METHODS = frozenset(
    {
        ProviderMethod.get_block,
        ProviderMethod.get_transaction,
        ProviderMethod.get_transaction_receipt,
    }
)


def is_block_hash(value: Any) -> bool:
    """Is the block identifier a 32 bytes hash instead of a number or a tag."""
    return isinstance(value, str) and value.startswith("0x") and len(value) == 66


@dataclass(slots=True, frozen=True)
class RpcRequest:
    """One logical request.

    Created per call, never mutated.
    """

    #: What we are asking
    method: ProviderMethod

    #: Positional JSON-RPC parameters, already encoded
    params: tuple = ()

    def __post_init__(self):
        assert isinstance(self.method, ProviderMethod), f"Got {type(self.method)}"
        assert isinstance(self.params, tuple), f"Params must be a tuple, got {type(self.params)}"

    def get_json_rpc_method(self) -> RPCEndpoint:
        """Resolve the JSON-RPC method name for the wire."""
        if self.method == ProviderMethod.get_block and self.params and is_block_hash(self.params[0]):
            return RPCEndpoint("eth_getBlockByHash")
        return JSON_RPC_METHODS[self.method]

    def get_block_identifier(self) -> Any:
        """Get the block identifier argument of this request, if the method takes one."""
        position = BLOCK_IDENTIFIER_POSITION.get(self.method)
        if position is None or len(self.params) <= position:
            return None
        return self.params[position]

    def __repr__(self):
        return f"<{self.method.value} {list(self.params)}>"


#: Where the block identifier sits in the positional params
BLOCK_IDENTIFIER_POSITION: dict[ProviderMethod, int] = {
    ProviderMethod.get_block: 0,
    ProviderMethod.get_balance: 1,
    ProviderMethod.get_code: 1,
    ProviderMethod.get_storage_at: 2,
    ProviderMethod.get_transaction_count: 1,
    ProviderMethod.call: 1,
    ProviderMethod.estimate_gas: 1,
}
