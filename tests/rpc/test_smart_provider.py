"""Smart provider facade."""

import asyncio

import pytest
from hexbytes import HexBytes
from web3 import AsyncWeb3

from eth_smart_provider.chain import ChainIdentity, ChainMetadata, get_chain_metadata
from eth_smart_provider.provider.consensus import ConsensusStrategy, RpcConsensusType
from eth_smart_provider.provider.endpoint import Endpoint, EndpointKind
from eth_smart_provider.provider.errors import ConsensusFailed, InvalidBlockRange, PaginationFailed, SmartProviderConfigurationError
from eth_smart_provider.provider.explorer import EtherscanTransport
from eth_smart_provider.provider.methods import ProviderMethod
from eth_smart_provider.provider.named import get_provider_name
from eth_smart_provider.provider.smart_provider import SmartProvider
from eth_smart_provider.testing import ScriptedTransport, make_rpc_error, make_rpc_result
from tests.rpc.conftest import URL_A, URL_B, URL_C

ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


@pytest.fixture()
def provider(chain_metadata, transport, fast_retries) -> SmartProvider:
    """Fallback over two endpoints."""
    return SmartProvider(
        chain_metadata,
        endpoint_urls=[URL_A, URL_B],
        rpc_consensus_type=RpcConsensusType.fallback,
        retry_options=fast_retries,
        transport=transport,
        explorer_transport=transport,
    )


@pytest.fixture()
def quorum_provider(chain_metadata, transport) -> SmartProvider:
    return SmartProvider(
        chain_metadata,
        endpoint_urls=[URL_A, URL_B, URL_C],
        rpc_consensus_type=RpcConsensusType.quorum,
        transport=transport,
        explorer_transport=transport,
    )


def test_endpoints_in_priority_order(chain_metadata, identity, transport):
    """Lower priority first, ties in declaration order."""
    endpoints = [
        Endpoint(URL_A, identity, priority=2),
        Endpoint(URL_B, identity, priority=0),
        Endpoint(URL_C, identity, priority=2),
    ]
    provider = SmartProvider(chain_metadata, endpoint_urls=endpoints, transport=transport)
    assert [e.url for e in provider.endpoints] == [URL_B, URL_A, URL_C]


def test_wrong_chain_endpoint(chain_metadata, transport):
    endpoint = Endpoint(URL_A, ChainIdentity(1, "ethereum"))
    with pytest.raises(SmartProviderConfigurationError):
        SmartProvider(chain_metadata, endpoint_urls=[endpoint], transport=transport)


def test_bad_configuration(chain_metadata, transport):
    with pytest.raises(SmartProviderConfigurationError):
        SmartProvider(chain_metadata, endpoint_urls=[URL_A, URL_A], transport=transport)

    with pytest.raises(SmartProviderConfigurationError):
        SmartProvider(chain_metadata, endpoint_urls=[], transport=transport)

    with pytest.raises(SmartProviderConfigurationError):
        SmartProvider(chain_metadata, endpoint_urls=[URL_A, URL_B], rpc_consensus_type=RpcConsensusType.quorum, quorum_threshold=3, transport=transport)

    with pytest.raises(SmartProviderConfigurationError):
        SmartProvider(chain_metadata, endpoint_urls=[URL_A, URL_B], quorum_threshold=2, transport=transport)


def test_default_endpoints_from_chain_metadata(transport):
    """Chain defaults include block explorers after the JSON-RPC nodes."""
    metadata = get_chain_metadata("ethereum")
    provider = SmartProvider.from_chain_metadata(metadata, transport=transport, explorer_transport=transport)
    assert provider.chain == ChainIdentity(1, "ethereum")
    assert len(provider.endpoints) == len(metadata.rpc_urls) + 1
    explorer = provider.endpoints[-1]
    assert explorer.kind == EndpointKind.block_explorer
    assert "chainid=1" in explorer.url


def test_quorum_pins_block_tags_by_default(provider, quorum_provider):
    assert quorum_provider.strategy == ConsensusStrategy.quorum()
    assert quorum_provider.pin_block_tags
    assert quorum_provider.retry_policy.max_attempts == 1
    assert not provider.pin_block_tags


def test_supported_methods(chain_metadata, identity, transport, registry):
    explorer = Endpoint("https://api.etherscan.io/v2/api?chainid=31337", identity, kind=EndpointKind.block_explorer)
    provider = SmartProvider(chain_metadata, endpoint_urls=[explorer], transport=transport, explorer_transport=transport, registry=registry)
    assert ProviderMethod.get_logs in provider.supported_methods
    assert ProviderMethod.call not in provider.supported_methods


def test_provider_name(provider):
    assert get_provider_name(provider) == "smart provider anvil: rpc-a.example.com, rpc-b.example.com"
    assert "secret-api-key" not in repr(provider)


@pytest.mark.asyncio
async def test_typed_results(provider: SmartProvider, transport: ScriptedTransport):
    transport.script(URL_A, "eth_blockNumber", make_rpc_result("0x10"))
    transport.script(URL_A, "eth_gasPrice", make_rpc_result("0x3b9aca00"))
    transport.script(URL_A, "eth_getCode", make_rpc_result("0x6080"))
    transport.script(URL_A, "eth_chainId", make_rpc_result("0x7a69"))

    assert await provider.get_block_number() == 16
    assert await provider.get_gas_price() == 1_000_000_000
    assert await provider.get_code(ADDRESS) == HexBytes("0x6080")
    assert await provider.get_chain_id() == 31337


@pytest.mark.asyncio
async def test_param_encoding(provider: SmartProvider, transport: ScriptedTransport):
    """Python values are encoded for the wire."""
    transport.script(URL_A, "eth_getBalance", make_rpc_result("0xde0b6b3a7640000"))
    transport.script(URL_A, "eth_getStorageAt", make_rpc_result("0x" + "00" * 31 + "01"))
    transport.script(URL_A, "eth_call", make_rpc_result("0x" + "00" * 32))

    assert await provider.get_balance(ADDRESS, 5) == 10**18
    assert transport.get_calls(method="eth_getBalance")[0].params == (ADDRESS, "0x5")

    await provider.get_storage_at(ADDRESS, 1)
    assert transport.get_calls(method="eth_getStorageAt")[0].params == (ADDRESS, "0x1", "latest")

    result = await provider.call({"to": ADDRESS, "value": 1, "data": b"\x12\x34"}, block_identifier=100)
    assert result == HexBytes("0x" + "00" * 32)
    assert transport.get_calls(method="eth_call")[0].params == ({"to": ADDRESS, "value": "0x1", "data": "0x1234"}, "0x64")


@pytest.mark.asyncio
async def test_get_block(provider: SmartProvider, transport: ScriptedTransport):
    block_hash = "0x" + "ab" * 32
    transport.script(URL_A, "eth_getBlockByNumber", make_rpc_result({"number": "0x1", "hash": block_hash}))
    transport.script(URL_A, "eth_getBlockByHash", make_rpc_result({"number": "0x1", "hash": block_hash}))

    block = await provider.get_block(1)
    assert block["hash"] == block_hash
    assert transport.get_calls(method="eth_getBlockByNumber")[0].params == ("0x1", False)

    block = await provider.get_block(HexBytes(block_hash), full_transactions=True)
    assert block["number"] == "0x1"
    assert transport.get_calls(method="eth_getBlockByHash")[0].params == (block_hash, True)


@pytest.mark.asyncio
async def test_get_block_not_found(provider: SmartProvider, transport: ScriptedTransport):
    """A block no endpoint has is None after retries, not a failure."""
    transport.script(URL_A, "eth_getBlockByNumber", make_rpc_result(None))
    transport.script(URL_B, "eth_getBlockByNumber", make_rpc_result(None))

    assert await provider.get_block(10**9) is None
    assert len(transport.get_calls(URL_A)) == provider.retry_policy.max_attempts
    assert len(transport.get_calls(URL_B)) == provider.retry_policy.max_attempts

    response = await provider.make_request("eth_getBlockByNumber", ["0x3b9aca00", False])
    assert response["result"] is None


@pytest.mark.asyncio
async def test_get_block_lagging_node(provider: SmartProvider, transport: ScriptedTransport):
    transport.script(URL_A, "eth_getBlockByNumber", make_rpc_result(None))
    transport.script(URL_B, "eth_getBlockByNumber", make_rpc_result({"number": "0x20"}))

    block = await provider.get_block(32)
    assert block["number"] == "0x20"


@pytest.mark.asyncio
async def test_get_block_node_errors(provider: SmartProvider, transport: ScriptedTransport):
    """Node errors are failures even when they mean missing state."""
    transport.script(URL_A, "eth_getBlockByNumber", make_rpc_error(-32000, "header not found"))
    transport.script(URL_B, "eth_getBlockByNumber", make_rpc_result(None))

    with pytest.raises(ConsensusFailed):
        await provider.get_block(32)


@pytest.mark.asyncio
async def test_concurrent_calls(provider: SmartProvider, transport: ScriptedTransport):
    """Interleaved logical calls keep their own windows and answers."""
    other_address = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
    tx_hash = "0x" + "cd" * 32

    def logs_for_window(method, params):
        return make_rpc_result([{"blockNumber": params[0]["fromBlock"], "address": params[0]["address"]}])

    transport.script(URL_A, "eth_getLogs", logs_for_window, delay=0.01)
    transport.script(URL_A, "eth_blockNumber", make_rpc_result("0x10"), delay=0.005)
    transport.script(URL_A, "eth_getTransactionByHash", make_rpc_result({"hash": tx_hash}), delay=0.015)

    logs, other_logs, block_number, tx = await asyncio.gather(
        provider.get_logs({"fromBlock": 0, "toBlock": 250, "address": ADDRESS}),
        provider.get_logs({"fromBlock": 0, "toBlock": 150, "address": other_address}),
        provider.get_block_number(),
        provider.get_transaction(tx_hash),
    )

    assert [log["blockNumber"] for log in logs] == ["0x0", "0x64", "0xc8"]
    assert {log["address"] for log in logs} == {ADDRESS}
    assert [log["blockNumber"] for log in other_logs] == ["0x0", "0x64"]
    assert {log["address"] for log in other_logs} == {other_address}
    assert block_number == 16
    assert tx["hash"] == tx_hash

    calls = transport.get_calls(method="eth_getLogs")
    windows = [(c.params[0]["fromBlock"], c.params[0]["toBlock"]) for c in calls if c.params[0]["address"] == ADDRESS]
    other_windows = [(c.params[0]["fromBlock"], c.params[0]["toBlock"]) for c in calls if c.params[0]["address"] == other_address]
    assert windows == [("0x0", "0x63"), ("0x64", "0xc7"), ("0xc8", "0xfa")]
    assert other_windows == [("0x0", "0x63"), ("0x64", "0x96")]

    # Both paginations were in flight at the same time
    assert calls[0].params[0]["address"] != calls[1].params[0]["address"]
    assert transport.get_in_flight() == []


@pytest.mark.asyncio
async def test_transaction_lookups(provider: SmartProvider, transport: ScriptedTransport):
    tx_hash = "0x" + "cd" * 32
    transport.script(URL_A, "eth_getTransactionByHash", make_rpc_result({"hash": tx_hash}))
    transport.script(URL_A, "eth_getTransactionReceipt", make_rpc_result(None))
    transport.script(URL_A, "eth_sendRawTransaction", make_rpc_result(tx_hash))

    assert (await provider.get_transaction(HexBytes(tx_hash)))["hash"] == tx_hash
    assert await provider.get_transaction_receipt(tx_hash) is None
    assert await provider.send_transaction(b"\x02\xf8") == HexBytes(tx_hash)
    assert transport.get_calls(method="eth_sendRawTransaction")[0].params == ("0x02f8",)


@pytest.mark.asyncio
async def test_fallback_to_second_endpoint(provider: SmartProvider, transport: ScriptedTransport):
    transport.script(URL_A, "eth_blockNumber", make_rpc_error(-32005, "rate limit"))
    transport.script(URL_B, "eth_blockNumber", make_rpc_result("0x11"))
    assert await provider.get_block_number() == 17
    # Retried before switching
    assert len(transport.get_calls(URL_A)) == 3


@pytest.mark.asyncio
async def test_unsupported_method_not_asked_again(provider: SmartProvider, transport: ScriptedTransport):
    transport.script(URL_A, "eth_estimateGas", make_rpc_error(-32601, "Method not found"))
    transport.script(URL_B, "eth_estimateGas", make_rpc_result("0x5208"))

    assert await provider.estimate_gas({"to": ADDRESS, "value": 1}) == 21_000
    assert await provider.estimate_gas({"to": ADDRESS, "value": 1}) == 21_000

    assert len(transport.get_calls(URL_A, "eth_estimateGas")) == 1
    assert len(transport.get_calls(URL_B, "eth_estimateGas")) == 2
    assert ProviderMethod.estimate_gas in provider.supported_methods


@pytest.mark.asyncio
async def test_no_endpoint_supports_method(chain_metadata, identity, transport):
    explorer = Endpoint("https://api.etherscan.io/v2/api?chainid=31337", identity, kind=EndpointKind.block_explorer)
    provider = SmartProvider(chain_metadata, endpoint_urls=[explorer], transport=transport, explorer_transport=transport)
    with pytest.raises(ConsensusFailed) as exc_info:
        await provider.call({"to": ADDRESS, "data": "0x"})
    assert exc_info.value.outcomes == []
    assert transport.calls == []


@pytest.mark.asyncio
async def test_perform_raw(provider: SmartProvider, transport: ScriptedTransport):
    transport.script(URL_A, "eth_gasPrice", make_rpc_result("0x10"))
    assert await provider.perform("eth_gasPrice") == "0x10"
    assert await provider.perform(ProviderMethod.get_gas_price, []) == "0x10"

    with pytest.raises(ValueError):
        await provider.perform("eth_mining")


@pytest.mark.asyncio
async def test_quorum_pins_latest(quorum_provider: SmartProvider, transport: ScriptedTransport):
    """Point queries at latest ask every endpoint about the same block."""
    for url in (URL_A, URL_B, URL_C):
        transport.script(url, "eth_blockNumber", make_rpc_result("0x10"))
        transport.script(url, "eth_getBalance", make_rpc_result("0x1"))

    assert await quorum_provider.get_balance(ADDRESS) == 1
    assert {c.params for c in transport.get_calls(method="eth_getBalance")} == {(ADDRESS, "0x10")}


@pytest.mark.asyncio
async def test_get_logs_paginated(provider: SmartProvider, transport: ScriptedTransport):
    """Long ranges are split by max_block_range and glued back in order."""

    def logs_for_window(method, params):
        return make_rpc_result([{"blockNumber": params[0]["fromBlock"], "address": ADDRESS}])

    transport.script(URL_A, "eth_getLogs", logs_for_window)

    logs = await provider.get_logs({"fromBlock": 0, "toBlock": 250, "address": ADDRESS})

    assert [log["blockNumber"] for log in logs] == ["0x0", "0x64", "0xc8"]
    windows = [(c.params[0]["fromBlock"], c.params[0]["toBlock"]) for c in transport.get_calls(method="eth_getLogs")]
    assert windows == [("0x0", "0x63"), ("0x64", "0xc7"), ("0xc8", "0xfa")]


@pytest.mark.asyncio
async def test_get_logs_no_range(provider: SmartProvider, transport: ScriptedTransport):
    """Missing range means from the first block to latest."""
    transport.script(URL_A, "eth_blockNumber", make_rpc_result("0x96"))
    transport.script(URL_A, "eth_getLogs", make_rpc_result([]))

    assert await provider.get_logs({"address": ADDRESS}) == []
    windows = [(c.params[0]["fromBlock"], c.params[0]["toBlock"]) for c in transport.get_calls(method="eth_getLogs")]
    assert windows == [("0x0", "0x63"), ("0x64", "0x96")]


@pytest.mark.asyncio
async def test_get_logs_latest(provider: SmartProvider, transport: ScriptedTransport):
    transport.script(URL_A, "eth_blockNumber", make_rpc_result("0x20"))
    transport.script(URL_A, "eth_getLogs", make_rpc_result([{"blockNumber": "0x1f"}]))

    logs = await provider.get_logs({"fromBlock": 16, "toBlock": "latest"})
    assert len(logs) == 1
    assert transport.get_calls(method="eth_getLogs")[0].params[0]["toBlock"] == "0x20"


@pytest.mark.asyncio
async def test_get_logs_window_failure(provider: SmartProvider, transport: ScriptedTransport):
    """A failing window fails the whole query."""

    def fail_second_window(method, params):
        if params[0]["fromBlock"] == "0x64":
            return make_rpc_error(-32000, "something broke")
        return make_rpc_result([{"blockNumber": params[0]["fromBlock"]}])

    transport.script(URL_A, "eth_getLogs", fail_second_window)
    transport.script(URL_B, "eth_getLogs", fail_second_window)

    with pytest.raises(PaginationFailed) as exc_info:
        await provider.get_logs({"fromBlock": 0, "toBlock": 250})

    assert exc_info.value.window.from_block == 100
    assert exc_info.value.window.to_block == 199
    assert isinstance(exc_info.value.__cause__, ConsensusFailed)

    # Third window never asked
    assert all(c.params[0]["fromBlock"] != "0xc8" for c in transport.get_calls(method="eth_getLogs"))


@pytest.mark.asyncio
async def test_get_logs_inverted_range(provider: SmartProvider, transport: ScriptedTransport):
    with pytest.raises(InvalidBlockRange):
        await provider.get_logs({"fromBlock": 10, "toBlock": 9})

    response = await provider.make_request("eth_getLogs", [{"fromBlock": "0xa", "toBlock": "0x9"}])
    assert response["error"]["code"] == -32000
    assert "after toBlock" in response["error"]["message"]
    assert transport.calls == []


@pytest.mark.asyncio
async def test_get_logs_ahead_of_chain_tip(provider: SmartProvider, transport: ScriptedTransport):
    """Polling loops ask for blocks not produced yet."""
    transport.script(URL_A, "eth_blockNumber", make_rpc_result("0x10"))

    assert await provider.get_logs({"fromBlock": 17, "toBlock": "latest"}) == []
    assert await provider.get_logs({"fromBlock": 17}) == []

    response = await provider.make_request("eth_getLogs", [{"fromBlock": "0x11", "toBlock": "latest"}])
    assert response["result"] == []
    assert transport.get_calls(method="eth_getLogs") == []


@pytest.mark.asyncio
async def test_get_logs_explorer_abstains_on_block_tag(identity, transport: ScriptedTransport):
    """Explorer cannot express pending, the call moves on to the node."""
    metadata = ChainMetadata(chain_id=31337, name="anvil")
    explorer = Endpoint("https://api.etherscan.io/v2/api?chainid=31337", identity, priority=0, kind=EndpointKind.block_explorer)
    explorer_transport = EtherscanTransport()
    provider = SmartProvider(
        metadata,
        endpoint_urls=[explorer, Endpoint(URL_A, identity, priority=1)],
        rpc_consensus_type=RpcConsensusType.fallback,
        transport=transport,
        explorer_transport=explorer_transport,
    )
    transport.script(URL_A, "eth_getLogs", make_rpc_result([]))

    assert await provider.get_logs({"fromBlock": "pending", "toBlock": "latest"}) == []
    assert len(transport.get_calls(URL_A, "eth_getLogs")) == 1
    assert explorer_transport.session is None
    await explorer_transport.close()


@pytest.mark.asyncio
async def test_get_logs_explorer_only_block_tag(identity, transport: ScriptedTransport):
    metadata = ChainMetadata(chain_id=31337, name="anvil")
    explorer = Endpoint("https://api.etherscan.io/v2/api?chainid=31337", identity, kind=EndpointKind.block_explorer)
    provider = SmartProvider(metadata, endpoint_urls=[explorer], transport=transport, explorer_transport=EtherscanTransport())

    with pytest.raises(ConsensusFailed):
        await provider.get_logs({"fromBlock": "finalized", "toBlock": "latest"})

    response = await provider.make_request("eth_getLogs", [{"fromBlock": "finalized", "toBlock": "latest"}])
    assert response["error"]["code"] == -32602


@pytest.mark.asyncio
async def test_get_logs_before_history(transport: ScriptedTransport):
    metadata = ChainMetadata(chain_id=31337, name="anvil", max_block_range=100, min_block_number=1_000)
    provider = SmartProvider(metadata, endpoint_urls=[URL_A], transport=transport)
    assert await provider.get_logs({"fromBlock": 0, "toBlock": 500}) == []
    assert transport.calls == []


@pytest.mark.asyncio
async def test_get_logs_block_hash_not_split(provider: SmartProvider, transport: ScriptedTransport):
    block_hash = "0x" + "ab" * 32
    transport.script(URL_A, "eth_getLogs", make_rpc_result([]))
    await provider.get_logs({"blockHash": block_hash})
    assert transport.get_calls(method="eth_getLogs")[0].params == ({"blockHash": block_hash},)


@pytest.mark.asyncio
async def test_get_logs_unlimited_chain(transport: ScriptedTransport):
    """Chains without a range limit pass the filter through."""
    metadata = ChainMetadata(chain_id=31337, name="anvil")
    provider = SmartProvider(metadata, endpoint_urls=[URL_A], transport=transport)
    transport.script(URL_A, "eth_getLogs", make_rpc_result([]))
    await provider.get_logs({"fromBlock": 0, "toBlock": "latest"})
    assert transport.get_calls(method="eth_getLogs")[0].params == ({"fromBlock": "0x0", "toBlock": "latest"},)


@pytest.mark.asyncio
async def test_web3_integration(provider: SmartProvider, transport: ScriptedTransport):
    """AsyncWeb3 works on top of the smart provider."""
    transport.script(URL_A, "eth_blockNumber", make_rpc_result("0x10"))
    transport.script(URL_A, "eth_chainId", make_rpc_result("0x7a69"))

    web3 = AsyncWeb3(provider)
    assert await web3.eth.block_number == 16
    assert await web3.eth.chain_id == 31337


@pytest.mark.asyncio
async def test_make_request_errors(provider: SmartProvider, transport: ScriptedTransport):
    response = await provider.make_request("eth_mining", [])
    assert response["error"]["code"] == -32601

    # Node errors are passed through for revert reason decoding
    revert = {"code": 3, "message": "execution reverted: nope", "data": "0x08c379a0"}
    transport.script(URL_A, "eth_call", {"error": revert})
    transport.script(URL_B, "eth_call", {"error": revert})
    response = await provider.make_request("eth_call", [{"to": ADDRESS, "data": "0x"}, "latest"])
    assert response["jsonrpc"] == "2.0"
    assert response["error"] == revert

    # Smart provider own failures
    response = await provider.make_request("eth_gasPrice", [])
    assert response["error"]["code"] == -32000


@pytest.mark.asyncio
async def test_close_keeps_given_transport(provider: SmartProvider, transport: ScriptedTransport):
    await provider.close()
    assert not transport.closed
    assert provider.owned_transports == []
