"""Etherscan-compatible explorer API translation."""

import pytest

from eth_smart_provider.provider.errors import FailureCause, classify_rpc_error
from eth_smart_provider.provider.explorer import (
    EtherscanTransport,
    UnsupportedExplorerCall,
    build_logs_query,
    build_proxy_query,
    convert_explorer_log,
    convert_logs_response,
    convert_proxy_response,
)

ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"

TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def test_proxy_query():
    query = build_proxy_query("eth_getStorageAt", [ADDRESS, "0x0", "latest"])
    assert query == {"module": "proxy", "action": "eth_getStorageAt", "address": ADDRESS, "position": "0x0", "tag": "latest"}

    query = build_proxy_query("eth_getBlockByNumber", ["0x10", True])
    assert query["boolean"] == "true"


def test_proxy_query_unsupported():
    with pytest.raises(UnsupportedExplorerCall) as exc_info:
        build_proxy_query("eth_call", [{"to": ADDRESS}, "latest"])
    assert exc_info.value.code == -32601


def test_logs_query():
    query = build_logs_query([{"fromBlock": "0x10", "toBlock": "0x20", "address": [ADDRESS], "topics": [TOPIC, None, [TOPIC]]}])
    assert query == {
        "module": "logs",
        "action": "getLogs",
        "fromBlock": "16",
        "toBlock": "32",
        "address": ADDRESS,
        "topic0": TOPIC,
        "topic2": TOPIC,
        "topic0_2_opr": "and",
    }


def test_logs_query_unsupported():
    with pytest.raises(UnsupportedExplorerCall):
        build_logs_query([{"topics": [[TOPIC, TOPIC]]}])

    with pytest.raises(UnsupportedExplorerCall):
        build_logs_query([{"address": [ADDRESS, ADDRESS]}])

    with pytest.raises(UnsupportedExplorerCall):
        build_logs_query([{"blockHash": "0x" + "00" * 32}])


def test_convert_log():
    log = {
        "address": ADDRESS,
        "topics": [TOPIC],
        "data": "0x",
        "blockNumber": "0x10",
        "blockHash": "0x" + "00" * 32,
        "timeStamp": "0x6400",
        "gasPrice": "0x1",
        "gasUsed": "0x1",
        "logIndex": "0x",
        "transactionHash": "0x" + "11" * 32,
        "transactionIndex": "0x1",
    }
    converted = convert_explorer_log(log)
    assert "timeStamp" not in converted
    assert converted["logIndex"] == "0x0"
    assert converted["transactionIndex"] == "0x1"
    assert converted["removed"] is False


def test_logs_response():
    response = convert_logs_response(1, {"status": "0", "message": "No records found", "result": []})
    assert response["result"] == []

    response = convert_logs_response(2, {"status": "1", "message": "OK", "result": [{"address": ADDRESS, "topics": []}]})
    assert response["id"] == 2
    assert response["result"][0]["address"] == ADDRESS


def test_rate_limit_translated():
    """Explorer throttling is classified like node throttling."""
    response = convert_logs_response(1, {"status": "0", "message": "NOTOK", "result": "Max rate limit reached"})
    assert classify_rpc_error(response["error"]) == FailureCause.rate_limited

    response = convert_proxy_response(1, {"status": "0", "message": "NOTOK", "result": "Max calls per sec rate limit reached (5/sec)"})
    assert classify_rpc_error(response["error"]) == FailureCause.rate_limited


def test_proxy_response():
    payload = {"jsonrpc": "2.0", "id": 1, "result": "0x10"}
    assert convert_proxy_response(1, payload) == payload

    response = convert_proxy_response(1, {"status": "0", "message": "NOTOK", "result": "Invalid API Key"})
    assert classify_rpc_error(response["error"]) == FailureCause.rejected


@pytest.mark.asyncio
async def test_unsupported_call_answered_locally():
    """Calls the explorer cannot express are answered without network."""
    transport = EtherscanTransport()
    response = await transport.send("https://api.etherscan.io/v2/api?chainid=1", "eth_call", [{"to": ADDRESS}, "latest"], timeout=1)
    assert response["error"]["code"] == -32601
    assert classify_rpc_error(response["error"]) == FailureCause.method_unsupported
    assert transport.session is None
    await transport.close()


def test_logs_query_block_tags():
    """Explorer logs API knows block numbers and latest only."""
    query = build_logs_query([{"fromBlock": "earliest", "toBlock": "latest"}])
    assert query["fromBlock"] == "0"
    assert query["toBlock"] == "latest"

    for tag in ("pending", "safe", "finalized"):
        with pytest.raises(UnsupportedExplorerCall) as exc_info:
            build_logs_query([{"fromBlock": tag, "toBlock": "latest"}])
        assert exc_info.value.code == -32602

    with pytest.raises(UnsupportedExplorerCall) as exc_info:
        build_logs_query([{"fromBlock": "0x0", "toBlock": "0xzz"}])
    assert exc_info.value.code == -32602


@pytest.mark.asyncio
async def test_block_tag_answered_locally():
    """Untranslatable block tags become a rejected call, not an exception."""
    transport = EtherscanTransport()
    response = await transport.send("https://api.etherscan.io/v2/api?chainid=1", "eth_getLogs", [{"fromBlock": "safe", "toBlock": "latest"}], timeout=1)
    assert response["error"]["code"] == -32602
    assert classify_rpc_error(response["error"]) == FailureCause.rejected
    assert transport.session is None
    await transport.close()
