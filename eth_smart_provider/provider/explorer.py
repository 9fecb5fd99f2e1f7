"""Etherscan-compatible block explorer API as a JSON-RPC endpoint.

Explorers proxy a subset of JSON-RPC reads under ``module=proxy``
and serve event logs under ``module=logs``.
:py:class:`EtherscanTransport` translates JSON-RPC calls to these
and the replies back to JSON-RPC responses, so that explorer endpoints
can participate in consensus next to ordinary nodes.

- Which methods explorers can answer is in
  :py:data:`eth_smart_provider.provider.registry.STATIC_METHOD_SUPPORT`

- The endpoint URL carries ``chainid`` and ``apikey`` in its query string,
  see :py:meth:`eth_smart_provider.chain.BlockExplorer.get_endpoint_url`

- Explorer throttling replies are translated to JSON-RPC rate limit errors
"""

import itertools
import logging
from typing import Any, Sequence, cast

import aiohttp
from web3.types import RPCEndpoint, RPCResponse

from eth_smart_provider.provider.conversion import BLOCK_TAGS, convert_jsonrpc_value_to_int
from eth_smart_provider.provider.transport import HttpStatusError, decode_rpc_response
from eth_smart_provider.utils import get_url_domain

logger = logging.getLogger(__name__)


#: JSON-RPC error codes we use for translated explorer replies
RATE_LIMITED_ERROR_CODE = -32005
METHOD_NOT_FOUND_ERROR_CODE = -32601
INVALID_PARAMS_ERROR_CODE = -32602

#: JSON-RPC method -> names of the ``module=proxy`` query parameters
PROXY_ACTIONS: dict[str, tuple[str, ...]] = {
    "eth_blockNumber": (),
    "eth_gasPrice": (),
    "eth_getBlockByNumber": ("tag", "boolean"),
    "eth_getCode": ("address", "tag"),
    "eth_getStorageAt": ("address", "position", "tag"),
    "eth_getTransactionCount": ("address", "tag"),
    "eth_getTransactionByHash": ("txhash",),
    "eth_getTransactionReceipt": ("txhash",),
}

#: Fields of a standard JSON-RPC log object.
#:
#: Explorers add their own (``timeStamp``, ``gasUsed``) which we drop.
LOG_FIELDS = (
    "address",
    "topics",
    "data",
    "blockNumber",
    "blockHash",
    "transactionHash",
    "transactionIndex",
    "logIndex",
)

#: Explorer messages meaning we are throttled
RATE_LIMIT_MESSAGES = (
    "rate limit",
    "max calls per sec",
    "max calls per second",
    "too many requests",
)


class UnsupportedExplorerCall(Exception):
    """The explorer API cannot express this JSON-RPC call."""

    def __init__(self, message: str, code: int = METHOD_NOT_FOUND_ERROR_CODE):
        super().__init__(message)
        self.code = code


def _is_rate_limit_payload(payload: dict) -> bool:
    candidates = []
    for key in ("message", "result"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            candidates.append(value)

    error = payload.get("error")
    if isinstance(error, dict):
        for key in ("message", "data"):
            value = error.get(key)
            if isinstance(value, str) and value:
                candidates.append(value)

    haystack = " ".join(candidates).lower()
    return any(m in haystack for m in RATE_LIMIT_MESSAGES)


def _error_response(request_id: int, code: int, message: str) -> RPCResponse:
    return cast(RPCResponse, {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}})


def _encode_query_value(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def build_proxy_query(method: str, params: Sequence[Any]) -> dict[str, str]:
    """Map a JSON-RPC call to ``module=proxy`` query parameters.

    :raise UnsupportedExplorerCall:
        The explorer does not proxy this method
    """
    names = PROXY_ACTIONS.get(method)
    if names is None:
        raise UnsupportedExplorerCall(f"Method {method} not supported by explorer API")

    if len(params) > len(names):
        raise UnsupportedExplorerCall(f"Too many params for {method} on explorer API: {params}", INVALID_PARAMS_ERROR_CODE)

    query = {"module": "proxy", "action": method}
    for name, value in zip(names, params):
        query[name] = _encode_query_value(value)
    return query


def build_logs_query(params: Sequence[Any]) -> dict[str, str]:
    """Map an ``eth_getLogs`` filter to ``module=logs`` query parameters.

    The explorer takes at most one address, and one value per topic position.
    Topic positions are AND'ed.
    Of the block tags only ``latest`` and ``earliest`` can be expressed.

    :raise UnsupportedExplorerCall:
        The filter cannot be expressed
    """
    if len(params) != 1 or not isinstance(params[0], dict):
        raise UnsupportedExplorerCall(f"eth_getLogs takes one filter object, got {params}", INVALID_PARAMS_ERROR_CODE)

    filter_params = params[0]

    if "blockHash" in filter_params:
        raise UnsupportedExplorerCall("Explorer API cannot filter logs by blockHash", INVALID_PARAMS_ERROR_CODE)

    query = {"module": "logs", "action": "getLogs"}

    for key in ("fromBlock", "toBlock"):
        value = filter_params.get(key)
        if value is None:
            continue
        if value == "latest":
            query[key] = "latest"
        elif value == "earliest":
            query[key] = "0"
        elif value in BLOCK_TAGS:
            raise UnsupportedExplorerCall(f"Explorer API cannot filter logs with {key} {value}", INVALID_PARAMS_ERROR_CODE)
        else:
            try:
                query[key] = str(convert_jsonrpc_value_to_int(value))
            except ValueError as e:
                raise UnsupportedExplorerCall(f"Bad {key} for explorer API: {value!r}", INVALID_PARAMS_ERROR_CODE) from e

    address = filter_params.get("address")
    if isinstance(address, (list, tuple)):
        if len(address) != 1:
            raise UnsupportedExplorerCall("Explorer API takes at most one address per log filter", INVALID_PARAMS_ERROR_CODE)
        address = address[0]
    if address:
        query["address"] = address

    topics = filter_params.get("topics") or []
    used = []
    for idx, topic in enumerate(topics):
        if topic is None:
            continue
        if isinstance(topic, (list, tuple)):
            if len(topic) != 1:
                raise UnsupportedExplorerCall("Explorer API cannot OR topics", INVALID_PARAMS_ERROR_CODE)
            topic = topic[0]
        query[f"topic{idx}"] = topic
        used.append(idx)

    for a, b in zip(used, used[1:]):
        query[f"topic{a}_{b}_opr"] = "and"

    return query


def convert_explorer_log(log: dict) -> dict:
    """Normalise an explorer log entry to a JSON-RPC log object."""
    converted = {k: log[k] for k in LOG_FIELDS if k in log}
    # Explorers encode zero indexes as bare 0x
    for key in ("transactionIndex", "logIndex"):
        if converted.get(key) == "0x":
            converted[key] = "0x0"
    converted["removed"] = False
    return converted


def convert_logs_response(request_id: int, payload: dict) -> RPCResponse:
    """Translate a ``module=logs`` reply to a JSON-RPC response."""
    status = payload.get("status")
    message = str(payload.get("message", ""))
    result = payload.get("result")

    if status == "1" and isinstance(result, list):
        return cast(RPCResponse, {"jsonrpc": "2.0", "id": request_id, "result": [convert_explorer_log(log) for log in result]})

    if message.startswith("No records found"):
        return cast(RPCResponse, {"jsonrpc": "2.0", "id": request_id, "result": []})

    if _is_rate_limit_payload(payload):
        return _error_response(request_id, RATE_LIMITED_ERROR_CODE, f"Explorer rate limit: {result}")

    return _error_response(request_id, INVALID_PARAMS_ERROR_CODE, f"Explorer error: {message}: {result}")


def convert_proxy_response(request_id: int, payload: dict) -> RPCResponse:
    """Translate a ``module=proxy`` reply to a JSON-RPC response.

    Proxy replies are JSON-RPC already, except when the explorer itself
    throttles or rejects us.
    """
    if "jsonrpc" in payload and ("result" in payload or "error" in payload):
        if "error" not in payload and _is_rate_limit_payload(payload):
            return _error_response(request_id, RATE_LIMITED_ERROR_CODE, f"Explorer rate limit: {payload.get('result')}")
        return cast(RPCResponse, payload)

    if _is_rate_limit_payload(payload):
        return _error_response(request_id, RATE_LIMITED_ERROR_CODE, f"Explorer rate limit: {payload.get('result')}")

    # {"status": "0", "message": "NOTOK", "result": "Invalid API Key"}
    return _error_response(request_id, INVALID_PARAMS_ERROR_CODE, f"Explorer error: {payload.get('message')}: {payload.get('result')}")


class EtherscanTransport:
    """Speak Etherscan-compatible explorer API, reply with JSON-RPC.

    Implements :py:class:`eth_smart_provider.provider.transport.Transport`.
    """

    def __init__(self, session: aiohttp.ClientSession | None = None):
        """
        :param session:
            Use specific HTTP session.

            If not given, create one on the first request and
            close it in :py:meth:`close`.
        """
        self.session = session
        self.owns_session = session is None
        self.request_ids = itertools.count(1)

    def get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self.owns_session = True
        return self.session

    async def send(self, endpoint_url: str, method: RPCEndpoint, params: Sequence[Any], timeout: float) -> RPCResponse:
        request_id = next(self.request_ids)

        try:
            if method == "eth_getLogs":
                query = build_logs_query(params)
            else:
                query = build_proxy_query(method, params)
        except UnsupportedExplorerCall as e:
            return _error_response(request_id, e.code, str(e))

        session = self.get_session()

        # aiohttp extends the chainid and apikey already in the URL query string
        async with session.get(
            endpoint_url,
            params=query,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            body = await response.read()

            if response.status >= 300:
                text = body.decode("utf-8", errors="replace")[0:500]
                raise HttpStatusError(
                    f"HTTP {response.status} from {get_url_domain(endpoint_url)} calling {method}: {text}",
                    status=response.status,
                    headers=dict(response.headers),
                    body=text,
                )

        payload = decode_rpc_response(body)

        if method == "eth_getLogs":
            return convert_logs_response(request_id, payload)
        return convert_proxy_response(request_id, payload)

    async def close(self):
        if self.owns_session and self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None
