"""One upstream endpoint and a client that makes exactly one attempt against it.

- :py:class:`Endpoint` is the immutable identity of an upstream

- :py:class:`EndpointClient` performs one attempt and classifies what went wrong,
  see :py:mod:`eth_smart_provider.provider.errors`

Retrying is not done here, see :py:mod:`eth_smart_provider.provider.retry`.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import aiohttp
from eth_utils import is_0x_prefixed, is_hex

from eth_smart_provider.chain import ChainIdentity
from eth_smart_provider.provider.errors import EndpointError, FailureCause, classify_http_status, classify_rpc_error
from eth_smart_provider.provider.methods import DATA_METHODS, OBJECT_METHODS, QUANTITY_METHODS, ProviderMethod, RpcRequest
from eth_smart_provider.provider.named import get_endpoint_name
from eth_smart_provider.provider.outcome import RpcOutcome
from eth_smart_provider.provider.transport import HttpStatusError, MalformedResponseError, Transport

if TYPE_CHECKING:
    from eth_smart_provider.provider.registry import MethodSupportRegistry

logger = logging.getLogger(__name__)


class EndpointKind(enum.Enum):
    """What kind of API sits behind an endpoint URL."""

    #: Ethereum JSON-RPC node
    json_rpc = "json_rpc"

    #: Etherscan-compatible explorer API
    block_explorer = "block_explorer"


@dataclass(slots=True, frozen=True)
class Endpoint:
    """One upstream connection target for a chain.

    Immutable. Owned by the provider that created it.
    """

    #: URL, may contain API keys
    url: str

    #: Which chain this endpoint serves
    chain: ChainIdentity

    #: Lower is preferred.
    #:
    #: Fallback and single strategies try endpoints in this order.
    priority: int = 0

    #: JSON-RPC node or block explorer
    kind: EndpointKind = EndpointKind.json_rpc

    def __post_init__(self):
        assert type(self.url) == str and self.url, f"Bad endpoint URL {self.url}"
        assert isinstance(self.chain, ChainIdentity), f"Got {type(self.chain)}"
        assert isinstance(self.kind, EndpointKind), f"Got {type(self.kind)}"

    def __repr__(self):
        return f"<Endpoint {get_endpoint_name(self)} priority:{self.priority} {self.kind.value}>"


def _is_hex_string(value: Any) -> bool:
    return isinstance(value, str) and is_0x_prefixed(value) and is_hex(value)


def check_result_shape(request: RpcRequest, result: Any) -> Optional[str]:
    """Check the JSON-RPC result looks like what the method returns.

    :return:
        Description of the problem, or ``None`` if the result is fine
    """
    method = request.method
    if method in QUANTITY_METHODS:
        if not _is_hex_string(result) or len(result) < 3:
            return f"Expected hex quantity, got {result!r}"
    elif method in DATA_METHODS:
        if not _is_hex_string(result):
            return f"Expected hex data, got {str(result)[0:100]!r}"
    elif method in OBJECT_METHODS:
        if result is not None and not isinstance(result, dict):
            return f"Expected object or null, got {type(result)}"
    elif method == ProviderMethod.get_logs:
        if not isinstance(result, list) or not all(isinstance(log, dict) for log in result):
            return f"Expected list of logs, got {type(result)}"
    return None


def check_missing_state(request: RpcRequest, result: Any) -> Optional[str]:
    """Detect nodes answering about state they do not have yet.

    A special case of ``eth_call`` returning empty result.
    This happens if you call a smart contract for a block number
    for which the node does not yet have a data or is still processing data.
    This happens often on low-quality RPC providers (Ankr)
    that route your call between different nodes between subsequent calls and those nodes
    see a different state of EVM.

    LlamaNodes.com: ``Block with id: '0x2e4d582' not found.``

    :return:
        Description of the problem, or ``None`` if the result is fine
    """
    if request.method == ProviderMethod.call:
        block_identifier = request.get_block_identifier()
        if block_identifier not in (None, "latest", "pending") and result in ("0x", ""):
            return f"Empty 0x response for a smart contract call at block {block_identifier}. Node lacked state data?"

    if request.method == ProviderMethod.get_block and result is None:
        block_identifier = request.get_block_identifier()
        if isinstance(block_identifier, str) and block_identifier.startswith("0x"):
            return f"Node did not have data for block {block_identifier}"

    return None


class EndpointClient:
    """Perform single request attempts against one endpoint.

    - Never retries

    - Never raises for endpoint problems, returns a failed :py:class:`RpcOutcome` instead

    - Learns unsupported methods into the :py:class:`MethodSupportRegistry`
    """

    def __init__(self, endpoint: Endpoint, transport: Transport, registry: "MethodSupportRegistry"):
        self.endpoint = endpoint
        self.transport = transport
        self.registry = registry

    def __repr__(self):
        return f"<EndpointClient {get_endpoint_name(self.endpoint)}>"

    def _fail(
        self,
        request: RpcRequest,
        cause: FailureCause,
        message: str,
        raw: BaseException | None = None,
        rpc_error: Any = None,
    ) -> RpcOutcome:
        method = request.get_json_rpc_method()
        name = get_endpoint_name(self.endpoint)
        error = EndpointError.create(
            f"{name}: {cause.value} when calling {method}: {message}",
            endpoint=self.endpoint,
            method=method,
            cause=cause,
            rpc_error=rpc_error,
        )
        error.__cause__ = raw
        logger.debug("Endpoint %s failed %s: %s", name, request, error)
        return RpcOutcome(self.endpoint, request, error=error)

    async def request(self, request: RpcRequest, timeout: float) -> RpcOutcome:
        """Make exactly one attempt.

        :param request:
            What to ask

        :param timeout:
            Seconds before we give up on this attempt

        :return:
            Success or classified failure
        """
        assert timeout > 0, f"Timeout must be positive, got {timeout}"

        method = request.get_json_rpc_method()

        try:
            response = await asyncio.wait_for(
                self.transport.send(self.endpoint.url, method, request.params, timeout),
                timeout,
            )
        except asyncio.TimeoutError as e:
            return self._fail(request, FailureCause.timeout, f"No reply in {timeout} seconds", e)
        except HttpStatusError as e:
            return self._fail(request, classify_http_status(e.status), str(e), e)
        except MalformedResponseError as e:
            return self._fail(request, FailureCause.malformed_response, str(e), e)
        except (aiohttp.ClientError, OSError) as e:
            return self._fail(request, FailureCause.endpoint_unreachable, f"{e.__class__.__name__}: {e}", e)

        if not isinstance(response, dict):
            return self._fail(request, FailureCause.malformed_response, f"Response is not an object: {type(response)}")

        rpc_error = response.get("error")
        if rpc_error is not None:
            cause = classify_rpc_error(rpc_error)
            if cause == FailureCause.method_unsupported:
                if self.registry.mark_unsupported(self.endpoint, request.method):
                    logger.info("Endpoint %s does not support %s, not asking it again", get_endpoint_name(self.endpoint), method)
            return self._fail(request, cause, f"Error in JSON-RPC response: {rpc_error}", rpc_error=rpc_error)

        if "result" not in response:
            return self._fail(request, FailureCause.malformed_response, f"No result in JSON-RPC response: {str(response)[0:200]}")

        result = response["result"]

        problem = check_result_shape(request, result)
        if problem:
            return self._fail(request, FailureCause.malformed_response, problem)

        problem = check_missing_state(request, result)
        if problem:
            return self._fail(request, FailureCause.missing_state, problem)

        if request.method == ProviderMethod.get_chain_id:
            chain_id = int(result, 16)
            if chain_id != self.endpoint.chain.chain_id:
                return self._fail(request, FailureCause.chain_mismatch, f"Expected chain {self.endpoint.chain.chain_id}, endpoint serves chain {chain_id}")

        return RpcOutcome(self.endpoint, request, result=result)
