"""Error taxonomy of the smart provider and how raw failures map to it.

Most of this is about dealing with JSON-RPC unreliability.
Every per-endpoint failure is classified as a :py:class:`FailureCause`,
which is either transient (retry, try another endpoint) or permanent
(the endpoint abstains).

- Endpoint level failures are :py:class:`TransientEndpointError` and :py:class:`PermanentEndpointError`

- A logical call fails with :py:class:`ConsensusFailed` or :py:class:`PaginationFailed`

The error code and message tables are curated by pain, see comments.
"""

import enum
from typing import TYPE_CHECKING, Any, Collection, Sequence

if TYPE_CHECKING:
    from eth_smart_provider.provider.endpoint import Endpoint
    from eth_smart_provider.provider.methods import RpcRequest
    from eth_smart_provider.provider.outcome import RpcOutcome
    from eth_smart_provider.provider.pagination import PaginationWindow


class FailureCause(enum.Enum):
    """Why a single endpoint attempt failed."""

    #: The attempt did not complete within the per-attempt timeout
    timeout = "timeout"

    #: HTTP 429 or a JSON-RPC throttling error
    rate_limited = "rate_limited"

    #: Could not connect, or the node or its load balancer is having a bad day
    endpoint_unreachable = "endpoint_unreachable"

    #: The node does not yet have the block or state we asked for.
    #:
    #: Happens with load balanced providers where subsequent calls
    #: hit nodes at a different chain tip.
    missing_state = "missing_state"

    #: Response body was not a valid JSON-RPC response for the method
    malformed_response = "malformed_response"

    #: The node told us it does not know this method
    method_unsupported = "method_unsupported"

    #: The node serves a different chain
    chain_mismatch = "chain_mismatch"

    #: The node answered with an error we do not retry, e.g. execution reverted
    rejected = "rejected"

    @property
    def is_transient(self) -> bool:
        """Can retrying help."""
        return self in TRANSIENT_CAUSES


#: Causes worth retrying
TRANSIENT_CAUSES = frozenset(
    {
        FailureCause.timeout,
        FailureCause.rate_limited,
        FailureCause.endpoint_unreachable,
        FailureCause.missing_state,
    }
)


class SmartProviderError(Exception):
    """Base class for everything the smart provider raises."""


class SmartProviderConfigurationError(SmartProviderError):
    """Could not set up the provider from the given configuration."""


class EndpointError(SmartProviderError):
    """One attempt against one endpoint failed.

    The raw transport exception, if any, is available as ``__cause__``.
    """

    def __init__(self, message: str, endpoint: "Endpoint", method: str, cause: FailureCause, rpc_error: Any = None):
        super().__init__(message)

        #: Which endpoint failed
        self.endpoint = endpoint

        #: JSON-RPC method name
        self.method = method

        #: Classified cause
        self.cause = cause

        #: JSON-RPC error payload, if the node returned one
        self.rpc_error = rpc_error

    @staticmethod
    def create(message: str, endpoint: "Endpoint", method: str, cause: FailureCause, rpc_error: Any = None) -> "EndpointError":
        """Create transient or permanent error depending on the cause."""
        klass = TransientEndpointError if cause.is_transient else PermanentEndpointError
        return klass(message, endpoint, method, cause, rpc_error)


class TransientEndpointError(EndpointError):
    """Timeout, rate limit, unreachable node. Retryable."""


class PermanentEndpointError(EndpointError):
    """Unsupported method, malformed response, wrong chain. Not retryable."""


class ConsensusFailed(SmartProviderError):
    """No strategy-satisfying answer could be reached.

    Carries all per-endpoint outcomes for diagnosis.
    """

    def __init__(self, message: str, request: "RpcRequest", outcomes: Sequence["RpcOutcome"]):
        super().__init__(message)
        self.request = request
        self.outcomes = list(outcomes)

    def get_causes(self) -> list[FailureCause]:
        """Failure causes of the failed outcomes."""
        return [o.error.cause for o in self.outcomes if o.error is not None]

    def is_all_transient(self) -> bool:
        """Did every endpoint fail for a reason that might go away."""
        causes = self.get_causes()
        return len(causes) > 0 and all(c.is_transient for c in causes)


class PaginationFailed(SmartProviderError):
    """One window of a paginated range query failed.

    The underlying :py:class:`ConsensusFailed` is available as ``__cause__``.
    """

    def __init__(self, message: str, window: "PaginationWindow"):
        super().__init__(message)
        self.window = window


class InvalidBlockRange(SmartProviderError, ValueError):
    """The caller asked for a range query with ``fromBlock`` after ``toBlock``."""


#: List of HTTP status codes we know we might want to retry after a timeout
#:
#: Taken from https://stackoverflow.com/a/72302017/315168
RETRYABLE_HTTP_STATUS_CODES = (
    429,
    500,
    502,
    503,
    504,
    525,  # Returned by Alchemy - SSL handshake failed - cause unknown, internal Alchemy failure suspected https://http.dev/525
    520,  # Returned by Alchemy - CloudFlare: Unknown error
    410,  # happens on dRPC: 410 Client Error: Gone for url: https://lb.drpc.org/ogrpc?network=avalanche&dkey=xxx
    # dRPC error
    # 403 Client Error: Forbidden for url: https://lb.drpc.org/ogrpc?network=polygon&dkey=x/
    403,
    # 400 Client Error: Bad Request for url: https://lb.drpc.org/ogrpc?network=abstract&dkey=xxx
    # '{"id":4,"jsonrpc":"2.0","error":{"message":"Can\'t route your request to suitable provider, if you specified certain providers revise the list","code":12}}'
    400,
)

#: JSON-RPC error codes meaning the node does not know the method.
#:
#: See GoEthereum error codes https://github.com/ethereum/go-ethereum/blob/master/rpc/errors.go
METHOD_UNSUPPORTED_RPC_ERROR_CODES = (-32601,)

#: Some nodes use generic error codes, so we also match messages
METHOD_UNSUPPORTED_RPC_ERROR_MESSAGES = (
    "method not found",
    "does not exist/is not available",
    "method not supported",
    "unsupported method",
    "method not allowed",
)

#: JSON-RPC error codes used for throttling
RATE_LIMIT_RPC_ERROR_CODES = (
    # {'code': -32005, 'message': 'limit exceeded'}
    -32005,
    # TAC: {'code': -32090, 'message': 'Too many requests, reason: call rate limit exhausted, retry in 10s'}
    -32090,
    # dRPC failure
    # {'message': 'There are not enough CUPs left to cover the CU required for current request.', 'code': 42903}
    42903,
    429,
)

RATE_LIMIT_RPC_ERROR_MESSAGES = (
    "rate limit",
    "too many requests",
    "max rate limit reached",
)

#: Node lags behind the chain tip or pruned the data
MISSING_STATE_RPC_ERROR_CODES = (
    # Some error we are getting from LlamaNodes eth_getLogs RPC that we do not know what it is all about
    # {'code': -32043, 'message': 'Requested data is not available'}
    -32043,
)

MISSING_STATE_RPC_ERROR_MESSAGES = (
    # Some random load balancer error?
    # https://github.com/MetaMask/metamask-extension/issues/7234
    "header not found",
    "missing trie node",
)

#: List of JSON-RPC error codes we know we might want to retry after a timeout
#:
#: Example from Pokt Network:
#:
#: `{'message': 'Internal JSON-RPC error.', 'code': -32603}`
#:
#: We assume this is a broken RPC node and the load balancer will reroute the
#: the next retried request to some other node.
#:
RETRYABLE_RPC_ERROR_CODES = (
    # The node provider has corrupted database or something, GoEthereum
    # cannot handle gracefully.
    -32603,
    # {'code': -32003, 'message': 'nonce too low'}.
    # Might happen when we are broadcasting multiple transactions through multiple RPC providers.
    # One provider has not yet seen a transaction broadcast through the other provider.
    # -32000 is also Execution reverted on Alchemy, so not on this list.
    -32003,
    # Some JSON-RPC provider is buying nodes from allnodes.com and have screwed it up
    # {'code': -32701, 'message': 'Please specify address in your request or, to remove restrictions, order a dedicated full node here: https://www.allnodes.com/bnb/host'}
    -32701,
)

#: Because Ethereum JSON-RPC API is horribly broken,
#: we also need to check for error messages besides error codes.
#:
RETRYABLE_RPC_ERROR_MESSAGES = (
    # When broadcasting batch transactions, the RPC provider
    # has a load balancer that is not internally coherent
    "nonce too low",
    # Error from Alchemy
    # {'code': -32000, 'message': 'execution aborted (timeout = 5s)'}
    "execution aborted (timeout = 5s)",
    # dRPC
    # https://github.com/onflow/go-ethereum/blob/18406ff59b887a1d132f46068aa0bee2a9234bd7/core/state/reader.go#L303C6-L303C25
    # {'message': 'empty reader set', 'code': -32000}
    "empty reader set",
    # dRPC Optimism failure
    #  {'message': 'Parse error', 'code': -32700}.,
    "Parse error",
    # Hyperliquid EVM
    "Unexpected error (code=40000)",
)


def _matches(message: str, candidates: Collection[str]) -> bool:
    # Some RPCs add their own crap to the error messages, so exact error
    # message matching does not seem to work
    lowered = message.lower()
    return any(c.lower() in lowered for c in candidates)


def classify_http_status(status: int) -> FailureCause:
    """Classify a failed HTTP response."""
    if status == 429:
        return FailureCause.rate_limited
    if status in RETRYABLE_HTTP_STATUS_CODES:
        return FailureCause.endpoint_unreachable
    return FailureCause.rejected


def classify_rpc_error(error: Any) -> FailureCause:
    """Classify a JSON-RPC ``error`` payload.

    :param error:
        The ``error`` member of the JSON-RPC response, usually
        ``{"code": int, "message": str}``.
        Non-standard providers put whatever they like here.
    """

    if isinstance(error, dict):
        code = error.get("code")
        message = str(error.get("message", ""))
    else:
        code = None
        message = str(error)

    if code in METHOD_UNSUPPORTED_RPC_ERROR_CODES or _matches(message, METHOD_UNSUPPORTED_RPC_ERROR_MESSAGES):
        return FailureCause.method_unsupported

    # TAC uses HTTP 200 to throttle, not behaving sane
    if code in RATE_LIMIT_RPC_ERROR_CODES or _matches(message, RATE_LIMIT_RPC_ERROR_MESSAGES):
        return FailureCause.rate_limited

    if code in MISSING_STATE_RPC_ERROR_CODES or _matches(message, MISSING_STATE_RPC_ERROR_MESSAGES):
        return FailureCause.missing_state

    if code in RETRYABLE_RPC_ERROR_CODES or _matches(message, RETRYABLE_RPC_ERROR_MESSAGES):
        return FailureCause.endpoint_unreachable

    return FailureCause.rejected
