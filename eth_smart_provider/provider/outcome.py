"""Per-endpoint outcomes and their reconciliation."""

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Optional

from eth_smart_provider.provider.errors import EndpointError
from eth_smart_provider.provider.methods import RpcRequest

if TYPE_CHECKING:
    from eth_smart_provider.provider.endpoint import Endpoint


@dataclass(slots=True, frozen=True)
class RpcOutcome:
    """What one endpoint answered for one request.

    Either ``result`` is the raw JSON-RPC result, or ``error`` is set.
    """

    #: Who answered
    endpoint: "Endpoint"

    #: What was asked
    request: RpcRequest

    #: Raw JSON-RPC ``result`` member
    result: Any = None

    #: Classified failure
    error: Optional[EndpointError] = None

    #: How many attempts were made, including retries
    attempts: int = 1

    @property
    def success(self) -> bool:
        return self.error is None

    def with_attempts(self, attempts: int) -> "RpcOutcome":
        return replace(self, attempts=attempts)

    def __repr__(self):
        from eth_smart_provider.provider.named import get_endpoint_name

        name = get_endpoint_name(self.endpoint)
        if self.success:
            return f"<Outcome {name} ok after {self.attempts} attempts>"
        return f"<Outcome {name} {self.error.cause.value} after {self.attempts} attempts: {self.error}>"


@dataclass(slots=True, frozen=True)
class ConsensusDecision:
    """An accepted answer for a logical call."""

    #: Raw JSON-RPC result everyone in the provenance agreed on
    value: Any

    #: Endpoints that returned :py:attr:`value`
    provenance: tuple["Endpoint", ...]

    #: Every outcome collected while deciding
    outcomes: tuple[RpcOutcome, ...] = field(default_factory=tuple)
