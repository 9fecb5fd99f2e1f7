"""Which endpoint supports which method.

A static table per endpoint kind, plus what we have learned
at runtime from endpoints telling us a method does not exist.
"""

import logging
import threading
from typing import Iterable

from eth_smart_provider.provider.endpoint import Endpoint, EndpointKind
from eth_smart_provider.provider.methods import ProviderMethod
from eth_smart_provider.provider.named import get_endpoint_name

logger = logging.getLogger(__name__)


#: Methods known to work per endpoint kind.
#:
#: Explorer APIs only proxy a subset of reads, and their
#: ``eth_call`` and balance reads do not take historical blocks.
STATIC_METHOD_SUPPORT: dict[EndpointKind, frozenset[ProviderMethod]] = {
    EndpointKind.json_rpc: frozenset(ProviderMethod),
    EndpointKind.block_explorer: frozenset(
        {
            ProviderMethod.get_block,
            ProviderMethod.get_block_number,
            ProviderMethod.get_gas_price,
            ProviderMethod.get_code,
            ProviderMethod.get_storage_at,
            ProviderMethod.get_transaction_count,
            ProviderMethod.get_transaction,
            ProviderMethod.get_transaction_receipt,
            ProviderMethod.get_logs,
        }
    ),
}


class MethodSupportRegistry:
    """Learned record of which methods each endpoint honours.

    - Optimistic: everything in :py:data:`STATIC_METHOD_SUPPORT` is supported
      until an endpoint tells otherwise

    - Monotonic: once unsupported, always unsupported for the lifetime of the registry

    - Readers never lock. Each endpoint maps to an immutable ``frozenset``
      that writers replace as a whole under a lock.

    One registry per provider. Pass your own to share learnings or
    to start tests from a clean slate.
    """

    def __init__(self):
        #: Endpoint -> methods learned to be unsupported
        self.unsupported: dict[Endpoint, frozenset[ProviderMethod]] = {}
        self.write_lock = threading.Lock()

    def supports(self, endpoint: Endpoint, method: ProviderMethod) -> bool:
        """Is it worth asking this endpoint."""
        if method not in STATIC_METHOD_SUPPORT[endpoint.kind]:
            return False
        return method not in self.unsupported.get(endpoint, frozenset())

    def mark_unsupported(self, endpoint: Endpoint, method: ProviderMethod) -> bool:
        """Remember the endpoint does not support the method.

        Marking twice is a no-op.

        :return:
            ``True`` if this was news to us
        """
        assert isinstance(method, ProviderMethod), f"Got {type(method)}"
        with self.write_lock:
            current = self.unsupported.get(endpoint, frozenset())
            if method in current:
                return False
            self.unsupported[endpoint] = current | {method}
        logger.debug("Marked %s unsupported on %s", method.value, get_endpoint_name(endpoint))
        return True

    def disable_endpoint(self, endpoint: Endpoint) -> bool:
        """Mark every method unsupported.

        Used when the endpoint turns out to serve a wrong chain.

        :return:
            ``True`` if anything changed
        """
        changed = False
        for method in ProviderMethod:
            changed = self.mark_unsupported(endpoint, method) or changed
        return changed

    def get_supported_methods(self, endpoints: Iterable[Endpoint]) -> list[ProviderMethod]:
        """Methods at least one of the endpoints supports, in enumeration order."""
        endpoints = list(endpoints)
        return [m for m in ProviderMethod if any(self.supports(e, m) for e in endpoints)]
