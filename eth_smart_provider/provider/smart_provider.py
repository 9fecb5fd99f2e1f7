"""Smart provider: one chain, many endpoints, one answer.

- See :py:class:`SmartProvider`
"""

import itertools
import logging
from typing import Any, Iterable, Optional, Sequence, cast

from eth_typing import BlockIdentifier
from hexbytes import HexBytes
from web3.providers.async_base import AsyncBaseProvider
from web3.types import RPCEndpoint, RPCResponse

from eth_smart_provider.chain import ChainIdentity, ChainMetadata
from eth_smart_provider.provider.consensus import ConsensusStrategy, RpcConsensusType, probe_endpoints
from eth_smart_provider.provider.conversion import (
    BLOCK_TAGS,
    TIP_TAGS,
    convert_jsonrpc_value_to_int,
    decode_data,
    encode_block_identifier,
    encode_data,
    encode_filter_params,
    encode_quantity,
    encode_transaction,
)
from eth_smart_provider.provider.endpoint import Endpoint, EndpointClient, EndpointKind
from eth_smart_provider.provider.errors import (
    ConsensusFailed,
    FailureCause,
    InvalidBlockRange,
    PaginationFailed,
    SmartProviderConfigurationError,
    SmartProviderError,
)
from eth_smart_provider.provider.explorer import EtherscanTransport
from eth_smart_provider.provider.methods import PROVIDER_METHODS, ProviderMethod, RpcRequest
from eth_smart_provider.provider.named import get_endpoint_name
from eth_smart_provider.provider.outcome import ConsensusDecision, RpcOutcome
from eth_smart_provider.provider.pagination import RangePaginator
from eth_smart_provider.provider.registry import MethodSupportRegistry
from eth_smart_provider.provider.retry import ProviderRetryOptions
from eth_smart_provider.provider.transport import JsonRpcTransport, Transport

logger = logging.getLogger(__name__)


#: JSON-RPC error code for failures of the smart provider itself
SMART_PROVIDER_ERROR_CODE = -32000

#: JSON-RPC error code for methods we do not know
METHOD_NOT_FOUND_ERROR_CODE = -32601


def _create_endpoints(chain_metadata: ChainMetadata, endpoint_urls: Optional[Sequence[str | Endpoint]]) -> list[Endpoint]:
    """Build the endpoint list from user configuration or chain defaults.

    Declaration order is priority order.
    """
    identity = chain_metadata.identity
    endpoints = []

    if endpoint_urls is None:
        for url in chain_metadata.rpc_urls:
            endpoints.append(Endpoint(url, identity, priority=len(endpoints)))
        for explorer in chain_metadata.block_explorers:
            url = explorer.get_endpoint_url(chain_metadata.chain_id)
            endpoints.append(Endpoint(url, identity, priority=len(endpoints), kind=EndpointKind.block_explorer))
        return endpoints

    for item in endpoint_urls:
        if isinstance(item, Endpoint):
            endpoints.append(item)
        else:
            assert type(item) == str, f"Endpoint must be URL or Endpoint, got {type(item)}"
            endpoints.append(Endpoint(item, identity, priority=len(endpoints)))
    return endpoints


def _is_block_missing_everywhere(e: ConsensusFailed) -> bool:
    # Null block answers are missing state without a node error payload
    return len(e.outcomes) > 0 and all(
        not o.success and o.error.cause == FailureCause.missing_state and o.error.rpc_error is None
        for o in e.outcomes
    )


class SmartProvider(AsyncBaseProvider):
    """Resilient JSON-RPC provider over multiple endpoints of the same chain.

    - Each logical call is answered through a consensus strategy:
      single endpoint, fallback in priority order, or N-of-M quorum

    - Transient failures are retried with exponential backoff, except under quorum

    - Endpoints telling they do not support a method are not asked again

    - Long ``eth_getLogs`` ranges are split to windows the endpoints accept

    Use directly:

    .. code-block:: python

        provider = SmartProvider(
            get_chain_metadata("ethereum"),
            endpoint_urls=[os.environ["JSON_RPC_ETHEREUM"], "https://ethereum-rpc.publicnode.com"],
            rpc_consensus_type=RpcConsensusType.fallback,
        )
        block_number = await provider.get_block_number()
        await provider.close()

    Or with web3.py:

    .. code-block:: python

        web3 = AsyncWeb3(provider)
        print(await web3.eth.block_number)

    Endpoints are fixed at construction. The provider is safe to use
    from concurrent tasks.
    """

    def __init__(
        self,
        chain_metadata: ChainMetadata,
        endpoint_urls: Optional[Sequence[str | Endpoint]] = None,
        rpc_consensus_type: RpcConsensusType | ConsensusStrategy = RpcConsensusType.single,
        quorum_threshold: Optional[int] = None,
        retry_options: ProviderRetryOptions = ProviderRetryOptions(),
        request_timeout: float = 30.0,
        health_check_timeout: float = 3.0,
        pin_block_tags: Optional[bool] = None,
        transport: Optional[Transport] = None,
        explorer_transport: Optional[Transport] = None,
        registry: Optional[MethodSupportRegistry] = None,
        switchover_noisiness=logging.WARNING,
    ):
        """
        :param chain_metadata:
            The chain this provider serves.

            See :py:func:`eth_smart_provider.chain.get_chain_metadata`.

        :param endpoint_urls:
            Override the default endpoints of the chain.

            URLs are JSON-RPC endpoints, in priority order.
            Pass :py:class:`Endpoint` instances for block explorers or custom priorities.

        :param rpc_consensus_type:
            How to reconcile answers from multiple endpoints.

            Either the type, or a fully configured :py:class:`ConsensusStrategy`.

        :param quorum_threshold:
            How many endpoints must agree under quorum.

            Default to a strict majority.

        :param retry_options:
            How many times and how fast to retry transient failures.

            Ignored under quorum.

        :param request_timeout:
            Seconds per endpoint attempt.

        :param health_check_timeout:
            Seconds per endpoint for :py:meth:`is_healthy`.

        :param pin_block_tags:
            Resolve ``latest`` to a block number before point queries,
            so that all endpoints answer about the same block.

            Default on for quorum, off otherwise.

        :param transport:
            JSON-RPC transport.

            Default to :py:class:`JsonRpcTransport`.

        :param explorer_transport:
            Transport for block explorer endpoints.

            Default to :py:class:`EtherscanTransport`.

        :param registry:
            Share learned method support between providers.

        :param switchover_noisiness:
            How loud we are about retries and switching between endpoints.
        """
        super().__init__()

        assert isinstance(chain_metadata, ChainMetadata), f"Got {type(chain_metadata)}"
        assert request_timeout > 0, f"Bad request_timeout {request_timeout}"
        assert health_check_timeout > 0, f"Bad health_check_timeout {health_check_timeout}"

        self.chain_metadata = chain_metadata

        endpoints = _create_endpoints(chain_metadata, endpoint_urls)
        if len(endpoints) == 0:
            raise SmartProviderConfigurationError(f"No endpoints configured for chain {chain_metadata.name}")

        for endpoint in endpoints:
            if endpoint.chain != chain_metadata.identity:
                raise SmartProviderConfigurationError(f"Endpoint {get_endpoint_name(endpoint)} serves {endpoint.chain}, provider serves {chain_metadata.identity}")

        urls = [e.url for e in endpoints]
        for endpoint in endpoints:
            if urls.count(endpoint.url) > 1:
                raise SmartProviderConfigurationError(f"Endpoint {get_endpoint_name(endpoint)} appears twice")

        # Stable sort keeps declaration order for equal priorities
        self._endpoints = tuple(sorted(endpoints, key=lambda e: e.priority))

        if isinstance(rpc_consensus_type, ConsensusStrategy):
            assert quorum_threshold is None, "Give quorum_threshold as a part of ConsensusStrategy"
            self.strategy = rpc_consensus_type
        elif rpc_consensus_type == RpcConsensusType.quorum:
            self.strategy = ConsensusStrategy.quorum(quorum_threshold)
        else:
            if quorum_threshold is not None:
                raise SmartProviderConfigurationError(f"quorum_threshold given for {rpc_consensus_type.value} consensus")
            self.strategy = ConsensusStrategy(rpc_consensus_type)

        if self.strategy.threshold is not None and self.strategy.threshold > len(self._endpoints):
            raise SmartProviderConfigurationError(f"Quorum threshold {self.strategy.threshold} is larger than the number of endpoints {len(self._endpoints)}")

        self.retry_policy = self.strategy.create_retry_policy(retry_options, switchover_noisiness)
        self.request_timeout = request_timeout
        self.health_check_timeout = health_check_timeout
        self.switchover_noisiness = switchover_noisiness

        if pin_block_tags is None:
            pin_block_tags = self.strategy.type == RpcConsensusType.quorum
        self.pin_block_tags = pin_block_tags

        self.registry = registry or MethodSupportRegistry()
        self.paginator = RangePaginator.from_chain_metadata(chain_metadata)

        #: Transports we created and must close
        self.owned_transports = []

        if transport is None:
            transport = JsonRpcTransport()
            self.owned_transports.append(transport)

        if explorer_transport is None:
            explorer_transport = EtherscanTransport()
            self.owned_transports.append(explorer_transport)

        self.transport = transport
        self.explorer_transport = explorer_transport

        self.clients: dict[Endpoint, EndpointClient] = {}
        for endpoint in self._endpoints:
            endpoint_transport = explorer_transport if endpoint.kind == EndpointKind.block_explorer else transport
            self.clients[endpoint] = EndpointClient(endpoint, endpoint_transport, self.registry)

        self.request_ids = itertools.count(1)

        logger.info("Created %s", self)

    def __repr__(self):
        names = ", ".join(get_endpoint_name(e) for e in self._endpoints)
        return f"<SmartProvider {self.chain.name} {self.strategy} endpoints: {names}>"

    @classmethod
    def from_chain_metadata(cls, chain_metadata: ChainMetadata, **kwargs) -> "SmartProvider":
        """Create a provider using the default endpoints of a chain."""
        return cls(chain_metadata, endpoint_urls=None, **kwargs)

    @classmethod
    def from_rpc_url(cls, json_rpc_url: str, chain_metadata: ChainMetadata, **kwargs) -> "SmartProvider":
        """Create a provider from a space separated endpoint configuration line.

        See :py:func:`eth_smart_provider.provider.multi_provider.create_smart_provider`.
        """
        from eth_smart_provider.provider.multi_provider import create_smart_provider

        return create_smart_provider(json_rpc_url, chain_metadata, **kwargs)

    @property
    def endpoints(self) -> tuple[Endpoint, ...]:
        """All endpoints in priority order."""
        return self._endpoints

    @property
    def chain(self) -> ChainIdentity:
        return self.chain_metadata.identity

    @property
    def supported_methods(self) -> list[ProviderMethod]:
        """Methods at least one endpoint still supports."""
        return self.registry.get_supported_methods(self._endpoints)

    def get_eligible_clients(self, method: ProviderMethod) -> list[EndpointClient]:
        """Endpoints worth asking for a method, in priority order."""
        return [self.clients[e] for e in self._endpoints if self.registry.supports(e, method)]

    async def decide(self, request: RpcRequest) -> ConsensusDecision:
        """Run one logical request through the consensus strategy.

        :raise ConsensusFailed:
            No acceptable answer
        """
        clients = self.get_eligible_clients(request.method)
        logger.debug("Dispatching %s to %d endpoints with %s", request, len(clients), self.strategy)
        return await self.strategy.decide(clients, request, self.retry_policy, self.request_timeout)

    async def perform(self, method: ProviderMethod | str, params: Iterable[Any] = ()) -> Any:
        """Perform a raw call and return the raw JSON-RPC result.

        Params must be already encoded for the wire.
        ``eth_getLogs`` is paginated.

        :param method:
            Provider method, or JSON-RPC method name

        :raise ConsensusFailed:
            No acceptable answer

        :raise PaginationFailed:
            A window of a log query failed
        """
        if isinstance(method, str):
            if method not in PROVIDER_METHODS:
                raise ValueError(f"Unknown JSON-RPC method {method}")
            method = PROVIDER_METHODS[method]

        params = tuple(params or ())

        if method == ProviderMethod.get_logs and params:
            return await self.get_logs(params[0])

        try:
            decision = await self.decide(RpcRequest(method, params))
        except ConsensusFailed as e:
            if method == ProviderMethod.get_block and _is_block_missing_everywhere(e):
                logger.info("Block %s not found on any endpoint", params[0])
                return None
            raise
        return decision.value

    async def _get_block_param(self, block_identifier: BlockIdentifier) -> str:
        if self.pin_block_tags and block_identifier == "latest":
            return encode_quantity(await self.get_block_number())
        return encode_block_identifier(block_identifier)

    async def get_block(self, block_identifier: BlockIdentifier = "latest", full_transactions=False) -> Optional[dict]:
        """Get a block by number, tag or hash.

        Nodes lagging behind the chain tip answer ``null`` for blocks they
        have not seen yet, so ``null`` is retried like missing state.
        Only when every endpoint still answers ``null`` after its retries
        the block is considered not to exist.

        :return:
            Raw JSON-RPC block, or ``None`` if the block does not exist
        """
        block_param = await self._get_block_param(block_identifier)
        return await self.perform(ProviderMethod.get_block, (block_param, full_transactions))

    async def get_block_number(self) -> int:
        return convert_jsonrpc_value_to_int(await self.perform(ProviderMethod.get_block_number))

    async def get_gas_price(self) -> int:
        return convert_jsonrpc_value_to_int(await self.perform(ProviderMethod.get_gas_price))

    async def get_balance(self, address: str, block_identifier: BlockIdentifier = "latest") -> int:
        block_param = await self._get_block_param(block_identifier)
        return convert_jsonrpc_value_to_int(await self.perform(ProviderMethod.get_balance, (address, block_param)))

    async def get_code(self, address: str, block_identifier: BlockIdentifier = "latest") -> HexBytes:
        block_param = await self._get_block_param(block_identifier)
        return decode_data(await self.perform(ProviderMethod.get_code, (address, block_param)))

    async def get_storage_at(self, address: str, position: int, block_identifier: BlockIdentifier = "latest") -> HexBytes:
        block_param = await self._get_block_param(block_identifier)
        return decode_data(await self.perform(ProviderMethod.get_storage_at, (address, encode_quantity(position), block_param)))

    async def get_transaction_count(self, address: str, block_identifier: BlockIdentifier = "latest") -> int:
        block_param = await self._get_block_param(block_identifier)
        return convert_jsonrpc_value_to_int(await self.perform(ProviderMethod.get_transaction_count, (address, block_param)))

    async def get_transaction(self, tx_hash: HexBytes | str) -> Optional[dict]:
        """
        :return:
            Raw JSON-RPC transaction, or ``None`` if not found
        """
        return await self.perform(ProviderMethod.get_transaction, (encode_data(tx_hash),))

    async def get_transaction_receipt(self, tx_hash: HexBytes | str) -> Optional[dict]:
        """
        :return:
            Raw JSON-RPC receipt, or ``None`` if the transaction is not mined yet
        """
        return await self.perform(ProviderMethod.get_transaction_receipt, (encode_data(tx_hash),))

    async def estimate_gas(self, transaction: dict, block_identifier: Optional[BlockIdentifier] = None) -> int:
        params = (encode_transaction(transaction),)
        if block_identifier is not None:
            params += (await self._get_block_param(block_identifier),)
        return convert_jsonrpc_value_to_int(await self.perform(ProviderMethod.estimate_gas, params))

    async def call(self, transaction: dict, block_identifier: BlockIdentifier = "latest") -> HexBytes:
        block_param = await self._get_block_param(block_identifier)
        return decode_data(await self.perform(ProviderMethod.call, (encode_transaction(transaction), block_param)))

    async def send_transaction(self, raw_transaction: bytes | str) -> HexBytes:
        """Broadcast a signed transaction.

        Callers must serialise nonce-sensitive sends themselves.

        :return:
            Transaction hash
        """
        return decode_data(await self.perform(ProviderMethod.send_transaction, (encode_data(raw_transaction),)))

    async def get_chain_id(self) -> int:
        return convert_jsonrpc_value_to_int(await self.perform(ProviderMethod.get_chain_id))

    async def resolve_block_number(self, block_identifier: BlockIdentifier | None, default: BlockIdentifier) -> int:
        """Resolve a block tag to a concrete block number.

        Each tag resolution is a consensus-governed request of its own.

        :param default:
            Used when ``block_identifier`` is missing
        """
        if block_identifier is None:
            block_identifier = default

        if type(block_identifier) == int:
            return block_identifier

        if block_identifier in TIP_TAGS:
            return await self.get_block_number()

        if block_identifier == "earliest":
            return 0

        if block_identifier in ("safe", "finalized"):
            block = await self.get_block(block_identifier)
            if block is None:
                raise SmartProviderError(f"Chain {self.chain.name} has no {block_identifier} block")
            return convert_jsonrpc_value_to_int(block["number"])

        return convert_jsonrpc_value_to_int(block_identifier)

    async def get_logs(self, filter_params: dict) -> list[dict]:
        """Get event logs, splitting long block ranges into windows.

        - Missing ``fromBlock`` means the first block the chain has history for

        - Missing ``toBlock`` means ``latest``

        - Filters by ``blockHash`` are not split

        - ``fromBlock`` past a ``toBlock`` tag gives no logs, as polling
          loops ask for blocks not produced yet

        Windows are fetched in ascending order.
        Either all windows succeed, or the call fails.

        :return:
            Raw JSON-RPC log objects

        :raise PaginationFailed:
            A window failed, the reason is in ``__cause__``

        :raise InvalidBlockRange:
            ``fromBlock`` is after an explicit ``toBlock``
        """
        assert isinstance(filter_params, dict), f"Expected filter dict, got {type(filter_params)}"

        filter_params = encode_filter_params(filter_params)

        if "blockHash" in filter_params or not self.paginator.is_enabled():
            decision = await self.decide(RpcRequest(ProviderMethod.get_logs, (filter_params,)))
            return decision.value

        to_block_param = filter_params.get("toBlock")
        from_block = await self.resolve_block_number(filter_params.get("fromBlock"), self.paginator.min_block_number)
        to_block = await self.resolve_block_number(to_block_param, "latest")

        if from_block > to_block:
            if to_block_param is None or to_block_param in BLOCK_TAGS:
                # Polling ahead of the chain tip, no new blocks yet
                logger.debug("fromBlock %d is ahead of %s block %d, no logs", from_block, to_block_param or "latest", to_block)
                return []
            raise InvalidBlockRange(f"fromBlock {from_block:,} is after toBlock {to_block:,}")

        windows = self.paginator.split(from_block, to_block)

        if len(windows) > 1:
            logger.debug("Splitting logs query %d - %d to %d windows", from_block, to_block, len(windows))

        results = []
        for window in windows:
            window_filter = {**filter_params, "fromBlock": encode_quantity(window.from_block), "toBlock": encode_quantity(window.to_block)}
            try:
                decision = await self.decide(RpcRequest(ProviderMethod.get_logs, (window_filter,)))
            except ConsensusFailed as e:
                raise PaginationFailed(f"Fetching logs failed for {window}: {e}", window) from e
            results.append(decision.value)

        return self.paginator.merge(results)

    async def get_health_report(self) -> dict[Endpoint, RpcOutcome]:
        """Ask every endpoint for the block number, concurrently, once.

        Bypasses the consensus strategy and retries.
        Endpoints disabled for serving a wrong chain are not asked.
        """
        request = RpcRequest(ProviderMethod.get_block_number)
        clients = self.get_eligible_clients(ProviderMethod.get_block_number)
        outcomes = await probe_endpoints(clients, request, self.health_check_timeout)
        return {o.endpoint: o for o in outcomes}

    async def is_healthy(self) -> bool:
        """Can any endpoint answer at the moment."""
        report = await self.get_health_report()
        healthy = any(o.success for o in report.values())
        if not healthy:
            logger.warning("All endpoints unhealthy for %s: %s", self.chain.name, list(report.values()))
        return healthy

    async def verify_chain_id(self) -> list[Endpoint]:
        """Check every endpoint serves the chain we expect.

        Endpoints serving a wrong chain are disabled for the lifetime of the registry.

        :return:
            Disabled endpoints
        """
        request = RpcRequest(ProviderMethod.get_chain_id)
        clients = self.get_eligible_clients(ProviderMethod.get_chain_id)
        outcomes = await probe_endpoints(clients, request, self.health_check_timeout)

        mismatched = []
        for outcome in outcomes:
            if not outcome.success and outcome.error.cause == FailureCause.chain_mismatch:
                logger.error("Disabling endpoint %s: %s", get_endpoint_name(outcome.endpoint), outcome.error)
                self.registry.disable_endpoint(outcome.endpoint)
                mismatched.append(outcome.endpoint)
        return mismatched

    def _make_error_response(self, request_id: int, error: SmartProviderError) -> RPCResponse:
        # Surface the node's own error, so that web3.py can decode revert reasons
        payload = {"code": SMART_PROVIDER_ERROR_CODE, "message": str(error)}
        consensus_failure = error if isinstance(error, ConsensusFailed) else error.__cause__
        if isinstance(consensus_failure, ConsensusFailed):
            for outcome in consensus_failure.outcomes:
                if outcome.success:
                    continue
                rpc_error = outcome.error.rpc_error
                if outcome.error.cause == FailureCause.rejected and isinstance(rpc_error, dict) and "code" in rpc_error:
                    payload = rpc_error
                    break
        return cast(RPCResponse, {"jsonrpc": "2.0", "id": request_id, "error": payload})

    async def make_request(self, method: RPCEndpoint, params: Any) -> RPCResponse:
        """web3.py entry point.

        Failures are returned as JSON-RPC error responses.
        """
        request_id = next(self.request_ids)

        if method not in PROVIDER_METHODS:
            return cast(RPCResponse, {"jsonrpc": "2.0", "id": request_id, "error": {"code": METHOD_NOT_FOUND_ERROR_CODE, "message": f"Method {method} not supported by smart provider"}})

        try:
            result = await self.perform(method, params)
        except SmartProviderError as e:
            logger.info("Smart provider call %s failed: %s", method, e)
            return self._make_error_response(request_id, e)

        return cast(RPCResponse, {"jsonrpc": "2.0", "id": request_id, "result": result})

    async def is_connected(self, show_traceback: bool = False) -> bool:
        return await self.is_healthy()

    async def close(self):
        """Close the transports this provider created."""
        for transport in self.owned_transports:
            await transport.close()

    async def disconnect(self) -> None:
        await self.close()
