"""Turn per-endpoint outcomes into one authoritative answer.

Three strategies, selected once when the provider is created:

- :py:attr:`RpcConsensusType.single`: ask the preferred endpoint, with retries

- :py:attr:`RpcConsensusType.fallback`: ask endpoints one by one in priority order,
  with retries, first success wins

- :py:attr:`RpcConsensusType.quorum`: ask all endpoints concurrently, no retries,
  accept the value enough endpoints agree on

Each logical call goes Dispatching → Collecting → Deciding → Accepted or Failed.
Failure is raised as :py:class:`eth_smart_provider.provider.errors.ConsensusFailed`
with every outcome attached.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from functools import partial
from typing import Optional, Sequence

import ujson

from eth_smart_provider.provider.endpoint import EndpointClient
from eth_smart_provider.provider.errors import ConsensusFailed
from eth_smart_provider.provider.methods import RpcRequest
from eth_smart_provider.provider.named import get_endpoint_name
from eth_smart_provider.provider.outcome import ConsensusDecision, RpcOutcome
from eth_smart_provider.provider.retry import ProviderRetryOptions, RetryPolicy

logger = logging.getLogger(__name__)


class RpcConsensusType(enum.Enum):
    """How answers from multiple endpoints are reconciled."""

    #: Use one endpoint
    single = "single"

    #: Require N-of-M endpoints to agree
    quorum = "quorum"

    #: Try endpoints in priority order until one succeeds
    fallback = "fallback"


def get_value_key(value) -> str:
    """Canonical form of a JSON-RPC result for equality grouping.

    Results are JSON values, so key order of objects is the only thing
    that may differ between equal answers.
    """
    return ujson.dumps(value, sort_keys=True)


async def probe_endpoints(clients: Sequence[EndpointClient], request: RpcRequest, timeout: float) -> list[RpcOutcome]:
    """Ask every endpoint once, concurrently.

    Used for health checks and chain id verification.

    :return:
        Outcomes in the order of ``clients``
    """
    tasks = [asyncio.ensure_future(c.request(request, timeout)) for c in clients]
    try:
        return list(await asyncio.gather(*tasks))
    finally:
        for task in tasks:
            task.cancel()


@dataclass(slots=True, frozen=True)
class ConsensusStrategy:
    """Consensus policy: the type tag and its parameters.

    Example:

    .. code-block:: python

        strategy = ConsensusStrategy.quorum(threshold=2)
        decision = await strategy.decide(clients, request, RetryPolicy.disabled(), timeout=10)
    """

    #: Which strategy
    type: RpcConsensusType = RpcConsensusType.single

    #: Quorum only: how many endpoints must agree.
    #:
    #: Default to a strict majority of the eligible endpoints.
    threshold: Optional[int] = None

    #: Quorum only: wait for every endpoint before deciding.
    #:
    #: If ``False``, decide as soon as the outcome cannot change anymore
    #: and cancel the stragglers.
    #: Cancelled endpoints leave no outcome, so a decision or a failure
    #: then carries fewer outcomes than endpoints asked.
    wait_for_all: bool = True

    def __post_init__(self):
        assert isinstance(self.type, RpcConsensusType), f"Got {self.type}"
        if self.threshold is not None:
            assert self.type == RpcConsensusType.quorum, "Threshold only makes sense for quorum"
            assert type(self.threshold) == int and self.threshold >= 1, f"Bad threshold {self.threshold}"

    def __repr__(self):
        if self.type == RpcConsensusType.quorum:
            return f"<ConsensusStrategy quorum threshold:{self.threshold or 'majority'}>"
        return f"<ConsensusStrategy {self.type.value}>"

    @classmethod
    def single(cls) -> "ConsensusStrategy":
        return cls(RpcConsensusType.single)

    @classmethod
    def fallback(cls) -> "ConsensusStrategy":
        return cls(RpcConsensusType.fallback)

    @classmethod
    def quorum(cls, threshold: Optional[int] = None, wait_for_all=True) -> "ConsensusStrategy":
        return cls(RpcConsensusType.quorum, threshold, wait_for_all)

    def get_threshold(self, endpoint_count: int) -> int:
        """How many agreeing endpoints we need."""
        if self.threshold is not None:
            return self.threshold
        return endpoint_count // 2 + 1

    def create_retry_policy(self, options: ProviderRetryOptions, switchover_noisiness=logging.WARNING) -> RetryPolicy:
        """Get the retry policy matching this strategy.

        Quorum does not retry: it already tolerates individual endpoint failures,
        and retrying would distort latency comparison across endpoints.
        """
        if self.type == RpcConsensusType.quorum:
            return RetryPolicy.disabled()
        return RetryPolicy.from_options(options, switchover_noisiness=switchover_noisiness)

    async def decide(
        self,
        clients: Sequence[EndpointClient],
        request: RpcRequest,
        retry_policy: RetryPolicy,
        timeout: float,
    ) -> ConsensusDecision:
        """Dispatch the request and reconcile the answers.

        :param clients:
            Eligible endpoints in priority order

        :param request:
            What to ask

        :param retry_policy:
            How to retry each endpoint

        :param timeout:
            Seconds per endpoint attempt

        :raise ConsensusFailed:
            No acceptable answer
        """
        if len(clients) == 0:
            raise ConsensusFailed(f"No endpoint supports {request.method.value}", request, [])

        if self.type == RpcConsensusType.single:
            return await self._decide_single(clients, request, retry_policy, timeout)
        elif self.type == RpcConsensusType.fallback:
            return await self._decide_fallback(clients, request, retry_policy, timeout)
        elif self.type == RpcConsensusType.quorum:
            return await self._decide_quorum(clients, request, retry_policy, timeout)
        raise AssertionError(f"Unknown consensus type {self.type}")

    async def _decide_single(self, clients, request, retry_policy, timeout) -> ConsensusDecision:
        client = clients[0]
        outcome = await retry_policy.run(partial(client.request, request, timeout))
        if outcome.success:
            return ConsensusDecision(outcome.result, (client.endpoint,), (outcome,))
        raise ConsensusFailed(f"Endpoint {get_endpoint_name(client.endpoint)} failed {request} after {outcome.attempts} attempts: {outcome.error}", request, [outcome])

    async def _decide_fallback(self, clients, request, retry_policy, timeout) -> ConsensusDecision:
        outcomes = []
        for idx, client in enumerate(clients):
            outcome = await retry_policy.run(partial(client.request, request, timeout))
            outcomes.append(outcome)

            if outcome.success:
                return ConsensusDecision(outcome.result, (client.endpoint,), tuple(outcomes))

            if idx < len(clients) - 1:
                logger.log(
                    retry_policy.switchover_noisiness,
                    "Switched RPC providers %s -> %s, cause: %s",
                    get_endpoint_name(client.endpoint),
                    get_endpoint_name(clients[idx + 1].endpoint),
                    outcome.error,
                )

        causes = ", ".join(o.error.cause.value for o in outcomes)
        raise ConsensusFailed(f"All {len(clients)} endpoints failed {request}: {causes}", request, outcomes)

    async def _decide_quorum(self, clients, request, retry_policy, timeout) -> ConsensusDecision:
        threshold = self.get_threshold(len(clients))
        order = {c.endpoint: idx for idx, c in enumerate(clients)}

        # Dispatching
        pending = {asyncio.ensure_future(retry_policy.run(partial(c.request, request, timeout))) for c in clients}

        outcomes: list[RpcOutcome] = []
        groups: dict[str, list[RpcOutcome]] = {}

        # Collecting
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    outcome = task.result()
                    outcomes.append(outcome)
                    if outcome.success:
                        groups.setdefault(get_value_key(outcome.result), []).append(outcome)

                if not self.wait_for_all and _is_settled(groups, len(pending), threshold):
                    logger.debug("Quorum settled for %s, cancelling %d pending requests", request, len(pending))
                    break
        finally:
            # Do not leak work if we are done early, or the caller gave up
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        # Deciding
        outcomes.sort(key=lambda o: order[o.endpoint])

        if not groups:
            causes = ", ".join(o.error.cause.value for o in outcomes)
            logger.info("Quorum failed for %s, no endpoint returned a value: %s", request, causes)
            raise ConsensusFailed(f"Quorum failed for {request}: no endpoint returned a value: {causes}", request, outcomes)

        ranked = sorted(groups.values(), key=len, reverse=True)
        best = ranked[0]

        if len(best) < threshold:
            logger.info("Quorum not reached for %s, best agreement %d / %d, %d different answers", request, len(best), threshold, len(groups))
            raise ConsensusFailed(
                f"Quorum not reached for {request}: best agreement {len(best)}, threshold {threshold}, {len(groups)} different answers from {len(outcomes)} endpoints",
                request,
                outcomes,
            )

        if len(ranked) > 1 and len(ranked[1]) == len(best):
            logger.info("Quorum ambiguous for %s, %d answers tied at %d endpoints", request, sum(1 for g in ranked if len(g) == len(best)), len(best))
            raise ConsensusFailed(f"Quorum ambiguous for {request}: multiple answers with {len(best)} endpoints each", request, outcomes)

        if len(groups) > 1:
            dissenters = [get_endpoint_name(o.endpoint) for g in ranked[1:] for o in g]
            logger.info("Quorum reached for %s with %d / %d, dissenting endpoints: %s", request, len(best), len(outcomes), dissenters)

        best.sort(key=lambda o: order[o.endpoint])
        return ConsensusDecision(best[0].result, tuple(o.endpoint for o in best), tuple(outcomes))


def _is_settled(groups: dict[str, list], pending_count: int, threshold: int) -> bool:
    """Can the pending answers still change the decision."""
    sizes = sorted((len(g) for g in groups.values()), reverse=True)
    leader = sizes[0] if sizes else 0
    runner_up = sizes[1] if len(sizes) > 1 else 0

    # Nobody can reach the threshold anymore
    if leader + pending_count < threshold:
        return True

    # The leader is over the threshold and cannot be tied
    return leader >= threshold and leader > runner_up + pending_count
