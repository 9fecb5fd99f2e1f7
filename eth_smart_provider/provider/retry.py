"""Bounded exponential backoff for endpoint attempts.

Only transient failures are retried,
see :py:attr:`eth_smart_provider.provider.errors.FailureCause.is_transient`.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable

from eth_smart_provider.provider.named import get_endpoint_name
from eth_smart_provider.provider.outcome import RpcOutcome

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ProviderRetryOptions:
    """User facing retry configuration."""

    #: How many retries after the first attempt
    max_retries: int = 6

    #: Delay before the first retry, doubled for each following retry
    base_retry_delay_ms: int = 50

    def __post_init__(self):
        assert type(self.max_retries) == int and self.max_retries >= 0, f"Bad max_retries {self.max_retries}"
        assert type(self.base_retry_delay_ms) == int and self.base_retry_delay_ms >= 0, f"Bad base_retry_delay_ms {self.base_retry_delay_ms}"


class RetryPolicy:
    """Retry an endpoint attempt with exponentially increasing sleep.

    - Up to ``max_retries + 1`` attempts

    - Sleep ``base_retry_delay_ms * 2**n`` before retry ``n``, plus random jitter of up to one base delay

    - Permanent failures return immediately
    """

    def __init__(
        self,
        max_retries: int = 6,
        base_retry_delay_ms: int = 50,
        jitter: bool = True,
        switchover_noisiness=logging.WARNING,
    ):
        """
        :param max_retries:
            How many retries we attempt before giving up.

            Zero means a single attempt.

        :param base_retry_delay_ms:
            Milliseconds before the first retry.

        :param jitter:
            Randomise sleeps a bit, so that parallel calls do not retry in lockstep.

        :param switchover_noisiness:
            How loud we are about retries.
        """
        assert max_retries >= 0, f"Bad max_retries {max_retries}"
        assert base_retry_delay_ms >= 0, f"Bad base_retry_delay_ms {base_retry_delay_ms}"
        self.max_retries = max_retries
        self.base_retry_delay_ms = base_retry_delay_ms
        self.jitter = jitter
        self.switchover_noisiness = switchover_noisiness

    def __repr__(self):
        return f"<RetryPolicy max_retries:{self.max_retries} base_delay:{self.base_retry_delay_ms}ms>"

    @classmethod
    def from_options(cls, options: ProviderRetryOptions, switchover_noisiness=logging.WARNING) -> "RetryPolicy":
        return cls(options.max_retries, options.base_retry_delay_ms, switchover_noisiness=switchover_noisiness)

    @classmethod
    def disabled(cls) -> "RetryPolicy":
        """Single attempt, no retries."""
        return cls(max_retries=0, base_retry_delay_ms=0)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def get_delay(self, retry: int) -> float:
        """Seconds to sleep before retry number ``retry`` (0-based)."""
        delay_ms = self.base_retry_delay_ms * (2**retry)
        if self.jitter and self.base_retry_delay_ms:
            delay_ms += random.uniform(0, self.base_retry_delay_ms)
        return delay_ms / 1000

    async def run(self, operation: Callable[[], Awaitable[RpcOutcome]]) -> RpcOutcome:
        """Run an attempt until it succeeds, fails permanently, or we run out of attempts.

        :param operation:
            Coroutine factory making one attempt, usually
            a bound :py:meth:`eth_smart_provider.provider.endpoint.EndpointClient.request`

        :return:
            The last outcome, with :py:attr:`RpcOutcome.attempts` filled in
        """
        for attempt in range(self.max_attempts):
            outcome = await operation()

            if outcome.success:
                return outcome.with_attempts(attempt + 1)

            if not outcome.error.cause.is_transient:
                return outcome.with_attempts(attempt + 1)

            if attempt == self.max_attempts - 1:
                # Out of retries
                return outcome.with_attempts(attempt + 1)

            delay = self.get_delay(attempt)
            logger.log(
                self.switchover_noisiness,
                "Encountered JSON-RPC retryable error %s\nWhen calling %s at %s\nRetrying in %f seconds, retry #%d / %d",
                outcome.error,
                outcome.request,
                get_endpoint_name(outcome.endpoint),
                delay,
                attempt + 1,
                self.max_retries,
            )
            await asyncio.sleep(delay)

        raise AssertionError("Should never be reached")
