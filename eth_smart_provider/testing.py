"""Scripted endpoints for tests.

:py:class:`ScriptedTransport` plays back canned JSON-RPC responses
per endpoint URL and method, so the smart provider can be tested
without network.

Example:

.. code-block:: python

    transport = ScriptedTransport()
    transport.script("https://a", "eth_blockNumber", make_rpc_result("0x10"))
    transport.script("https://b", "eth_blockNumber", make_rpc_error(-32005, "rate limit"), make_rpc_result("0x10"))
    transport.script("https://c", "eth_blockNumber", make_rpc_result("0x10"), delay=60)
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import aiohttp
from web3.types import RPCEndpoint, RPCResponse


def make_rpc_result(value: Any) -> dict:
    return {"result": value}


def make_rpc_error(code: int, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


@dataclass
class ScriptedCall:
    """One call the transport received."""

    endpoint_url: str
    method: str
    params: tuple

    #: The caller gave up while we were sleeping
    cancelled: bool = False

    #: We are done with this call, one way or another
    finished: bool = False


@dataclass
class Script:
    """Responses for one endpoint and method, played in order.

    The last response repeats forever.

    Each response is a JSON-RPC response dict, an exception to raise,
    or a callable ``(method, params) -> response``.
    """

    responses: list
    delay: float = 0.0
    position: int = 0

    def next(self) -> Any:
        response = self.responses[min(self.position, len(self.responses) - 1)]
        self.position += 1
        return response


@dataclass
class ScriptedTransport:
    """Fake :py:class:`eth_smart_provider.provider.transport.Transport`.

    Unscripted endpoints behave like unreachable hosts.
    """

    scripts: dict[tuple[str, Optional[str]], Script] = field(default_factory=dict)

    calls: list[ScriptedCall] = field(default_factory=list)

    closed: bool = False

    def script(self, endpoint_url: str, method: Optional[str], *responses, delay: float = 0.0):
        """Set what an endpoint answers.

        :param method:
            JSON-RPC method name, or ``None`` for any method not scripted separately

        :param delay:
            Seconds to wait before each answer
        """
        assert len(responses) > 0, "Give at least one response"
        self.scripts[(endpoint_url, method)] = Script(list(responses), delay)

    def get_calls(self, endpoint_url: Optional[str] = None, method: Optional[str] = None) -> list[ScriptedCall]:
        return [c for c in self.calls if (endpoint_url is None or c.endpoint_url == endpoint_url) and (method is None or c.method == method)]

    def get_in_flight(self) -> list[ScriptedCall]:
        return [c for c in self.calls if not c.finished]

    async def send(self, endpoint_url: str, method: RPCEndpoint, params: Sequence[Any], timeout: float) -> RPCResponse:
        call = ScriptedCall(endpoint_url, method, tuple(params))
        self.calls.append(call)

        try:
            script = self.scripts.get((endpoint_url, method)) or self.scripts.get((endpoint_url, None))
            if script is None:
                raise aiohttp.ClientConnectionError(f"Nothing scripted for {endpoint_url} {method}")

            response = script.next()

            if script.delay:
                await asyncio.sleep(script.delay)

            if callable(response):
                response = response(method, params)

            if isinstance(response, BaseException):
                raise response

            return {"jsonrpc": "2.0", "id": len(self.calls), **response}
        except asyncio.CancelledError:
            call.cancelled = True
            raise
        finally:
            call.finished = True

    async def close(self):
        self.closed = True
