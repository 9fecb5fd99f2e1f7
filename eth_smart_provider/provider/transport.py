"""HTTP JSON-RPC transport.

The smart provider does not care how bytes move.
Anything implementing :py:class:`Transport` can be plugged in:
the default is :py:class:`JsonRpcTransport` over :py:mod:`aiohttp`,
see also :py:class:`eth_smart_provider.provider.explorer.EtherscanTransport`
and :py:class:`eth_smart_provider.testing.ScriptedTransport`.

JSON decoding uses ujson for speed.
"""

import itertools
import logging
from typing import Any, Protocol, Sequence, cast

import aiohttp
import ujson
from web3.types import RPCEndpoint, RPCResponse

from eth_smart_provider.utils import get_url_domain

logger = logging.getLogger(__name__)


class MalformedResponseError(Exception):
    """The endpoint replied with something that is not a JSON-RPC response."""


class HttpStatusError(Exception):
    """The endpoint replied with a HTTP error status.

    We keep the response headers and body around for debugging,
    as many RPC providers explain their throttling there.
    """

    def __init__(self, message: str, status: int, headers: dict | None = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.headers = headers or {}
        self.body = body


class Transport(Protocol):
    """Perform one JSON-RPC call against one endpoint URL."""

    async def send(self, endpoint_url: str, method: RPCEndpoint, params: Sequence[Any], timeout: float) -> RPCResponse:
        """Send one request.

        Must not retry.

        :return:
            Decoded JSON-RPC response with either ``result`` or ``error``

        :raise asyncio.TimeoutError:
            Did not get a reply in ``timeout`` seconds

        :raise HttpStatusError:
            HTTP error

        :raise MalformedResponseError:
            The body was not JSON-RPC

        :raise aiohttp.ClientError:
            Network level problem
        """

    async def close(self):
        """Release network resources."""


def decode_rpc_response(raw_response: bytes | str) -> RPCResponse:
    """Uses ujson for speeding up JSON decoding."""
    try:
        decoded = ujson.loads(raw_response)
    except ValueError as e:
        raise MalformedResponseError(f"Could not decode JSON-RPC response: {raw_response[0:200]!r}") from e

    if not isinstance(decoded, dict):
        raise MalformedResponseError(f"JSON-RPC response is not an object: {raw_response[0:200]!r}")

    return cast(RPCResponse, decoded)


class JsonRpcTransport:
    """JSON-RPC over HTTP POST.

    - One :py:class:`aiohttp.ClientSession` shared by all endpoints,
      created lazily within the running event loop

    - Call :py:meth:`close` when done
    """

    def __init__(self, session: aiohttp.ClientSession | None = None, headers: dict | None = None):
        """
        :param session:
            Use specific HTTP session.

            If not given, create one on the first request and
            close it in :py:meth:`close`.

        :param headers:
            Extra HTTP headers, e.g. for authentication.
        """
        self.session = session
        self.owns_session = session is None
        self.headers = {"Content-Type": "application/json"}
        if headers:
            self.headers.update(headers)
        self.request_ids = itertools.count(1)

    def get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self.owns_session = True
        return self.session

    async def send(self, endpoint_url: str, method: RPCEndpoint, params: Sequence[Any], timeout: float) -> RPCResponse:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self.request_ids),
            "method": method,
            "params": list(params),
        }

        session = self.get_session()

        async with session.post(
            endpoint_url,
            data=ujson.dumps(payload),
            headers=self.headers,
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

        return decode_rpc_response(body)

    async def close(self):
        if self.owns_session and self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None
