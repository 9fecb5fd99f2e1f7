"""Smart provider fixtures.

- Endpoints are simulated with :py:class:`ScriptedTransport`, no network needed
"""

import pytest

from eth_smart_provider.chain import ChainIdentity, ChainMetadata
from eth_smart_provider.provider.endpoint import Endpoint, EndpointClient
from eth_smart_provider.provider.registry import MethodSupportRegistry
from eth_smart_provider.provider.retry import ProviderRetryOptions
from eth_smart_provider.testing import ScriptedTransport

URL_A = "https://rpc-a.example.com"
URL_B = "https://rpc-b.example.com/v2/secret-api-key"
URL_C = "https://rpc-c.example.com"
URL_D = "https://rpc-d.example.com"


@pytest.fixture()
def chain_metadata() -> ChainMetadata:
    """Local dev chain with a small log range so that pagination kicks in."""
    return ChainMetadata(chain_id=31337, name="anvil", max_block_range=100)


@pytest.fixture()
def identity(chain_metadata) -> ChainIdentity:
    return chain_metadata.identity


@pytest.fixture()
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture()
def registry() -> MethodSupportRegistry:
    return MethodSupportRegistry()


@pytest.fixture()
def fast_retries() -> ProviderRetryOptions:
    """Retry without sleeping."""
    return ProviderRetryOptions(max_retries=2, base_retry_delay_ms=0)


@pytest.fixture()
def endpoints(identity) -> list[Endpoint]:
    return [Endpoint(url, identity, priority=idx) for idx, url in enumerate([URL_A, URL_B, URL_C, URL_D])]


@pytest.fixture()
def clients(endpoints, transport, registry) -> list[EndpointClient]:
    return [EndpointClient(e, transport, registry) for e in endpoints]
