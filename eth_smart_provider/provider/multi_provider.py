"""Configuring a smart provider from a line of URLs.

The configuration line is a whitespace separated list of URLs (spaces, newlines, etc.)
using mini configuration language, e.g. read from an environment variable.

- Endpoints are in priority order

- If any of the protocols have ``explorer+`` prefix like ``explorer+https`` then this
  endpoint is an Etherscan-compatible block explorer API
"""

import logging
from typing import Optional

from urllib3.util import Url, parse_url

from eth_smart_provider.chain import ChainMetadata, get_chain_metadata
from eth_smart_provider.provider.endpoint import Endpoint, EndpointKind
from eth_smart_provider.provider.errors import SmartProviderConfigurationError
from eth_smart_provider.provider.smart_provider import SmartProvider

logger = logging.getLogger(__name__)


#: URL scheme prefix marking block explorer endpoints
EXPLORER_PREFIX = "explorer+"


def parse_configuration_line(configuration_line: str, chain_metadata: ChainMetadata, hint: Optional[str] = "") -> list[Endpoint]:
    """Parse the endpoints out of a configuration line.

    :raise SmartProviderConfigurationError:
        Bad URLs, duplicates or no endpoints at all
    """
    assert configuration_line is not None, f"parse_configuration_line(): JSON-RPC URL configuration line is missing, hint {hint}"
    assert type(configuration_line) == str, f"parse_configuration_line(): JSON-RPC URL configuration line is not a string, got {type(configuration_line)}"

    items = configuration_line.split()

    urls: list[Url] = []
    for parsable in items:
        parsable = parsable.strip()

        try:
            url = parse_url(parsable)
        except Exception as e:
            raise SmartProviderConfigurationError(f"Could not parse JSON-RPC configuration URL: {parsable}. Hint is {hint}.") from e

        if not url.scheme or not url.host:
            raise SmartProviderConfigurationError(f"Bad URL: {parsable}. Hint is {hint}.")

        if url in urls:
            raise SmartProviderConfigurationError(f"Entry appears twice: {url}. Hint is {hint}.")

        urls.append(url)

    if len(urls) == 0:
        raise SmartProviderConfigurationError(f"No configured endpoints: The config line is '{configuration_line}'. Hint is {hint}.")

    identity = chain_metadata.identity
    endpoints = []
    for priority, url in enumerate(urls):
        if url.scheme.startswith(EXPLORER_PREFIX):
            explorer_url = url.url.replace(EXPLORER_PREFIX, "", 1)
            if "chainid=" not in (url.query or ""):
                separator = "&" if url.query else "?"
                explorer_url = f"{explorer_url}{separator}chainid={chain_metadata.chain_id}"
            endpoints.append(Endpoint(explorer_url, identity, priority=priority, kind=EndpointKind.block_explorer))
        else:
            endpoints.append(Endpoint(url.url, identity, priority=priority))

    return endpoints


def create_smart_provider(
    configuration_line: str,
    chain: ChainMetadata | str,
    hint: Optional[str] = "",
    **kwargs,
) -> SmartProvider:
    """Create a smart provider from a configuration line.

    Example:

    .. code-block:: python

        config = "https://ethereum-rpc.publicnode.com https://eth.llamarpc.com explorer+https://api.etherscan.io/v2/api?apikey=XXX"
        provider = create_smart_provider(config, "ethereum", rpc_consensus_type=RpcConsensusType.fallback)
        assert len(provider.endpoints) == 3

    :param configuration_line:
        Configuration line from an environment variable, config file or similar.

    :param chain:
        Chain metadata, or a chain name to look it up

    :param hint:
        A hint for error logs if something goes wrong.

    :param kwargs:
        Passed to :py:class:`SmartProvider`

    :raise SmartProviderConfigurationError:
        Bad configuration line
    """
    if isinstance(chain, str):
        chain = get_chain_metadata(chain)

    endpoints = parse_configuration_line(configuration_line, chain, hint)
    return SmartProvider(chain, endpoint_urls=endpoints, **kwargs)
