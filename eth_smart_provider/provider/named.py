"""Helper methods to get a loggable name of an endpoint or a provider.

Endpoint URIs often contain API keys.
They should be never publicly displayed as is.
"""

from typing import Any

from eth_smart_provider.utils import get_url_domain


def get_endpoint_name(endpoint: Any) -> str:
    """Get loggable name of an endpoint.

    Strips out API keys from the URL.

    :param endpoint:
        :py:class:`eth_smart_provider.provider.endpoint.Endpoint` or anything with ``url``

    :return:
        URL's domain name.

        Assume any API keys are not part of the domain name.
    """
    url = getattr(endpoint, "url", None)
    if url:
        return get_url_domain(url) or str(url)
    return str(endpoint)


def get_provider_name(provider: Any) -> str:
    """Get loggable name of a smart provider.

    Example:

    .. code-block:: python

        print(get_provider_name(provider))
        # smart provider ethereum: ethereum-rpc.publicnode.com, eth.llamarpc.com
    """
    from eth_smart_provider.provider.smart_provider import SmartProvider

    if isinstance(provider, SmartProvider):
        return f"smart provider {provider.chain.name}: " + ", ".join(get_endpoint_name(e) for e in provider.endpoints)
    return get_endpoint_name(provider)
