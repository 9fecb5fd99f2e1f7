"""Get JSON-RPC configuration from environment variables."""

import os

from eth_smart_provider.chain import ChainMetadata, get_chain_metadata


def get_json_rpc_env(chain: ChainMetadata | str) -> str:
    """Get the JSON-RPC URL environment variable name for a chain.

    E.g. ``JSON_RPC_ETHEREUM``.
    """
    if isinstance(chain, ChainMetadata):
        chain = chain.name
    assert chain, "Chain name missing"
    return f"JSON_RPC_{chain.upper()}"


def read_json_rpc_url(chain: ChainMetadata | str) -> str:
    """Read JSON-RPC configuration line from environment variable based on the chain.

    :raises ValueError: If the environment variable is not set for the given chain.
    """
    if isinstance(chain, str):
        chain = get_chain_metadata(chain)
    env_var = get_json_rpc_env(chain)
    json_rpc_url = os.environ.get(env_var)
    if not json_rpc_url:
        raise ValueError(f"Environment variable {env_var} is not set for chain {chain.name}")
    return json_rpc_url
