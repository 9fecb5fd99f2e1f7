"""Chain specific configuration.

Static chain metadata the smart provider is built from:
chain id, default public JSON-RPC endpoints, block explorer APIs and
``eth_getLogs`` pagination limits.

- Look up by name with :py:func:`get_chain_metadata`

- Build your own :py:class:`ChainMetadata` for private endpoints
"""

import logging
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlencode

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ChainIdentity:
    """Numeric chain id and a human name.

    All endpoints attached to one provider share the same identity.
    """

    #: EIP-155 chain id
    chain_id: int

    #: Human readable name, e.g. ``ethereum``
    name: str

    def __post_init__(self):
        assert type(self.chain_id) == int, f"Chain id must be int, got {type(self.chain_id)}"
        assert self.chain_id > 0, f"Bad chain id {self.chain_id}"
        assert self.name, "Chain name missing"


@dataclass(slots=True, frozen=True)
class BlockExplorer:
    """Etherscan-compatible block explorer.

    The explorer API can answer a subset of JSON-RPC reads,
    see :py:data:`eth_smart_provider.provider.registry.STATIC_METHOD_SUPPORT`.
    """

    #: Display name
    name: str

    #: Human browsable homepage
    url: str

    #: API endpoint, e.g. ``https://api.etherscan.io/v2/api``
    api_url: str

    #: Explorer API key.
    #:
    #: Works without one, but with very low rate limits.
    api_key: Optional[str] = None

    def get_endpoint_url(self, chain_id: int) -> str:
        """Get the API URL with chain id and the API key baked in the query string.

        Etherscan v2 multichain API needs ``chainid`` for every request.
        """
        query = {"chainid": chain_id}
        if self.api_key:
            query["apikey"] = self.api_key
        separator = "&" if "?" in self.api_url else "?"
        return f"{self.api_url}{separator}{urlencode(query)}"


@dataclass(slots=True, frozen=True)
class ChainMetadata:
    """Everything the smart provider needs to know about a chain."""

    #: EIP-155 chain id
    chain_id: int

    #: Lookup name, lowercase
    name: str

    #: Default JSON-RPC endpoints, in priority order
    rpc_urls: tuple[str, ...] = field(default_factory=tuple)

    #: Explorer APIs, in priority order after :py:attr:`rpc_urls`
    block_explorers: tuple[BlockExplorer, ...] = field(default_factory=tuple)

    #: How many blocks one ``eth_getLogs`` call may span.
    #:
    #: ``None`` means the endpoints do not limit the range
    #: and log queries are not split.
    max_block_range: Optional[int] = None

    #: The lowest block the endpoints have indexed history for.
    #:
    #: Log queries never go below this block.
    min_block_number: int = 0

    def __post_init__(self):
        assert type(self.chain_id) == int, f"Chain id must be int, got {type(self.chain_id)}"
        if self.max_block_range is not None:
            assert self.max_block_range >= 1, f"max_block_range must be positive, got {self.max_block_range}"
        assert self.min_block_number >= 0, f"min_block_number must not be negative, got {self.min_block_number}"

    @property
    def identity(self) -> ChainIdentity:
        return ChainIdentity(self.chain_id, self.name)


#: Built-in chain metadata registry.
#:
#: Public endpoints only. They are rate limited and
#: meant for testing and light use. For anything serious
#: pass your own URLs as ``endpoint_urls``.
#:
CHAIN_METADATA: dict[str, ChainMetadata] = {
    "ethereum": ChainMetadata(
        chain_id=1,
        name="ethereum",
        rpc_urls=(
            "https://ethereum-rpc.publicnode.com",
            "https://eth.llamarpc.com",
            "https://cloudflare-eth.com",
        ),
        block_explorers=(BlockExplorer("Etherscan", "https://etherscan.io", "https://api.etherscan.io/v2/api"),),
        max_block_range=1_000,
    ),
    "sepolia": ChainMetadata(
        chain_id=11155111,
        name="sepolia",
        rpc_urls=("https://ethereum-sepolia-rpc.publicnode.com",),
        block_explorers=(BlockExplorer("Etherscan", "https://sepolia.etherscan.io", "https://api.etherscan.io/v2/api"),),
        max_block_range=1_000,
    ),
    "polygon": ChainMetadata(
        chain_id=137,
        name="polygon",
        rpc_urls=(
            "https://polygon-rpc.com",
            "https://polygon-bor-rpc.publicnode.com",
        ),
        block_explorers=(BlockExplorer("PolygonScan", "https://polygonscan.com", "https://api.etherscan.io/v2/api"),),
        max_block_range=3_000,
    ),
    "binance": ChainMetadata(
        chain_id=56,
        name="binance",
        rpc_urls=(
            "https://bsc-dataseed2.bnbchain.org",
            "https://bsc-rpc.publicnode.com",
        ),
        block_explorers=(BlockExplorer("BscScan", "https://bscscan.com", "https://api.etherscan.io/v2/api"),),
        # https://github.com/bnb-chain/bsc/issues/1215
        max_block_range=1_000,
    ),
    "arbitrum": ChainMetadata(
        chain_id=42161,
        name="arbitrum",
        rpc_urls=(
            "https://arb1.arbitrum.io/rpc",
            "https://arbitrum-one-rpc.publicnode.com",
        ),
        block_explorers=(BlockExplorer("Arbiscan", "https://arbiscan.io", "https://api.etherscan.io/v2/api"),),
        max_block_range=10_000,
    ),
    "optimism": ChainMetadata(
        chain_id=10,
        name="optimism",
        rpc_urls=(
            "https://mainnet.optimism.io",
            "https://optimism-rpc.publicnode.com",
        ),
        block_explorers=(BlockExplorer("Optimistic Etherscan", "https://optimistic.etherscan.io", "https://api.etherscan.io/v2/api"),),
        max_block_range=10_000,
    ),
    "base": ChainMetadata(
        chain_id=8453,
        name="base",
        rpc_urls=(
            "https://mainnet.base.org",
            "https://base-rpc.publicnode.com",
        ),
        block_explorers=(BlockExplorer("BaseScan", "https://basescan.org", "https://api.etherscan.io/v2/api"),),
        max_block_range=10_000,
    ),
    "avalanche": ChainMetadata(
        chain_id=43114,
        name="avalanche",
        rpc_urls=(
            "https://api.avax.network/ext/bc/C/rpc",
            "https://avalanche-c-chain-rpc.publicnode.com",
        ),
        block_explorers=(BlockExplorer("SnowScan", "https://snowscan.xyz", "https://api.etherscan.io/v2/api"),),
        max_block_range=2_048,
    ),
    "gnosis": ChainMetadata(
        chain_id=100,
        name="gnosis",
        rpc_urls=("https://rpc.gnosischain.com",),
        block_explorers=(BlockExplorer("GnosisScan", "https://gnosisscan.io", "https://api.etherscan.io/v2/api"),),
        max_block_range=10_000,
    ),
    "tac": ChainMetadata(
        chain_id=239,
        name="tac",
        rpc_urls=("https://rpc.ankr.com/tac",),
        # Assume public TAC RPC (no paid ones available yet)
        max_block_range=1_000,
    ),
}


def get_chain_metadata(name: str) -> ChainMetadata:
    """Look up built-in chain metadata by chain name.

    :param name:
        Case-insensitive name, e.g. ``Ethereum``.

    :raise KeyError:
        If the chain is not known.
    """
    assert type(name) == str, f"Chain name must be str, got {type(name)}"
    try:
        return CHAIN_METADATA[name.lower()]
    except KeyError as e:
        raise KeyError(f"No chain metadata for {name}, known chains are {', '.join(CHAIN_METADATA)}") from e


def get_chain_name(chain_id: int) -> str:
    """Get a human-readable name for the chain.

    Falls back to ``Unknown chain <id>`` for unknown chains.
    """
    for metadata in CHAIN_METADATA.values():
        if metadata.chain_id == chain_id:
            return metadata.name.capitalize()
    return f"Unknown chain {chain_id}"
