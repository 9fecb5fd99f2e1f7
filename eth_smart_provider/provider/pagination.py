"""Split long ``eth_getLogs`` block ranges into windows the RPC providers accept.

Many providers limit how many blocks one ``eth_getLogs`` call may span
(e.g. BNB Chain nodes with ``{'code': -32005, 'message': 'limit exceeded'}``).
We query the range in windows and glue the results back together.

Example:

.. code-block:: python

    paginator = RangePaginator(max_block_range=1_000, min_block_number=10_000_000)
    for window in paginator.split(9_000_000, 10_002_500):
        print(window)

    # <Window 10,000,000 - 10,000,999>
    # <Window 10,001,000 - 10,001,999>
    # <Window 10,002,000 - 10,002,500>
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from eth_smart_provider.chain import ChainMetadata


@dataclass(slots=True, frozen=True)
class PaginationWindow:
    """An inclusive block sub-range of a range query."""

    #: First block, inclusive
    from_block: int

    #: Last block, inclusive
    to_block: int

    #: The window size limit this window was cut with
    max_span: int

    def __post_init__(self):
        assert self.from_block <= self.to_block, f"Bad window {self.from_block} - {self.to_block}"
        assert self.get_block_count() <= self.max_span, f"Window {self.from_block} - {self.to_block} wider than {self.max_span}"

    def __repr__(self):
        return f"<Window {self.from_block:,} - {self.to_block:,}>"

    def get_block_count(self) -> int:
        return self.to_block - self.from_block + 1


def split_block_range(from_block: int, to_block: int, max_span: int) -> list[PaginationWindow]:
    """Cut an inclusive range to contiguous windows of at most ``max_span`` blocks.

    :raise ValueError:
        If the range is inverted
    """
    assert type(from_block) == int and type(to_block) == int, f"Block numbers must be int, got {from_block}, {to_block}"
    assert max_span >= 1, f"Bad max span {max_span}"

    if from_block > to_block:
        raise ValueError(f"fromBlock {from_block:,} is after toBlock {to_block:,}")

    windows = []
    start = from_block
    while start <= to_block:
        end = min(start + max_span - 1, to_block)
        windows.append(PaginationWindow(start, end, max_span))
        start = end + 1
    return windows


class RangePaginator:
    """Decide how a block range query is broken down for a chain."""

    def __init__(self, max_block_range: Optional[int] = None, min_block_number: int = 0):
        """
        :param max_block_range:
            Max blocks per ``eth_getLogs`` call.

            ``None`` to never split.

        :param min_block_number:
            Endpoints have no history below this block.
        """
        assert max_block_range is None or max_block_range >= 1, f"Bad max_block_range {max_block_range}"
        assert min_block_number >= 0, f"Bad min_block_number {min_block_number}"
        self.max_block_range = max_block_range
        self.min_block_number = min_block_number

    def __repr__(self):
        return f"<RangePaginator max_block_range:{self.max_block_range} min_block_number:{self.min_block_number}>"

    @classmethod
    def from_chain_metadata(cls, chain_metadata: ChainMetadata) -> "RangePaginator":
        return cls(chain_metadata.max_block_range, chain_metadata.min_block_number)

    def is_enabled(self) -> bool:
        """Do we split ranges at all."""
        return self.max_block_range is not None

    def split(self, from_block: int, to_block: int) -> list[PaginationWindow]:
        """Get the minimal ordered list of windows covering the range.

        - The start is clamped to :py:attr:`min_block_number`

        - A range fully below :py:attr:`min_block_number` gives no windows

        :raise ValueError:
            If the range is inverted
        """
        if from_block > to_block:
            raise ValueError(f"fromBlock {from_block:,} is after toBlock {to_block:,}")

        if to_block < self.min_block_number:
            return []

        from_block = max(from_block, self.min_block_number)

        if not self.is_enabled():
            return [PaginationWindow(from_block, to_block, to_block - from_block + 1)]

        return split_block_range(from_block, to_block, self.max_block_range)

    @staticmethod
    def merge(window_results: Iterable[list]) -> list:
        """Concatenate per-window results in window order.

        Windows do not overlap, so no deduplication is needed.
        """
        merged = []
        for result in window_results:
            merged.extend(result)
        return merged
