"""
The chain client module defines the node access contract used by the indexer.
Implementations wrap a particular transport; the indexer owns reconnection,
retries and timeouts, so clients simply raise on failure.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Sequence, Union

from chainequity.core.types import BlockHeader, LogEntry
from chainequity.utils.hex_utils import normalize_address


@dataclass(frozen=True)
class LogFilter:
    """
    Address and topic filter applied to log queries and subscriptions.

    Attributes:
        addresses: Contract addresses to watch. Empty means any address.
        topics: Positional topic filter, as accepted by eth_getLogs.
            Each element is a topic, a list of alternatives, or None.
    """

    addresses: Sequence[str] = field(default_factory=tuple)
    topics: Sequence[Optional[Union[str, List[str]]]] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(
            self, "addresses", tuple(normalize_address(a) for a in self.addresses)
        )
        object.__setattr__(self, "topics", tuple(self.topics))

    def to_params(self) -> dict:
        """
        Convert the filter to eth_getLogs / eth_subscribe parameters.

        :return: The filter parameters dictionary.
        """
        params = {}
        if self.addresses:
            params["address"] = list(self.addresses)
        if self.topics:
            params["topics"] = list(self.topics)
        return params

    def matches(self, log: LogEntry) -> bool:
        """
        Check whether a log satisfies the filter.

        :param log: The log to check.
        :return: True if the log passes the filter.
        """
        if self.addresses and log.address not in self.addresses:
            return False
        for i, expected in enumerate(self.topics):
            if expected is None:
                continue
            if i >= len(log.topics):
                return False
            alternatives = expected if isinstance(expected, list) else [expected]
            if log.topics[i] not in [t.lower() for t in alternatives]:
                return False
        return True


class ChainClient(ABC):
    """
    Interface for the node operations the indexer consumes.
    Any call may raise ChainConnectionError.
    """

    @abstractmethod
    async def get_chain_id(self) -> int:
        """
        Return the chain id reported by the node.

        :return: The chain id.
        """

    @abstractmethod
    async def get_block_number(self) -> int:
        """
        Return the current chain head block number.

        :return: The head block number.
        """

    @abstractmethod
    async def get_block(self, number: int) -> Optional[BlockHeader]:
        """
        Return the header of a block.

        :param number: The block number.
        :return: The block header or None if the node does not have the block.
        """

    @abstractmethod
    async def get_logs(
        self, from_block: int, to_block: int, log_filter: LogFilter
    ) -> List[LogEntry]:
        """
        Return the logs in an inclusive block range, in (block, log index) order.

        :param from_block: The first block of the range.
        :param to_block: The last block of the range.
        :param log_filter: The address and topic filter.
        :return: The ordered logs.
        """

    @abstractmethod
    async def subscribe_logs(self, log_filter: LogFilter) -> AsyncIterator[LogEntry]:
        """
        Open a long-lived log subscription.
        Returns once the subscription is established.
        The returned iterator ends or raises when the underlying stream is lost;
        the caller is responsible for resubscribing.

        :param log_filter: The address and topic filter.
        :return: An async iterator of logs.
        """

    async def close(self):
        """Release any transport resources held by the client."""
