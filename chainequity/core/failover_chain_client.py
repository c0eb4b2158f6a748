"""Failover chain client that tries multiple clients in sequence."""

import logging
from typing import AsyncIterator, List, Optional

from chainequity.core.chain_client import ChainClient, LogFilter
from chainequity.core.errors import ChainConnectionError
from chainequity.core.types import BlockHeader, LogEntry
from chainequity.utils.log import get_default_logger

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


class FailoverChainClient(ChainClient):
    """This chain client calls a set of chain clients one after another
    and provides a failover mechanism to ensure that if the primary transport fails,
    a secondary transport can be used to reach the node.

    Each operation will try to use the first client in the list.
    If it fails with a connectivity error, it will try the next client in the list
    until it finds one that works.
    Subscriptions fail over only while being established;
    a stream that breaks later is surfaced to the indexer, which resubscribes.
    """

    def __init__(self, clients: List[ChainClient]):
        """Initialize the failover chain client with a list of clients."""
        if not clients:
            raise ValueError("FailoverChainClient requires at least one client")
        self.clients = clients

    async def _execute_with_failover(self, method_name: str, *args, **kwargs):
        """Execute a method on the first client without a connectivity error."""
        errors = []
        for client in self.clients:
            try:
                return await getattr(client, method_name)(*args, **kwargs)
            except ChainConnectionError as e:
                _LOG.warning("Chain client %s failed %s: %s", client, method_name, e)
                errors.append(e)

        raise ChainConnectionError(
            f"All chain clients failed to execute {method_name}: "
            + "; ".join(str(e) for e in errors)
        )

    async def get_chain_id(self) -> int:
        return await self._execute_with_failover("get_chain_id")

    async def get_block_number(self) -> int:
        return await self._execute_with_failover("get_block_number")

    async def get_block(self, number: int) -> Optional[BlockHeader]:
        return await self._execute_with_failover("get_block", number)

    async def get_logs(
        self, from_block: int, to_block: int, log_filter: LogFilter
    ) -> List[LogEntry]:
        return await self._execute_with_failover(
            "get_logs", from_block, to_block, log_filter
        )

    async def subscribe_logs(self, log_filter: LogFilter) -> AsyncIterator[LogEntry]:
        return await self._execute_with_failover("subscribe_logs", log_filter)

    async def close(self):
        for client in self.clients:
            await client.close()
