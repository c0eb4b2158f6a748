"""
Chain clients implemented with web3.py's asyncio API.
The WebSocket client is the primary transport and pushes logs with eth_subscribe.
The HTTP client is the fallback and emulates a subscription by polling eth_getLogs.
"""

import asyncio
import logging
from abc import abstractmethod
from typing import AsyncIterator, Awaitable, Callable, List, Optional, TypeVar

from web3 import AsyncHTTPProvider, AsyncWeb3, WebSocketProvider
from web3.exceptions import BlockNotFound

from chainequity.core.chain_client import ChainClient, LogFilter
from chainequity.core.errors import ChainConnectionError
from chainequity.core.failover_chain_client import FailoverChainClient
from chainequity.core.types import BlockHeader, LogEntry
from chainequity.utils.log import get_default_logger

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)

T = TypeVar("T")

# Default interval between eth_getLogs polls for the HTTP subscription.
_HTTP_POLL_INTERVAL = 2


async def _rpc(operation: Callable[[], Awaitable[T]], description: str) -> T:
    """
    Run a web3 call and translate transport failures to ChainConnectionError.

    :param operation: A zero-argument callable returning the web3 awaitable.
    :param description: The call name used in error messages.
    :return: The call result.
    """
    try:
        return await operation()
    except BlockNotFound:
        raise
    except ChainConnectionError:
        raise
    # web3 surfaces provider, socket and RPC failures with unrelated exception types.
    except Exception as e:  # pylint: disable=broad-except
        raise ChainConnectionError(f"{description} failed: {e}") from e


class Web3ChainClient(ChainClient):
    """
    Operations shared by the web3-backed clients.
    Subclasses provide the connected AsyncWeb3 instance.
    """

    @abstractmethod
    async def _get_w3(self) -> AsyncWeb3:
        """Return a connected AsyncWeb3 instance."""

    async def get_chain_id(self) -> int:
        w3 = await self._get_w3()
        return await _rpc(lambda: w3.eth.chain_id, "eth_chainId")

    async def get_block_number(self) -> int:
        w3 = await self._get_w3()
        return await _rpc(lambda: w3.eth.block_number, "eth_blockNumber")

    async def get_block(self, number: int) -> Optional[BlockHeader]:
        w3 = await self._get_w3()
        try:
            block = await _rpc(
                lambda: w3.eth.get_block(number), f"eth_getBlockByNumber({number})"
            )
        except BlockNotFound:
            return None
        return BlockHeader.from_web3(block)

    async def get_logs(
        self, from_block: int, to_block: int, log_filter: LogFilter
    ) -> List[LogEntry]:
        w3 = await self._get_w3()
        params = {"fromBlock": from_block, "toBlock": to_block}
        params.update(log_filter.to_params())
        raw_logs = await _rpc(
            lambda: w3.eth.get_logs(params),
            f"eth_getLogs({from_block}, {to_block})",
        )
        logs = [LogEntry.from_web3(raw) for raw in raw_logs]
        return sorted(logs, key=lambda log: log.sort_key)


class Web3HTTPChainClient(Web3ChainClient):
    """
    Chain client accessible using AsyncHTTPProvider.
    Subscriptions are emulated by polling eth_getLogs for new blocks.
    """

    def __init__(
        self,
        node_rpc_url: str,
        poll_interval: float = _HTTP_POLL_INTERVAL,
        request_timeout: Optional[float] = None,
    ):
        """
        Initialize the client.

        :param node_rpc_url: Node HTTP RPC URL.
        :param poll_interval: Seconds between eth_getLogs polls for subscriptions.
        :param request_timeout: Per-request HTTP timeout in seconds.
        """
        self.node_rpc_url = node_rpc_url
        self.poll_interval = poll_interval
        request_kwargs = {}
        if request_timeout is not None:
            request_kwargs["timeout"] = request_timeout
        self.w3 = AsyncWeb3(
            AsyncHTTPProvider(node_rpc_url, request_kwargs=request_kwargs)
        )

    def __repr__(self):
        return f"Web3HTTPChainClient({self.node_rpc_url})"

    async def _get_w3(self) -> AsyncWeb3:
        return self.w3

    async def subscribe_logs(self, log_filter: LogFilter) -> AsyncIterator[LogEntry]:
        start_block = await self.get_block_number() + 1
        _LOG.info(
            "Polling %s for logs from block %s every %ss",
            self.node_rpc_url,
            start_block,
            self.poll_interval,
        )
        return self._poll_logs(start_block, log_filter)

    async def _poll_logs(
        self, next_block: int, log_filter: LogFilter
    ) -> AsyncIterator[LogEntry]:
        while True:
            head = await self.get_block_number()
            if head >= next_block:
                for log in await self.get_logs(next_block, head, log_filter):
                    yield log
                next_block = head + 1
            await asyncio.sleep(self.poll_interval)

    async def close(self):
        await self.w3.provider.disconnect()


class Web3WebSocketChainClient(Web3ChainClient):
    """
    Chain client accessible using the persistent WebSocketProvider.
    Logs are pushed by the node through eth_subscribe.
    """

    def __init__(self, node_ws_url: str):
        """
        Initialize the client.
        The connection is opened lazily on first use.

        :param node_ws_url: Node WebSocket RPC URL.
        """
        self.node_ws_url = node_ws_url
        self.w3: Optional[AsyncWeb3] = None

    def __repr__(self):
        return f"Web3WebSocketChainClient({self.node_ws_url})"

    async def _get_w3(self) -> AsyncWeb3:
        if self.w3 is not None and await self.w3.provider.is_connected():
            return self.w3
        _LOG.info("Connecting to %s", self.node_ws_url)
        self.w3 = await _rpc(
            lambda: AsyncWeb3(WebSocketProvider(self.node_ws_url)),
            f"connect({self.node_ws_url})",
        )
        return self.w3

    async def subscribe_logs(self, log_filter: LogFilter) -> AsyncIterator[LogEntry]:
        w3 = await self._get_w3()
        subscription_id = await _rpc(
            lambda: w3.eth.subscribe("logs", log_filter.to_params()),
            "eth_subscribe(logs)",
        )
        _LOG.info("Subscribed to logs on %s: %s", self.node_ws_url, subscription_id)
        return self._iter_subscription(w3, subscription_id)

    async def _iter_subscription(
        self, w3: AsyncWeb3, subscription_id: str
    ) -> AsyncIterator[LogEntry]:
        try:
            async for response in w3.socket.process_subscriptions():
                if response.get("subscription") != subscription_id:
                    continue
                yield LogEntry.from_web3(response["result"])
        except ChainConnectionError:
            raise
        except Exception as e:  # pylint: disable=broad-except
            raise ChainConnectionError(
                f"Log subscription {subscription_id} on {self.node_ws_url} failed: {e}"
            ) from e
        _LOG.warning("Log subscription %s ended", subscription_id)

    async def close(self):
        if self.w3 is not None:
            await self.w3.provider.disconnect()
            self.w3 = None


def create_chain_client(
    node_rpc_url: str,
    node_ws_url: Optional[str] = None,
    poll_interval: float = _HTTP_POLL_INTERVAL,
    request_timeout: Optional[float] = None,
) -> ChainClient:
    """
    Create the chain client for a node: WebSocket primary with HTTP fallback
    when a WebSocket URL is configured, HTTP only otherwise.

    :param node_rpc_url: Node HTTP RPC URL.
    :param node_ws_url: Node WebSocket RPC URL, if any.
    :param poll_interval: Seconds between polls for the HTTP subscription.
    :param request_timeout: Per-request HTTP timeout in seconds.
    :return: The chain client.
    """
    http_client = Web3HTTPChainClient(
        node_rpc_url, poll_interval=poll_interval, request_timeout=request_timeout
    )
    if not node_ws_url:
        _LOG.info("No WebSocket URL configured, using HTTP only: %s", node_rpc_url)
        return http_client
    return FailoverChainClient([Web3WebSocketChainClient(node_ws_url), http_client])
