"""
Tests of the web3 chain clients with the node access mocked out
"""

import unittest
from unittest.mock import AsyncMock, Mock

from hexbytes import HexBytes
from web3.exceptions import BlockNotFound

from chainequity.core.chain_client import LogFilter
from chainequity.core.errors import ChainConnectionError
from chainequity.core.failover_chain_client import FailoverChainClient
from chainequity.core.types import BlockHeader
from chainequity.core.web3_chain_client import (
    Web3ChainClient,
    Web3HTTPChainClient,
    Web3WebSocketChainClient,
    create_chain_client,
)
from chainequity.tests.utils import TOKEN_ADDRESS, tx_hash


class FakeEth:
    """Stands in for w3.eth; chain_id and block_number are awaitable properties."""

    def __init__(self, head: int = 12, error: Exception = None):
        self.head = head
        self.error = error
        self.get_block = AsyncMock()
        self.get_logs = AsyncMock(return_value=[])

    async def _value(self, value):
        if self.error is not None:
            raise self.error
        return value

    @property
    def chain_id(self):
        return self._value(31337)

    @property
    def block_number(self):
        return self._value(self.head)


def _raw_log(block_number: int, log_index: int) -> dict:
    return {
        "address": TOKEN_ADDRESS,
        "topics": [HexBytes("0x" + "aa" * 32)],
        "data": HexBytes("0x"),
        "transactionHash": HexBytes(tx_hash(block_number * 10 + log_index)),
        "logIndex": log_index,
        "blockNumber": block_number,
        "blockHash": HexBytes("0x" + f"{block_number:064x}"),
    }


class TestWeb3HTTPChainClient(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.client = Web3HTTPChainClient("http://localhost:8545", poll_interval=0)
        self.eth = FakeEth()
        self.client.w3 = Mock()
        self.client.w3.eth = self.eth

    async def test_chain_id_and_block_number(self):
        self.assertEqual(await self.client.get_chain_id(), 31337)
        self.assertEqual(await self.client.get_block_number(), 12)

    async def test_get_block(self):
        self.eth.get_block.return_value = {
            "number": 7,
            "hash": HexBytes("0x" + "07" * 32),
            "parentHash": HexBytes("0x" + "06" * 32),
            "timestamp": 1_700_000_084,
        }
        header = await self.client.get_block(7)
        self.assertEqual(
            header, BlockHeader(7, "0x" + "07" * 32, "0x" + "06" * 32, 1_700_000_084)
        )
        self.eth.get_block.assert_awaited_once_with(7)

    async def test_missing_block_is_none(self):
        self.eth.get_block.side_effect = BlockNotFound("no block 99")
        self.assertIsNone(await self.client.get_block(99))

    async def test_get_logs_sorted_and_filtered(self):
        self.eth.get_logs.return_value = [
            _raw_log(5, 1),
            _raw_log(4, 2),
            _raw_log(5, 0),
        ]
        log_filter = LogFilter(addresses=[TOKEN_ADDRESS], topics=[["0x" + "aa" * 32]])

        logs = await self.client.get_logs(4, 5, log_filter)

        self.assertEqual([log.sort_key for log in logs], [(4, 2), (5, 0), (5, 1)])
        self.eth.get_logs.assert_awaited_once_with(
            {
                "fromBlock": 4,
                "toBlock": 5,
                "address": [TOKEN_ADDRESS],
                "topics": [["0x" + "aa" * 32]],
            }
        )

    async def test_transport_errors_are_wrapped(self):
        self.eth.error = OSError("connection refused")
        with self.assertRaises(ChainConnectionError) as cm:
            await self.client.get_block_number()
        self.assertIn("eth_blockNumber", str(cm.exception))
        self.assertIsInstance(cm.exception.__cause__, OSError)

        self.eth.get_logs.side_effect = ValueError({"code": -32005})
        with self.assertRaises(ChainConnectionError):
            await self.client.get_logs(1, 2, LogFilter())

    async def test_polling_subscription(self):
        self.eth.get_logs.return_value = [_raw_log(13, 0)]
        stream = await self.client.subscribe_logs(LogFilter())
        self.eth.head = 13

        log = await stream.__anext__()

        self.assertEqual(log.sort_key, (13, 0))
        self.assertEqual(self.eth.get_logs.await_args.args[0]["fromBlock"], 13)
        await stream.aclose()


class TestWeb3ChainClient(unittest.TestCase):
    def test_subclass_must_provide_connection(self):
        class NoConnectionClient(Web3ChainClient):
            async def subscribe_logs(self, log_filter):
                raise NotImplementedError

        with self.assertRaises(TypeError):
            NoConnectionClient()  # pylint: disable=abstract-class-instantiated


class TestCreateChainClient(unittest.TestCase):
    def test_http_only(self):
        client = create_chain_client("http://localhost:8545")
        self.assertIsInstance(client, Web3HTTPChainClient)

    def test_websocket_with_http_fallback(self):
        client = create_chain_client(
            "http://localhost:8545", "ws://localhost:8546", request_timeout=5
        )
        self.assertIsInstance(client, FailoverChainClient)
        self.assertIsInstance(client.clients[0], Web3WebSocketChainClient)
        self.assertIsInstance(client.clients[1], Web3HTTPChainClient)
        # The WebSocket connection is opened on first use.
        self.assertIsNone(client.clients[0].w3)


if __name__ == "__main__":
    unittest.main()
