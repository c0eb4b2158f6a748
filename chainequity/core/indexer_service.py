"""
Lifecycle controller exposing start/stop/restart to the hosting process.
"""

import asyncio
import logging
from typing import Optional, Union

from chainequity.core.chain_client import ChainClient
from chainequity.core.config import IndexerConfig
from chainequity.core.indexer import EventIndexer
from chainequity.core.sql_store import SQLStore
from chainequity.core.types import IndexerState
from chainequity.core.web3_chain_client import create_chain_client
from chainequity.utils.log import get_default_logger

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


class IndexerService:
    """
    Runs an EventIndexer in a background task.
    The service owns the task; the indexer owns the chain client and store usage.
    """

    def __init__(self, indexer: EventIndexer):
        self.indexer = indexer
        self._task: Optional[asyncio.Task] = None

    @staticmethod
    def create_instance_from_env(
        dotenv_path: Union[str, None] = None
    ) -> "IndexerService":
        """
        Creates a service initialized from environment variables.
        The chain client and store are constructed here and passed in explicitly.

        :param dotenv_path: Path to the .env file.
            If None, only the process environment is used.
        :return: The constructed service.
        """
        config = IndexerConfig.from_env(dotenv_path)
        chain = create_chain_client(
            config.node_rpc_url,
            config.node_ws_url,
            request_timeout=config.call_timeout,
        )
        store = SQLStore(config.db_url)
        return IndexerService(EventIndexer.from_config(config, chain, store))

    @property
    def chain(self) -> ChainClient:
        return self.indexer.chain

    @property
    def store(self) -> SQLStore:
        return self.indexer.store

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> IndexerState:
        """
        Start the indexer. Calling start on a running indexer is a no-op.

        :return: The indexer state.
        """
        if self.is_running():
            _LOG.info("Indexer already running: %s", self.indexer.state.value)
            return self.indexer.state
        self._task = asyncio.create_task(self.indexer.run())
        # Let the engine leave STOPPED before reporting its state.
        await asyncio.sleep(0)
        return self.indexer.state

    async def stop(self) -> IndexerState:
        """
        Stop the indexer gracefully.
        Pending fetches and the subscription are cancelled;
        an in-flight store commit is awaited.

        :return: The indexer state.
        """
        if not self.is_running():
            return self.indexer.state
        _LOG.info("Stopping indexer")
        self._task.cancel()
        # The task ends with CancelledError or with its fatal error.
        await asyncio.gather(self._task, return_exceptions=True)
        return self.indexer.state

    async def restart(self) -> IndexerState:
        await self.stop()
        return await self.start()

    async def wait(self):
        """
        Wait for the indexer task to end.
        Re-raises the fatal error of a FAILED indexer.
        """
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if self.indexer.state != IndexerState.STOPPED:
                raise

    def status(self) -> dict:
        """
        Return the indexer status.

        :return: A dictionary with the state, checkpoint and last error.
        """
        checkpoint = self.indexer.checkpoint
        last_error = self.indexer.last_error
        return {
            "state": self.indexer.state.value,
            "checkpoint": (
                None
                if checkpoint is None
                else {
                    "blockNumber": checkpoint.block_number,
                    "blockHash": checkpoint.block_hash,
                }
            ),
            "lastError": None if last_error is None else str(last_error),
        }

    async def close(self):
        """Stop the indexer and release the chain client and store."""
        await self.stop()
        await self.chain.close()
        self.store.close()
