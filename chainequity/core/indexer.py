"""
The indexer engine.

The engine backfills historical logs in bounded block ranges, then follows
the chain through a log subscription. Every batch is decoded and persisted
together with the checkpoint in one store transaction, strictly in
(block, log index) order. Reorganizations are detected through block hashes
and unwound to the last common ancestor before indexing resumes.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    Tuple,
    TypeVar,
)

from chainequity.core.chain_client import ChainClient, LogFilter
from chainequity.core.config import IndexerConfig
from chainequity.core.errors import (
    ChainConnectionError,
    DecodingError,
    IndexerError,
    ReorgDetectedError,
    RetriesExhaustedError,
)
from chainequity.core.event_decoder import EventDecoder, to_transactions
from chainequity.core.sql_store import SQLStore
from chainequity.core.types import (
    BlockHeader,
    Checkpoint,
    DomainEvent,
    IndexedTransaction,
    IndexerState,
    LogEntry,
)
from chainequity.utils.log import get_default_logger
from chainequity.utils.retries import with_retries_async

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)

INDEXER_VERSION = "0.1.0"

T = TypeVar("T")

# Marks the end of a subscription stream in the live queue.
_STREAM_END = object()

# Maximum number of block headers requested from the node at once.
HEADER_FETCH_CONCURRENCY = 16


@dataclass
class _FetchedRange:
    """Logs and headers fetched for an inclusive block range."""

    from_block: int
    to_block: int
    logs: List[LogEntry]
    headers: Dict[int, BlockHeader]


def _split_range(
    from_block: int, to_block: int, size: int
) -> Iterator[Tuple[int, int]]:
    start = from_block
    while start <= to_block:
        end = min(start + size - 1, to_block)
        yield start, end
        start = end + 1


class EventIndexer:
    """
    Indexes ChainEquity contract events into a SQLStore.

    The engine is the single writer of transactions and checkpoint state.
    Call run() in a task; cancel the task to stop.
    """

    # pylint: disable=too-many-instance-attributes

    def __init__(
        self,
        chain: ChainClient,
        store: SQLStore,
        decoder: Optional[EventDecoder] = None,
        contract_addresses: Optional[List[str]] = None,
        expected_chain_id: Optional[int] = None,
        start_block: int = 0,
        confirmations: int = 0,
        block_range: int = 1000,
        max_attempts: int = 5,
        retry_delay: float = 1,
        call_timeout: float = 30,
        max_reorg_depth: int = 64,
        poll_interval: float = 10,
        queue_size: int = 1000,
    ):
        """
        Initialize the engine.

        :param chain: The chain client.
        :param store: The persistence store.
        :param decoder: The event decoder. Defaults to the ChainEquity events.
        :param contract_addresses: Contracts to index. Empty means any emitter.
        :param expected_chain_id: Chain id the node must report, if set.
        :param start_block: First block to index when there is no checkpoint.
        :param confirmations: Blocks behind head the catch-up scan stops at.
        :param block_range: Maximum blocks per log query.
        :param max_attempts: Attempts per chain call, and consecutive
            subscription failures tolerated before the engine fails.
        :param retry_delay: Initial retry delay in seconds, doubled per attempt.
        :param call_timeout: Timeout in seconds for each chain call.
        :param max_reorg_depth: Deepest reorganization unwound by recovery.
        :param poll_interval: Idle seconds after which live mode checks the head.
        :param queue_size: Capacity of the live log buffer.
        """
        self.chain = chain
        self.store = store
        self.decoder = decoder if decoder is not None else EventDecoder()
        self.log_filter = LogFilter(
            addresses=contract_addresses or (), topics=[self.decoder.topics]
        )
        self.expected_chain_id = expected_chain_id
        self.start_block = start_block
        self.confirmations = confirmations
        self.block_range = block_range
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.call_timeout = call_timeout
        self.max_reorg_depth = max_reorg_depth
        self.poll_interval = poll_interval
        self.queue_size = queue_size

        self._state = IndexerState.STOPPED
        self._checkpoint: Optional[Checkpoint] = None
        self.last_error: Optional[BaseException] = None
        self._stream_failures = 0
        self._recoveries = 0
        self._last_replayed: Optional[Tuple[int, str]] = None

    @staticmethod
    def from_config(
        config: IndexerConfig, chain: ChainClient, store: SQLStore
    ) -> "EventIndexer":
        return EventIndexer(
            chain,
            store,
            contract_addresses=config.contract_addresses,
            expected_chain_id=config.chain_id,
            start_block=config.start_block,
            confirmations=config.confirmations,
            block_range=config.block_range,
            max_attempts=config.max_attempts,
            retry_delay=config.retry_delay,
            call_timeout=config.call_timeout,
            max_reorg_depth=config.max_reorg_depth,
            poll_interval=config.poll_interval,
            queue_size=config.queue_size,
        )

    @property
    def state(self) -> IndexerState:
        return self._state

    @property
    def checkpoint(self) -> Optional[Checkpoint]:
        return self._checkpoint

    def _set_state(self, state: IndexerState):
        if state != self._state:
            _LOG.info("Indexer state %s -> %s", self._state.value, state.value)
            self._state = state

    ###############
    # Main loop
    ###############

    async def run(self):
        """
        Run the engine until cancelled or until a fatal error.
        Fatal errors move the engine to FAILED and are re-raised.
        """
        self.last_error = None
        self._stream_failures = 0
        self._recoveries = 0
        try:
            self._set_state(IndexerState.CATCHING_UP)
            await self._initialize()
            while True:
                try:
                    self._set_state(IndexerState.CATCHING_UP)
                    await self._catch_up()
                    self._set_state(IndexerState.LIVE)
                    await self._follow()
                except ReorgDetectedError as e:
                    self._set_state(IndexerState.RECOVERING)
                    await self._recover(e)
                except ChainConnectionError as e:
                    await self._on_stream_failure(e)
        except asyncio.CancelledError:
            self._set_state(IndexerState.STOPPED)
            raise
        except Exception as e:
            self.last_error = e
            self._set_state(IndexerState.FAILED)
            _LOG.error("Indexer failed: %s", e)
            raise

    async def _initialize(self):
        chain_id = await self._call(self.chain.get_chain_id)
        if self.expected_chain_id is not None and chain_id != self.expected_chain_id:
            raise IndexerError(
                f"Node reports chain {chain_id}, expected {self.expected_chain_id}"
            )
        await self._store_call(self.store.ensure_chain_id, chain_id)
        await self._store_call(self.store.set_meta, "indexer_version", INDEXER_VERSION)
        self._checkpoint = await self._store_call(self.store.get_checkpoint)
        _LOG.info(
            "Starting indexer on chain %s from checkpoint %s",
            chain_id,
            self._checkpoint,
        )

    async def _on_stream_failure(self, error: ChainConnectionError):
        self._stream_failures += 1
        if self._stream_failures > self.max_attempts:
            raise RetriesExhaustedError(
                f"Log subscription failed {self._stream_failures} times in a row: "
                f"{error}"
            ) from error
        delay = self.retry_delay * 2 ** (self._stream_failures - 1)
        _LOG.warning(
            "Log subscription lost (%s/%s): %s. Reconnecting in %ss",
            self._stream_failures,
            self.max_attempts,
            error,
            delay,
        )
        await asyncio.sleep(delay)

    ###############
    # Chain and store access
    ###############

    async def _call(self, fn: Callable[..., Awaitable[T]], *args) -> T:
        """Call the chain client with a timeout and exponential backoff."""
        return await with_retries_async(
            lambda: asyncio.wait_for(fn(*args), self.call_timeout),
            _LOG,
            max_attempts=self.max_attempts,
            delay=self.retry_delay,
            retry_on=(ChainConnectionError, asyncio.TimeoutError),
            description=f"{fn.__name__}{args}",
        )

    async def _store_call(self, fn: Callable[..., T], *args) -> T:
        """
        Run a blocking store operation in the default executor.
        A cancelled caller still waits for the operation to finish,
        so that stopping never abandons a commit mid-flight.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, functools.partial(fn, *args))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            await asyncio.wait([future])
            if not future.cancelled() and future.exception() is not None:
                _LOG.error(
                    "Store operation %s failed during shutdown: %s",
                    fn.__name__,
                    future.exception(),
                )
            raise

    async def _require_block(self, number: int) -> BlockHeader:
        header = await self.chain.get_block(number)
        if header is None:
            # The node has not caught up with the head it reported.
            raise ChainConnectionError(f"Block {number} is not available on the node")
        return header

    ###############
    # Catch-up
    ###############

    def _next_block(self) -> int:
        if self._checkpoint is None:
            return self.start_block
        return self._checkpoint.block_number + 1

    async def _catch_up(self):
        """Index historical ranges until the checkpoint reaches the confirmed head."""
        while True:
            head = await self._call(self.chain.get_block_number)
            target = head - self.confirmations
            if self._next_block() > target:
                return
            await self._index_until(target)

    async def _index_until(self, to_block: int):
        """
        Index ranges from the checkpoint to to_block.
        The next range is fetched while the current one is persisted.
        """
        from_block = self._next_block()
        if from_block > to_block:
            return
        _LOG.info("Catching up blocks %s-%s", from_block, to_block)

        ranges = _split_range(from_block, to_block, self.block_range)
        next_range = next(ranges)
        prefetch = asyncio.create_task(self._fetch_range(*next_range))
        try:
            while prefetch is not None:
                fetched = await prefetch
                next_range = next(ranges, None)
                prefetch = (
                    asyncio.create_task(self._fetch_range(*next_range))
                    if next_range is not None
                    else None
                )
                await self._commit_range(fetched)
        finally:
            # Discard a fetch that will not be committed.
            if prefetch is not None:
                prefetch.cancel()
                await asyncio.gather(prefetch, return_exceptions=True)

    async def _fetch_range(self, from_block: int, to_block: int) -> _FetchedRange:
        """
        Fetch the logs of a range and the headers needed to validate them.
        The last header is read before and after the log query so that a
        reorganization racing the query is detected.
        """
        last_before = await self._call(self._require_block, to_block)
        logs = await self._call(
            self.chain.get_logs, from_block, to_block, self.log_filter
        )
        numbers = sorted(
            {from_block, to_block} | {log.block_number for log in logs}
        )
        headers = await self._fetch_headers(numbers)

        if headers[to_block].hash != last_before.hash:
            raise ReorgDetectedError(
                to_block, "block hash changed while fetching the range"
            )
        for log in logs:
            if log.removed or log.block_hash != headers[log.block_number].hash:
                raise ReorgDetectedError(
                    log.block_number,
                    f"log {log.transaction_hash}:{log.log_index} is not in the "
                    f"canonical block {headers[log.block_number].hash}",
                )
        return _FetchedRange(
            from_block,
            to_block,
            sorted(logs, key=lambda log: log.sort_key),
            headers,
        )

    async def _fetch_headers(self, numbers: List[int]) -> Dict[int, BlockHeader]:
        """
        Fetch block headers in batches of HEADER_FETCH_CONCURRENCY requests.
        A failed request cancels the rest of its batch.
        """
        headers = {}
        for i in range(0, len(numbers), HEADER_FETCH_CONCURRENCY):
            batch = numbers[i : i + HEADER_FETCH_CONCURRENCY]
            tasks = [
                asyncio.ensure_future(self._call(self._require_block, n))
                for n in batch
            ]
            try:
                fetched = await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            headers.update(zip(batch, fetched))
        return headers

    def _check_continuity(self, header: BlockHeader):
        """Check that a block extends the block recorded at the checkpoint."""
        checkpoint = self._checkpoint
        if (
            checkpoint is None
            or checkpoint.block_hash is None
            or header.number != checkpoint.block_number + 1
        ):
            return
        if header.parent_hash != checkpoint.block_hash:
            raise ReorgDetectedError(
                header.number,
                f"parent hash {header.parent_hash} does not match "
                f"checkpoint block {checkpoint.block_number} ({checkpoint.block_hash})",
            )

    def _decode(
        self, logs: List[LogEntry], headers: Dict[int, BlockHeader]
    ) -> Tuple[List[DomainEvent], List[IndexedTransaction]]:
        events = []
        for log in logs:
            try:
                event = self.decoder.decode(log)
            except DecodingError as e:
                _LOG.warning("Skipping undecodable log: %s", e)
                continue
            if event is None:
                _LOG.debug(
                    "Ignoring log with unknown signature %s:%s",
                    log.transaction_hash,
                    log.log_index,
                )
                continue
            events.append(event)
        timestamps = {n: h.timestamp for n, h in headers.items()}
        return events, to_transactions(events, timestamps)

    async def _commit_range(self, fetched: _FetchedRange):
        """Persist a fetched range and move the checkpoint to its last block."""
        self._check_continuity(fetched.headers[fetched.from_block])
        events, transactions = self._decode(fetched.logs, fetched.headers)
        last = fetched.headers[fetched.to_block]
        checkpoint = Checkpoint(last.number, last.hash)
        inserted = await self._store_call(
            self.store.persist_batch,
            transactions,
            events,
            list(fetched.headers.values()),
            checkpoint,
        )
        self._checkpoint = checkpoint
        self._recoveries = 0
        _LOG.info(
            "Indexed blocks %s-%s: %s logs, %s events, %s new transactions",
            fetched.from_block,
            fetched.to_block,
            len(fetched.logs),
            len(events),
            inserted,
        )

    async def _replay_range(self, fetched: _FetchedRange) -> int:
        """
        Persist a range at or below the checkpoint without moving the checkpoint.
        Stored headers must match the fetched ones.
        """
        for number, header in fetched.headers.items():
            stored = await self._store_call(self.store.get_block, number)
            if stored is not None and stored.hash != header.hash:
                raise ReorgDetectedError(
                    number, f"stored hash {stored.hash} differs from {header.hash}"
                )
        events, transactions = self._decode(fetched.logs, fetched.headers)
        return await self._store_call(
            self.store.persist_batch,
            transactions,
            events,
            list(fetched.headers.values()),
            None,
        )

    ###############
    # Live mode
    ###############

    async def _pump(self, stream: AsyncIterator[LogEntry], queue: asyncio.Queue):
        """Move logs from the subscription into the bounded live queue."""
        try:
            async for log in stream:
                await queue.put(log)
            await queue.put(_STREAM_END)
        except asyncio.CancelledError:
            raise
        # Failures are handed to the main loop, which decides how to react.
        except Exception as e:  # pylint: disable=broad-except
            await queue.put(e)

    async def _follow(self):
        """
        Follow the chain through a log subscription until the stream is lost.
        Logs are grouped per block; a block is committed once a log of a later
        block arrives or the stream stays idle for poll_interval seconds.
        """
        stream = await self._call(self.chain.subscribe_logs, self.log_filter)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        pump = asyncio.create_task(self._pump(stream, queue))
        try:
            # Close the gap between the catch-up target and the subscription start.
            await self._sync_to_head()
            # Subscribed and in sync: the failure streak ends.
            self._stream_failures = 0
            pending: List[LogEntry] = []
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), self.poll_interval)
                except asyncio.TimeoutError:
                    await self._commit_live_block(pending)
                    pending = []
                    await self._sync_to_head()
                    continue

                if item is _STREAM_END:
                    await self._commit_live_block(pending)
                    raise ChainConnectionError("Log subscription ended")
                if isinstance(item, BaseException):
                    raise item

                log: LogEntry = item
                if log.removed:
                    raise ReorgDetectedError(
                        log.block_number,
                        f"node removed log {log.transaction_hash}:{log.log_index}",
                    )
                if (
                    self._checkpoint is not None
                    and log.block_number <= self._checkpoint.block_number
                ):
                    await self._replay_live_log(log)
                    continue
                if pending and log.block_number != pending[0].block_number:
                    if log.block_number < pending[0].block_number:
                        raise ReorgDetectedError(
                            log.block_number,
                            "log arrived after logs of block "
                            f"{pending[0].block_number}",
                        )
                    await self._commit_live_block(pending)
                    pending = []
                pending.append(log)
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _sync_to_head(self):
        """
        Index up to the confirmed head, or when already there,
        check that the checkpoint block is still canonical.
        """
        head = await self._call(self.chain.get_block_number)
        target = head - self.confirmations
        if self._next_block() <= target:
            await self._index_until(target)
            return
        checkpoint = self._checkpoint
        if checkpoint is None or checkpoint.block_hash is None:
            return
        header = await self._call(self.chain.get_block, checkpoint.block_number)
        if header is None or header.hash != checkpoint.block_hash:
            raise ReorgDetectedError(
                checkpoint.block_number, "checkpoint block is no longer canonical"
            )

    async def _commit_live_block(self, logs: List[LogEntry]):
        """Persist the logs of one live block and move the checkpoint to it."""
        if not logs:
            return
        number = logs[0].block_number
        # Back-fill any blocks the subscription skipped.
        if self._next_block() < number:
            await self._index_until(number - 1)

        # The subscription may not have delivered every log of the block yet,
        # so the block is committed from a full log query.
        fetched = await self._fetch_range(number, number)
        header = fetched.headers[number]
        for log in logs:
            if log.block_hash != header.hash:
                raise ReorgDetectedError(
                    number,
                    f"log block hash {log.block_hash} differs from "
                    f"header {header.hash}",
                )
        known = {(log.transaction_hash, log.log_index) for log in fetched.logs}
        missing = [
            log for log in logs if (log.transaction_hash, log.log_index) not in known
        ]
        if missing:
            fetched.logs = sorted(fetched.logs + missing, key=lambda log: log.sort_key)
        await self._commit_range(fetched)

    async def _replay_live_log(self, log: LogEntry):
        """
        Handle a live log for a block the checkpoint already covers.
        The whole block is re-fetched and replayed so that mint pairing
        sees every log of the block.
        """
        if self._last_replayed == (log.block_number, log.block_hash):
            return
        stored = await self._store_call(self.store.get_block, log.block_number)
        if stored is not None and stored.hash != log.block_hash:
            raise ReorgDetectedError(
                log.block_number,
                f"log block hash {log.block_hash} differs from stored {stored.hash}",
            )
        fetched = await self._fetch_range(log.block_number, log.block_number)
        inserted = await self._replay_range(fetched)
        self._last_replayed = (log.block_number, log.block_hash)
        _LOG.debug(
            "Replayed block %s: %s new transactions", log.block_number, inserted
        )

    ###############
    # Reorg recovery
    ###############

    async def _recover(self, error: ReorgDetectedError):
        """Roll the store back to the last block shared with the canonical chain."""
        _LOG.warning("%s", error)
        self._recoveries += 1
        if self._recoveries > self.max_attempts:
            raise RetriesExhaustedError(
                f"Recovery did not converge after {self.max_attempts} attempts: {error}"
            ) from error

        self._last_replayed = None
        self._checkpoint = await self._store_call(self.store.get_checkpoint)
        checkpoint = self._checkpoint
        if checkpoint is None:
            return

        floor = max(
            checkpoint.block_number - self.max_reorg_depth, self.start_block - 1
        )
        stored_headers = await self._store_call(
            self.store.get_blocks_between, floor, checkpoint.block_number
        )
        ancestor = None
        for stored in reversed(stored_headers):
            canonical = await self._call(self.chain.get_block, stored.number)
            if canonical is not None and canonical.hash == stored.hash:
                ancestor = Checkpoint(stored.number, stored.hash)
                break

        if ancestor is None:
            floor_header = (
                await self._call(self.chain.get_block, floor) if floor >= 0 else None
            )
            ancestor = Checkpoint(
                floor, floor_header.hash if floor_header is not None else None
            )
            _LOG.warning(
                "No common ancestor within %s blocks, rolling back to block %s",
                self.max_reorg_depth,
                floor,
            )

        await self._store_call(
            self.store.rollback_to, ancestor.block_number, ancestor.block_hash
        )
        self._checkpoint = (
            ancestor if ancestor.block_number >= self.start_block else None
        )

    ###############
    # Maintenance
    ###############

    async def rescan(self, from_block: int, to_block: Optional[int] = None) -> int:
        """
        Re-scan a historical range and record anything missing.
        The checkpoint is never moved backwards; blocks above it are
        left for the normal catch-up.

        :param from_block: First block to scan.
        :param to_block: Last block to scan. Defaults to the checkpoint.
        :return: The number of newly recorded transactions.
        """
        if self._checkpoint is None:
            self._checkpoint = await self._store_call(self.store.get_checkpoint)
        if self._checkpoint is None:
            _LOG.info("Nothing indexed yet, nothing to rescan")
            return 0
        if to_block is None or to_block > self._checkpoint.block_number:
            to_block = self._checkpoint.block_number
        if from_block > to_block:
            return 0

        _LOG.info("Rescanning blocks %s-%s", from_block, to_block)
        inserted = 0
        for range_from, range_to in _split_range(
            from_block, to_block, self.block_range
        ):
            fetched = await self._fetch_range(range_from, range_to)
            inserted += await self._replay_range(fetched)
        _LOG.info(
            "Rescan of blocks %s-%s recorded %s transactions",
            from_block,
            to_block,
            inserted,
        )
        return inserted
