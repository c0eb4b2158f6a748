"""
chainequity test utils
"""

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass, replace
from typing import AsyncIterator, Dict, List, Optional, Sequence

from eth_abi import encode
from eth_utils import keccak

from chainequity.core.chain_client import ChainClient, LogFilter
from chainequity.core.errors import ChainConnectionError
from chainequity.core.event_decoder import (
    CORPORATE_ACTION_RECORDED,
    ISSUED,
    SPLIT_EXECUTED,
    SYMBOL_CHANGED,
    TOKEN_LINKED,
    TRANSFER,
    TRANSFERS_RESTRICTED_CHANGED,
    WALLET_APPROVED,
    WALLET_REVOKED,
)
from chainequity.core.sql_store import SQLStore
from chainequity.core.types import BlockHeader, LogEntry
from chainequity.utils.hex_utils import ZERO_ADDRESS
from chainequity.utils.log import get_default_logger

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)

TOKEN_ADDRESS = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
CAP_TABLE_ADDRESS = "0xe7f1725e7734ce288f8367e1bb143e90bb3f0512"
ALICE = "0x70997970c51812dc3a010c7d01b50e0d17dc79c8"
BOB = "0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc"
CAROL = "0x90f79bf6eb2c4f870365e785982e1f101e93b906"

CHAIN_ID = 31337
GENESIS_TIMESTAMP = 1_700_000_000
BLOCK_TIME = 12

# 1000 shares with 18 decimals.
SHARES = 10**18


def tx_hash(n: int) -> str:
    """A deterministic transaction hash."""
    return "0x" + f"{n:064x}"


def address_topic(address: str) -> str:
    return "0x" + encode(["address"], [address]).hex()


def uint_topic(value: int) -> str:
    return "0x" + encode(["uint256"], [value]).hex()


@dataclass(frozen=True)
class LogTemplate:
    """A log before it is placed in a block."""

    address: str
    topics: Sequence[str]
    data: str
    transaction_hash: str


def transfer(from_address: str, to_address: str, value: int, tx: str) -> LogTemplate:
    return LogTemplate(
        TOKEN_ADDRESS,
        (TRANSFER.topic, address_topic(from_address), address_topic(to_address)),
        "0x" + encode(["uint256"], [value]).hex(),
        tx,
    )


def issued(to_address: str, amount: int, tx: str) -> LogTemplate:
    return LogTemplate(
        TOKEN_ADDRESS,
        (ISSUED.topic, address_topic(to_address)),
        "0x" + encode(["uint256"], [amount]).hex(),
        tx,
    )


def mint(to_address: str, amount: int, tx: str) -> List[LogTemplate]:
    """The logs the token emits for one mint: Transfer from zero, then Issued."""
    return [
        transfer(ZERO_ADDRESS, to_address, amount, tx),
        issued(to_address, amount, tx),
    ]


def wallet_approved(wallet: str, tx: str, approver: str = CAROL) -> LogTemplate:
    return LogTemplate(
        TOKEN_ADDRESS,
        (WALLET_APPROVED.topic, address_topic(approver), address_topic(wallet)),
        "0x",
        tx,
    )


def wallet_revoked(wallet: str, tx: str, revoker: str = CAROL) -> LogTemplate:
    return LogTemplate(
        TOKEN_ADDRESS,
        (WALLET_REVOKED.topic, address_topic(revoker), address_topic(wallet)),
        "0x",
        tx,
    )


def split_executed(
    old_factor: int, new_factor: int, block: int, tx: str
) -> LogTemplate:
    return LogTemplate(
        TOKEN_ADDRESS,
        (SPLIT_EXECUTED.topic, uint_topic(old_factor), uint_topic(new_factor)),
        "0x" + encode(["uint256"], [block]).hex(),
        tx,
    )


def symbol_changed(old_symbol: str, new_symbol: str, tx: str) -> LogTemplate:
    return LogTemplate(
        TOKEN_ADDRESS,
        (SYMBOL_CHANGED.topic,),
        "0x" + encode(["string", "string"], [old_symbol, new_symbol]).hex(),
        tx,
    )


def transfers_restricted_changed(restricted: bool, tx: str) -> LogTemplate:
    return LogTemplate(
        TOKEN_ADDRESS,
        (TRANSFERS_RESTRICTED_CHANGED.topic,),
        "0x" + encode(["bool"], [restricted]).hex(),
        tx,
    )


def corporate_action_recorded(
    action_id: int, action_type: str, block: int, tx: str
) -> LogTemplate:
    return LogTemplate(
        CAP_TABLE_ADDRESS,
        (
            CORPORATE_ACTION_RECORDED.topic,
            uint_topic(action_id),
            "0x" + keccak(text=action_type).hex(),
        ),
        "0x" + encode(["uint256"], [block]).hex(),
        tx,
    )


def token_linked(cap_table: str, token: str, tx: str) -> LogTemplate:
    return LogTemplate(
        CAP_TABLE_ADDRESS,
        (TOKEN_LINKED.topic, address_topic(cap_table), address_topic(token)),
        "0x",
        tx,
    )


def make_log(
    template: LogTemplate,
    block_number: int = 1,
    log_index: int = 0,
    block_hash: Optional[str] = None,
) -> LogEntry:
    """Place a log template at a fixed position, for decoder tests."""
    return LogEntry(
        address=template.address,
        topics=tuple(template.topics),
        data=template.data,
        transaction_hash=template.transaction_hash,
        log_index=log_index,
        block_number=block_number,
        block_hash=block_hash or block_hash_for("main", block_number),
    )


def block_hash_for(branch: str, number: int) -> str:
    return "0x" + keccak(text=f"{branch}:{number}").hex()


def create_test_store(directory: str) -> SQLStore:
    """Create a SQLite store usable from executor threads."""
    return SQLStore(
        f"sqlite:///{os.path.join(directory, 'chainequity.db')}",
        engine_kwargs={"connect_args": {"check_same_thread": False}},
    )


class TempStoreMixin:
    """Provides self.store backed by a SQLite file in a temporary directory."""

    def setUp(self):
        # pylint: disable=consider-using-with
        self._tmp_dir = tempfile.TemporaryDirectory()
        self.store = create_test_store(self._tmp_dir.name)

    def tearDown(self):
        self.store.close()
        self._tmp_dir.cleanup()


class FakeChainClient(ChainClient):
    """
    In-memory chain that can grow, fork and fail on demand.
    Blocks are numbered from 0 (genesis, no logs).
    """

    def __init__(self, chain_id: int = CHAIN_ID):
        self.chain_id = chain_id
        self.branch = "main"
        self.blocks: List[BlockHeader] = []
        self.logs: Dict[int, List[LogEntry]] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, int] = {}
        self.hangs: Dict[str, int] = {}
        self.max_concurrent_get_block = 0
        self._active_get_block = 0
        self.subscriptions = 0
        self.closed = False
        self._subscribers: List[asyncio.Queue] = []
        self._next_tx = 1
        self._append_block([], broadcast=False)

    @property
    def head(self) -> BlockHeader:
        return self.blocks[-1]

    def fail(self, method_name: str, times: int = 1):
        """Make the next calls of a method raise ChainConnectionError."""
        self.failures[method_name] = self.failures.get(method_name, 0) + times

    def hang(self, method_name: str, times: int = 1):
        """Make the next calls of a method block until they are cancelled."""
        self.hangs[method_name] = self.hangs.get(method_name, 0) + times

    def next_tx(self) -> str:
        tx = tx_hash(self._next_tx)
        self._next_tx += 1
        return tx

    def add_block(
        self, templates: Sequence[LogTemplate] = (), broadcast: bool = True
    ) -> BlockHeader:
        """Mine a block holding the given logs and push them to subscribers."""
        return self._append_block(list(templates), broadcast)

    def add_empty_blocks(self, count: int, broadcast: bool = True):
        for _ in range(count):
            self.add_block((), broadcast=broadcast)

    def fork(self, from_number: int, branch: str, emit_removed: bool = False):
        """
        Drop the blocks from from_number on; later blocks belong to a new branch.

        :param from_number: First orphaned block.
        :param branch: Name of the new branch, used to derive block hashes.
        :param emit_removed: Push the orphaned logs to subscribers with removed=True.
        """
        orphaned = [
            log
            for n in range(from_number, len(self.blocks))
            for log in self.logs.pop(n, [])
        ]
        del self.blocks[from_number:]
        self.branch = branch
        if emit_removed:
            for log in orphaned:
                self._broadcast(replace(log, removed=True))

    def redeliver(self, number: int):
        """Push the logs of a block to subscribers again."""
        for log in self.logs.get(number, []):
            self._broadcast(log)

    def deliver(self, number: int, log_index: int):
        """Push one log of a block to subscribers."""
        self._broadcast(self.logs[number][log_index])

    def end_subscriptions(self):
        """End every open subscription stream."""
        for queue in self._subscribers:
            queue.put_nowait(None)
        self._subscribers = []

    def _append_block(
        self, templates: List[LogTemplate], broadcast: bool
    ) -> BlockHeader:
        number = len(self.blocks)
        parent_hash = self.blocks[-1].hash if self.blocks else "0x" + "00" * 32
        header = BlockHeader(
            number=number,
            hash=block_hash_for(self.branch, number),
            parent_hash=parent_hash,
            timestamp=GENESIS_TIMESTAMP + number * BLOCK_TIME,
        )
        self.blocks.append(header)
        self.logs[number] = [
            make_log(t, number, i, header.hash) for i, t in enumerate(templates)
        ]
        if broadcast:
            for log in self.logs[number]:
                self._broadcast(log)
        return header

    def _broadcast(self, log: LogEntry):
        for queue in self._subscribers:
            queue.put_nowait(log)

    def _record(self, method_name: str, *args):
        self.calls.append((method_name, *args))
        if self.failures.get(method_name, 0) > 0:
            self.failures[method_name] -= 1
            raise ChainConnectionError(f"{method_name} unavailable")

    def calls_to(self, method_name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == method_name]

    async def _maybe_hang(self, method_name: str):
        if self.hangs.get(method_name, 0) > 0:
            self.hangs[method_name] -= 1
            await asyncio.Event().wait()

    async def get_chain_id(self) -> int:
        self._record("get_chain_id")
        return self.chain_id

    async def get_block_number(self) -> int:
        self._record("get_block_number")
        await self._maybe_hang("get_block_number")
        return self.head.number

    async def get_block(self, number: int) -> Optional[BlockHeader]:
        self._record("get_block", number)
        self._active_get_block += 1
        self.max_concurrent_get_block = max(
            self.max_concurrent_get_block, self._active_get_block
        )
        try:
            await asyncio.sleep(0)
        finally:
            self._active_get_block -= 1
        if 0 <= number < len(self.blocks):
            return self.blocks[number]
        return None

    async def get_logs(
        self, from_block: int, to_block: int, log_filter: LogFilter
    ) -> List[LogEntry]:
        self._record("get_logs", from_block, to_block)
        await self._maybe_hang("get_logs")
        return [
            log
            for n in range(from_block, min(to_block, self.head.number) + 1)
            for log in self.logs.get(n, [])
            if log_filter.matches(log)
        ]

    async def subscribe_logs(self, log_filter: LogFilter) -> AsyncIterator[LogEntry]:
        self._record("subscribe_logs")
        self.subscriptions += 1
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return self._iter_queue(queue, log_filter)

    async def _iter_queue(
        self, queue: asyncio.Queue, log_filter: LogFilter
    ) -> AsyncIterator[LogEntry]:
        while True:
            log = await queue.get()
            if log is None:
                return
            if log_filter.matches(log):
                yield log

    async def close(self):
        self.closed = True
        self.end_subscriptions()


async def wait_for_condition(condition, timeout: float = 5, interval: float = 0.01):
    """Poll a condition until it holds or the timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)
