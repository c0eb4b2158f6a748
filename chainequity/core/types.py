"""
Core types shared by the chain client, decoder, store and indexer.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import pandas as pd

from chainequity.utils.hex_utils import bytes_to_hex_str_auto, normalize_address, to_int

_TX_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")
_DECIMAL_RE = re.compile(r"^[0-9]+$")

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 100


class EventType(str, Enum):
    """Transaction categories recorded in the transactions table."""

    ISSUED = "ISSUED"
    TRANSFER = "TRANSFER"


class IndexerState(str, Enum):
    """States of the indexer engine."""

    STOPPED = "STOPPED"
    CATCHING_UP = "CATCHING_UP"
    LIVE = "LIVE"
    RECOVERING = "RECOVERING"
    FAILED = "FAILED"


@dataclass(frozen=True)
class LogEntry:
    """
    A raw log as delivered by a node, normalized to lowercase hex strings.
    """

    address: str
    topics: Tuple[str, ...]
    data: str
    transaction_hash: str
    log_index: int
    block_number: int
    block_hash: str
    removed: bool = False

    @classmethod
    def from_web3(cls, raw: Mapping[str, Any]) -> "LogEntry":
        """
        Create a LogEntry from a web3 log receipt or a raw JSON-RPC log object.

        :param raw: The log as returned by eth_getLogs or eth_subscribe.
        :return: The normalized log entry.
        """
        return cls(
            address=bytes_to_hex_str_auto(raw["address"]),
            topics=tuple(bytes_to_hex_str_auto(t) for t in raw.get("topics", [])),
            data=bytes_to_hex_str_auto(raw.get("data") or b""),
            transaction_hash=bytes_to_hex_str_auto(raw["transactionHash"]),
            log_index=to_int(raw["logIndex"]),
            block_number=to_int(raw["blockNumber"]),
            block_hash=bytes_to_hex_str_auto(raw["blockHash"]),
            removed=bool(raw.get("removed", False)),
        )

    @property
    def sort_key(self) -> Tuple[int, int]:
        return self.block_number, self.log_index


@dataclass(frozen=True)
class BlockHeader:
    """The subset of a block header the indexer relies on."""

    number: int
    hash: str
    parent_hash: str
    timestamp: int

    @classmethod
    def from_web3(cls, raw: Mapping[str, Any]) -> "BlockHeader":
        return cls(
            number=to_int(raw["number"]),
            hash=bytes_to_hex_str_auto(raw["hash"]),
            parent_hash=bytes_to_hex_str_auto(raw["parentHash"]),
            timestamp=to_int(raw["timestamp"]),
        )


@dataclass(frozen=True)
class Checkpoint:
    """The last block fully processed by the indexer."""

    block_number: int
    block_hash: Optional[str]


@dataclass(frozen=True)
class DomainEvent:
    """
    A decoded contract event.
    Integer arguments wider than 53 bits are kept as Python ints;
    they are only converted to decimal strings at the persistence boundary.
    """

    name: str
    contract_address: str
    transaction_hash: str
    log_index: int
    block_number: int
    block_hash: str
    args: Dict[str, Any] = field(default_factory=dict)

    @property
    def sort_key(self) -> Tuple[int, int]:
        return self.block_number, self.log_index


@dataclass(frozen=True)
class IndexedTransaction:
    """
    One recorded ISSUED or TRANSFER event instance.
    (transaction_hash, log_index) is the deduplication key.
    """

    transaction_hash: str
    log_index: int
    block_number: int
    amount: str
    event_type: EventType
    to_address: Optional[str]
    from_address: Optional[str] = None
    block_timestamp: Optional[int] = None

    def __post_init__(self):
        # Normalize in place; the dataclass is frozen so go through object.__setattr__.
        tx_hash = bytes_to_hex_str_auto(self.transaction_hash)
        if not _TX_HASH_RE.match(tx_hash):
            raise ValueError(f"Invalid transaction hash: {self.transaction_hash}")
        object.__setattr__(self, "transaction_hash", tx_hash)

        if self.log_index < 0 or self.block_number < 0:
            raise ValueError("log_index and block_number must be non-negative")

        amount = str(self.amount)
        if not _DECIMAL_RE.match(amount):
            raise ValueError(
                f"Amount must be a non-negative integer string, got {self.amount!r}"
            )
        object.__setattr__(self, "amount", amount)

        event_type = EventType(self.event_type)
        object.__setattr__(self, "event_type", event_type)

        from_address = (
            normalize_address(self.from_address) if self.from_address else None
        )
        to_address = normalize_address(self.to_address) if self.to_address else None
        if to_address is None:
            raise ValueError("to_address is required")
        if event_type == EventType.ISSUED and from_address is not None:
            raise ValueError("ISSUED transactions have no from_address")
        if event_type == EventType.TRANSFER and from_address is None:
            raise ValueError("TRANSFER transactions require a from_address")
        object.__setattr__(self, "from_address", from_address)
        object.__setattr__(self, "to_address", to_address)

    @property
    def sort_key(self) -> Tuple[int, int]:
        return self.block_number, self.log_index

    @property
    def key(self) -> Tuple[str, int]:
        return self.transaction_hash, self.log_index

    def to_dict(self) -> dict:
        """Serialize with camelCase keys, the shape consumed by the API layer."""
        return {
            "txHash": self.transaction_hash,
            "logIndex": self.log_index,
            "blockNumber": self.block_number,
            "blockTimestamp": self.block_timestamp,
            "fromAddress": self.from_address,
            "toAddress": self.to_address,
            "amount": self.amount,
            "eventType": self.event_type.value,
        }


def to_unix_seconds(ts: Union[int, str, pd.Timestamp, None]) -> Optional[int]:
    """
    Convert a time filter bound to Unix seconds.

    :param ts: Unix seconds, a pandas timestamp or a string pandas can parse.
        Naive values are taken to be UTC.
    :return: Unix seconds or None.
    """
    if ts is None:
        return None
    if isinstance(ts, int):
        if ts < 0:
            raise ValueError("Timestamps must be non-negative")
        return ts
    stamp = pd.Timestamp(ts)
    if stamp.tzinfo is None:
        stamp = stamp.tz_localize("UTC")
    return int(stamp.timestamp())


@dataclass
class TransactionFilter:
    """
    Filters for transaction queries.

    Attributes:
        event_type: Only return ISSUED or TRANSFER rows.
        address: Only return rows where the address is the sender or the recipient.
        from_time: Inclusive lower bound on the block timestamp.
        to_time: Inclusive upper bound on the block timestamp.
    """

    event_type: Optional[Union[EventType, str]] = None
    address: Optional[str] = None
    from_time: Optional[Union[int, str, pd.Timestamp]] = None
    to_time: Optional[Union[int, str, pd.Timestamp]] = None

    def __post_init__(self):
        if self.event_type is not None:
            try:
                self.event_type = EventType(self.event_type)
            except ValueError as e:
                raise ValueError(
                    "Invalid event type. Must be 'ISSUED' or 'TRANSFER'"
                ) from e
        if self.address is not None:
            self.address = normalize_address(self.address)
        self.from_time = to_unix_seconds(self.from_time)
        self.to_time = to_unix_seconds(self.to_time)


@dataclass
class Pagination:
    """Limit/offset pagination, clamped to sane bounds."""

    limit: int = DEFAULT_PAGE_LIMIT
    offset: int = 0

    def __post_init__(self):
        self.limit = min(max(1, int(self.limit)), MAX_PAGE_LIMIT)
        self.offset = max(0, int(self.offset))


@dataclass
class TransactionPage:
    """A page of transactions plus the block the data is current through."""

    items: List[IndexedTransaction]
    total: int
    limit: int
    offset: int
    indexed_through_block: Optional[int]

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total

    def get_pd_data_frame(self) -> pd.DataFrame:
        """
        Return the page as a pandas DataFrame with UTC timestamps.
        Amounts stay decimal strings to preserve precision.
        """
        df = pd.DataFrame([t.to_dict() for t in self.items])
        if not df.empty:
            df["blockTimestamp"] = pd.to_datetime(
                df["blockTimestamp"], unit="s", utc=True
            )
        return df


@dataclass(frozen=True)
class Shareholder:
    """Projected shareholder state derived from indexed transactions."""

    address: str
    balance: str
    effective_balance: str
    approved: bool
    last_updated_block: int


@dataclass(frozen=True)
class TokenState:
    """Token-level state projected from the latest administrative events."""

    symbol: Optional[str]
    transfers_restricted: Optional[bool]
    split_factor: str
    linked_token: Optional[str]
    linked_cap_table: Optional[str]
