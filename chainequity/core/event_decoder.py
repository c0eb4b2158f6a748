"""
Decoding of ChainEquityToken and CapTable logs into domain events,
and projection of token movements into indexed transactions.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError as ABIDecodingError
from eth_utils import keccak

from chainequity.core.errors import DecodingError
from chainequity.core.types import DomainEvent, EventType, IndexedTransaction, LogEntry
from chainequity.utils.hex_utils import ZERO_ADDRESS, hex_str_to_bytes
from chainequity.utils.log import get_default_logger

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)

# Types whose indexed topic is a keccak hash of the value rather than the value itself.
_HASHED_TOPIC_TYPES = ("string", "bytes")


@dataclass(frozen=True)
class EventInput:
    """A single event parameter."""

    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventSpec:
    """An event definition, equivalent to one ABI event entry."""

    name: str
    inputs: Tuple[EventInput, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @property
    def topic(self) -> str:
        return "0x" + keccak(text=self.signature).hex()

    @property
    def indexed_inputs(self) -> Tuple[EventInput, ...]:
        return tuple(i for i in self.inputs if i.indexed)

    @property
    def data_inputs(self) -> Tuple[EventInput, ...]:
        return tuple(i for i in self.inputs if not i.indexed)


TRANSFER = EventSpec(
    "Transfer",
    (
        EventInput("from", "address", True),
        EventInput("to", "address", True),
        EventInput("value", "uint256"),
    ),
)
ISSUED = EventSpec(
    "Issued",
    (EventInput("to", "address", True), EventInput("amount", "uint256")),
)
SPLIT_EXECUTED = EventSpec(
    "SplitExecuted",
    (
        EventInput("oldFactor", "uint256", True),
        EventInput("newFactor", "uint256", True),
        EventInput("blockNumber", "uint256"),
    ),
)
WALLET_APPROVED = EventSpec(
    "WalletApproved",
    (EventInput("approver", "address", True), EventInput("wallet", "address", True)),
)
WALLET_REVOKED = EventSpec(
    "WalletRevoked",
    (EventInput("revoker", "address", True), EventInput("wallet", "address", True)),
)
TRANSFERS_RESTRICTED_CHANGED = EventSpec(
    "TransfersRestrictedChanged",
    (EventInput("restricted", "bool"),),
)
SYMBOL_CHANGED = EventSpec(
    "SymbolChanged",
    (EventInput("oldSymbol", "string"), EventInput("newSymbol", "string")),
)
CORPORATE_ACTION_RECORDED = EventSpec(
    "CorporateActionRecorded",
    (
        EventInput("actionId", "uint256", True),
        EventInput("actionType", "string", True),
        EventInput("blockNumber", "uint256"),
    ),
)
TOKEN_LINKED = EventSpec(
    "TokenLinked",
    (EventInput("capTable", "address", True), EventInput("token", "address", True)),
)

KNOWN_EVENTS: Tuple[EventSpec, ...] = (
    TRANSFER,
    ISSUED,
    SPLIT_EXECUTED,
    WALLET_APPROVED,
    WALLET_REVOKED,
    TRANSFERS_RESTRICTED_CHANGED,
    SYMBOL_CHANGED,
    CORPORATE_ACTION_RECORDED,
    TOKEN_LINKED,
)


class EventDecoder:
    """
    Decodes raw logs against the known event signatures.
    Unknown signatures decode to None so that contract upgrades
    adding new events do not stop the indexer.
    """

    def __init__(self, events: Sequence[EventSpec] = KNOWN_EVENTS):
        self.events = tuple(events)
        self._by_topic: Dict[str, EventSpec] = {e.topic: e for e in self.events}

    @property
    def topics(self) -> List[str]:
        """The topic0 values of all known events, for log filters."""
        return list(self._by_topic.keys())

    def decode(self, log: LogEntry) -> Optional[DomainEvent]:
        """
        Decode a log into a domain event.

        :param log: The raw log.
        :return: The domain event, or None if the signature is unknown.
        """
        if not log.topics:
            return None
        spec = self._by_topic.get(log.topics[0])
        if spec is None:
            return None

        indexed_inputs = spec.indexed_inputs
        if len(log.topics) != 1 + len(indexed_inputs):
            raise DecodingError(
                f"{spec.name} log {log.transaction_hash}:{log.log_index} has "
                f"{len(log.topics) - 1} indexed topics, expected {len(indexed_inputs)}"
            )

        args = {}
        try:
            for event_input, topic in zip(indexed_inputs, log.topics[1:]):
                if event_input.type in _HASHED_TOPIC_TYPES:
                    args[event_input.name + "Hash"] = topic
                    continue
                (value,) = abi_decode([event_input.type], hex_str_to_bytes(topic))
                args[event_input.name] = self._normalize_value(event_input.type, value)

            data_inputs = spec.data_inputs
            values = abi_decode(
                [i.type for i in data_inputs], hex_str_to_bytes(log.data)
            )
            for event_input, value in zip(data_inputs, values):
                args[event_input.name] = self._normalize_value(event_input.type, value)
        except (ABIDecodingError, ValueError, TypeError) as e:
            raise DecodingError(
                f"Failed to decode {spec.name} log "
                f"{log.transaction_hash}:{log.log_index}: {e}"
            ) from e

        return DomainEvent(
            name=spec.name,
            contract_address=log.address,
            transaction_hash=log.transaction_hash,
            log_index=log.log_index,
            block_number=log.block_number,
            block_hash=log.block_hash,
            args=args,
        )

    @staticmethod
    def _normalize_value(abi_type: str, value):
        if abi_type == "address":
            return value.lower()
        return value


def to_transactions(
    events: Sequence[DomainEvent], block_timestamps: Mapping[int, int]
) -> List[IndexedTransaction]:
    """
    Project Issued and Transfer events into indexed transactions.

    A Transfer from the zero address is a mint and is classified as ISSUED.
    The token emits both Transfer(0x0, to, amount) and Issued(to, amount)
    for one mint, so a zero-address Transfer paired with an Issued log
    for the same recipient and amount in the same transaction is dropped
    in favour of the Issued log.
    The events passed in must cover whole blocks for the pairing to hold.

    :param events: Decoded events, in any order.
    :param block_timestamps: Block timestamps by block number; missing blocks give None.
    :return: The transactions in (block, log index) order.
    """
    issued_mints = {
        (e.transaction_hash, e.args["to"], e.args["amount"])
        for e in events
        if e.name == ISSUED.name
    }

    transactions = []
    for event in sorted(events, key=lambda e: e.sort_key):
        if event.name == ISSUED.name:
            from_address = None
            to_address = event.args["to"]
            amount = event.args["amount"]
            event_type = EventType.ISSUED
        elif event.name == TRANSFER.name:
            from_address = event.args["from"]
            to_address = event.args["to"]
            amount = event.args["value"]
            event_type = EventType.TRANSFER
            if from_address == ZERO_ADDRESS:
                if (event.transaction_hash, to_address, amount) in issued_mints:
                    _LOG.debug(
                        "Mint transfer %s:%s is recorded by its Issued log",
                        event.transaction_hash,
                        event.log_index,
                    )
                    continue
                from_address = None
                event_type = EventType.ISSUED
        else:
            continue

        transactions.append(
            IndexedTransaction(
                transaction_hash=event.transaction_hash,
                log_index=event.log_index,
                block_number=event.block_number,
                block_timestamp=block_timestamps.get(event.block_number),
                from_address=from_address,
                to_address=to_address,
                amount=str(amount),
                event_type=event_type,
            )
        )
    return transactions
