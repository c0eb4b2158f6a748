"""chainequity

Event indexer for the ChainEquity cap-table platform
"""

from chainequity.core.chain_client import ChainClient, LogFilter
from chainequity.core.config import IndexerConfig
from chainequity.core.errors import (
    ChainConnectionError,
    DecodingError,
    IndexerError,
    ReorgDetectedError,
    RetriesExhaustedError,
    StoreCorruptionError,
)
from chainequity.core.event_decoder import EventDecoder, to_transactions
from chainequity.core.failover_chain_client import FailoverChainClient
from chainequity.core.indexer import EventIndexer
from chainequity.core.indexer_service import IndexerService
from chainequity.core.sql_store import SQLStore
from chainequity.core.types import (
    BlockHeader,
    Checkpoint,
    DomainEvent,
    EventType,
    IndexedTransaction,
    IndexerState,
    LogEntry,
    Pagination,
    Shareholder,
    TokenState,
    TransactionFilter,
    TransactionPage,
)
from chainequity.core.web3_chain_client import (
    Web3HTTPChainClient,
    Web3WebSocketChainClient,
    create_chain_client,
)
from chainequity.utils.log import get_default_logger

__all__ = [
    "ChainClient",
    "LogFilter",
    "Web3HTTPChainClient",
    "Web3WebSocketChainClient",
    "FailoverChainClient",
    "create_chain_client",
    "EventDecoder",
    "to_transactions",
    "SQLStore",
    "EventIndexer",
    "IndexerService",
    "IndexerConfig",
    # Types
    "BlockHeader",
    "Checkpoint",
    "DomainEvent",
    "EventType",
    "IndexedTransaction",
    "IndexerState",
    "LogEntry",
    "Pagination",
    "Shareholder",
    "TokenState",
    "TransactionFilter",
    "TransactionPage",
    # Errors
    "IndexerError",
    "ChainConnectionError",
    "DecodingError",
    "ReorgDetectedError",
    "RetriesExhaustedError",
    "StoreCorruptionError",
    "get_default_logger",
]
