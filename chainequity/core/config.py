"""
Indexer configuration loaded from the environment or a .env file.
"""

import logging
import os
import pprint
from dataclasses import asdict, dataclass
from typing import Optional, Union

from dotenv import load_dotenv

from chainequity.utils.error_utils import check_for_missing_env_vars, get_number_env_var
from chainequity.utils.log import get_default_logger

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)

ENV_PREFIX = "CHAINEQUITY_"


@dataclass(frozen=True)
class IndexerConfig:
    """
    Settings for the indexer engine and its collaborators.

    Attributes:
        node_rpc_url: Node HTTP RPC URL, the polling transport.
        db_url: SQLAlchemy URL of the persistence store.
        node_ws_url: Node WebSocket RPC URL, the streaming transport.
        token_address: ChainEquityToken contract address.
        cap_table_address: CapTable contract address.
        chain_id: Expected chain id; checked against the node on start.
        start_block: Block to start from when there is no checkpoint.
        confirmations: Blocks behind head the catch-up scan stops at.
        block_range: Maximum number of blocks per eth_getLogs query.
        max_attempts: Attempts per chain call before the engine fails.
        retry_delay: Initial retry delay in seconds, doubled per attempt.
        call_timeout: Timeout in seconds for each chain call.
        max_reorg_depth: Deepest reorganization the engine will unwind.
        poll_interval: Idle seconds after which live mode checks the head.
        queue_size: Capacity of the live log buffer.
    """

    node_rpc_url: str
    db_url: str
    node_ws_url: Optional[str] = None
    token_address: Optional[str] = None
    cap_table_address: Optional[str] = None
    chain_id: Optional[int] = None
    start_block: int = 0
    confirmations: int = 0
    block_range: int = 1000
    max_attempts: int = 5
    retry_delay: float = 1
    call_timeout: float = 30
    max_reorg_depth: int = 64
    poll_interval: float = 10
    queue_size: int = 1000

    def __post_init__(self):
        if self.start_block < 0:
            raise ValueError("start_block must be non-negative")
        if self.confirmations < 0:
            raise ValueError("confirmations must be non-negative")
        if self.block_range < 1:
            raise ValueError("block_range must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_reorg_depth < 1:
            raise ValueError("max_reorg_depth must be at least 1")
        if self.queue_size < 1:
            raise ValueError("queue_size must be at least 1")

    @property
    def contract_addresses(self):
        return [a for a in (self.token_address, self.cap_table_address) if a]

    @staticmethod
    def get_init_args_from_env(dotenv_path: Union[str, None] = None) -> dict:
        """
        Read the configuration from environment variables.

        :param dotenv_path: Path to a .env file loaded before reading the environment.
        :return: Keyword arguments for IndexerConfig.
        """
        if dotenv_path:
            load_dotenv(dotenv_path, verbose=True, override=True)
        required_args = {
            "node_rpc_url": os.getenv(ENV_PREFIX + "NODE_RPC_URL"),
            "db_url": os.getenv(ENV_PREFIX + "DB_URL"),
        }
        # Check for missing environment variables since these are unrecoverable.
        check_for_missing_env_vars(required_args)

        defaults = IndexerConfig(**required_args)
        init_args = {
            **required_args,
            "node_ws_url": os.getenv(ENV_PREFIX + "NODE_WS_URL") or None,
            "token_address": os.getenv(ENV_PREFIX + "TOKEN_ADDRESS") or None,
            "cap_table_address": os.getenv(ENV_PREFIX + "CAP_TABLE_ADDRESS") or None,
            "chain_id": get_number_env_var(ENV_PREFIX + "CHAIN_ID", None),
            "start_block": get_number_env_var(
                ENV_PREFIX + "START_BLOCK", defaults.start_block
            ),
            "confirmations": get_number_env_var(
                ENV_PREFIX + "CONFIRMATION_BLOCKS", defaults.confirmations
            ),
            "block_range": get_number_env_var(
                ENV_PREFIX + "BLOCK_RANGE", defaults.block_range
            ),
            "max_attempts": get_number_env_var(
                ENV_PREFIX + "MAX_ATTEMPTS", defaults.max_attempts
            ),
            "retry_delay": get_number_env_var(
                ENV_PREFIX + "RETRY_DELAY", defaults.retry_delay, float
            ),
            "call_timeout": get_number_env_var(
                ENV_PREFIX + "CALL_TIMEOUT", defaults.call_timeout, float
            ),
            "max_reorg_depth": get_number_env_var(
                ENV_PREFIX + "MAX_REORG_DEPTH", defaults.max_reorg_depth
            ),
            "poll_interval": get_number_env_var(
                ENV_PREFIX + "POLL_INTERVAL", defaults.poll_interval, float
            ),
        }
        _LOG.debug(
            "IndexerConfig.get_init_args_from_env(): init_args =\n%s",
            pprint.pformat(init_args),
        )
        return init_args

    @staticmethod
    def from_env(dotenv_path: Union[str, None] = None) -> "IndexerConfig":
        return IndexerConfig(**IndexerConfig.get_init_args_from_env(dotenv_path))

    def to_dict(self) -> dict:
        return asdict(self)
