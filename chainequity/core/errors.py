"""
Exceptions raised by the chainequity indexer.
"""

from typing import Optional


class IndexerError(Exception):
    """Base exception for indexer errors."""


class ChainConnectionError(IndexerError, ConnectionError):
    """
    A chain client call failed for a connectivity reason:
    node unreachable, timeout or a dropped subscription.
    These errors are retried.
    """


class RetriesExhaustedError(IndexerError):
    """A transient failure persisted through every retry attempt."""


class DecodingError(IndexerError, ValueError):
    """A log matched a known event signature but could not be decoded."""


class ReorgDetectedError(IndexerError):
    """
    The chain the indexer followed was reorganized.

    :param block_number: The first block found to be inconsistent.
    :param reason: Human readable description of what did not match.
    """

    def __init__(self, block_number: int, reason: Optional[str] = None):
        self.block_number = block_number
        self.reason = reason
        message = f"Chain reorganization detected at block {block_number}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class StoreCorruptionError(IndexerError):
    """The persisted state is inconsistent and the indexer must not advance."""
