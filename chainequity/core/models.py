"""SQL models for the indexed cap-table data."""

from typing import Optional

from sqlmodel import Field, SQLModel


class TransactionRecord(SQLModel, table=True):
    """ORM model for the transactions table, one row per ISSUED or TRANSFER event."""

    __tablename__ = "transactions"
    tx_hash: str = Field(primary_key=True)
    log_index: int = Field(primary_key=True)
    block_number: int = Field(index=True)
    block_timestamp: Optional[int] = Field(default=None, index=True)
    from_address: Optional[str] = Field(default=None, index=True)
    to_address: str = Field(index=True)
    # Decimal string; token amounts exceed 64-bit integers.
    amount: str = Field(index=False)
    event_type: str = Field(index=True)


class EventRecord(SQLModel, table=True):
    """ORM model for the events table, every decoded contract event."""

    __tablename__ = "events"
    tx_hash: str = Field(primary_key=True)
    log_index: int = Field(primary_key=True)
    name: str = Field(index=True)
    contract_address: str = Field(index=False)
    block_number: int = Field(index=True)
    block_hash: str = Field(index=False)
    args: str = Field(index=False)


class ShareholderRecord(SQLModel, table=True):
    """ORM model for the shareholders table, the balance projection."""

    __tablename__ = "shareholders"
    address: str = Field(primary_key=True)
    balance: str = Field(default="0", index=False)
    approved: bool = Field(default=False, index=False)
    last_updated_block: int = Field(default=0, index=False)


class BlockRecord(SQLModel, table=True):
    """ORM model for the blocks table, the headers seen by the indexer."""

    __tablename__ = "blocks"
    number: int = Field(primary_key=True)
    hash: str = Field(index=False)
    parent_hash: str = Field(index=False)
    timestamp: int = Field(index=False)


class CheckpointRecord(SQLModel, table=True):
    """ORM model for the checkpoint table, a single row tracking indexing progress."""

    __tablename__ = "checkpoint"
    id: int = Field(default=1, primary_key=True)
    last_block_number: int = Field(index=False)
    last_block_hash: Optional[str] = Field(default=None, index=False)
    updated_at: int = Field(index=False)


class MetaRecord(SQLModel, table=True):
    """ORM model for the meta key/value table."""

    __tablename__ = "meta"
    key: str = Field(primary_key=True)
    value: str = Field(index=False)
