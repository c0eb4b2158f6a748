"""
SQL persistence store for indexed transactions, events, shareholder balances
and indexer checkpoint state.
The indexer engine is the only writer; the query layer reads through
the query methods below.
"""

import json
import logging
import time
from typing import Dict, List, Optional, Sequence

from sqlalchemy import asc, desc, func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, create_engine, select

from chainequity.core.errors import StoreCorruptionError
from chainequity.core.models import (
    BlockRecord,
    CheckpointRecord,
    EventRecord,
    MetaRecord,
    ShareholderRecord,
    TransactionRecord,
)
from chainequity.core.types import (
    BlockHeader,
    Checkpoint,
    DomainEvent,
    IndexedTransaction,
    Pagination,
    Shareholder,
    TokenState,
    TransactionFilter,
    TransactionPage,
)
from chainequity.utils.hex_utils import normalize_address
from chainequity.utils.log import get_default_logger

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)

SCHEMA_VERSION = "1"

# Split factors are fixed point with 18 decimals; 1e18 means no split.
SPLIT_FACTOR_ONE = 10**18

_CHECKPOINT_ID = 1


def _args_to_json(args: Dict) -> str:
    # Integers are stored as decimal strings so that uint256 values survive JSON.
    return json.dumps(
        {
            k: str(v) if isinstance(v, int) and not isinstance(v, bool) else v
            for k, v in args.items()
        },
        sort_keys=True,
    )


def _now_ms() -> int:
    return int(time.time() * 1000)


class SQLStore:
    """
    Persistence store based on a SQL database accessed with SQLModel.
    Every public write runs in a single database transaction.
    """

    def __init__(self, db_url: str, engine_kwargs: dict | None = None):
        """
        Initialize the store and create the schema if needed.

        :param db_url: SQLAlchemy database URL.
        :param engine_kwargs: Additional keyword arguments for create_engine.
        """
        if engine_kwargs is None:
            engine_kwargs = {}

        self.db_engine = create_engine(db_url, **engine_kwargs)
        self.create_tables()

    def create_tables(self):
        """Create the tables and record the schema version."""
        SQLModel.metadata.create_all(
            self.db_engine,
            tables=[
                TransactionRecord.__table__,
                EventRecord.__table__,
                ShareholderRecord.__table__,
                BlockRecord.__table__,
                CheckpointRecord.__table__,
                MetaRecord.__table__,
            ],
        )
        if self.get_meta("schema_version") is None:
            self.set_meta("schema_version", SCHEMA_VERSION)

    def close(self):
        self.db_engine.dispose()

    # Writes.

    def upsert_transaction(self, transaction: IndexedTransaction) -> bool:
        """
        Insert a transaction if its (hash, log index) key is new.
        A duplicate is a successful no-op.

        :param transaction: The transaction to record.
        :return: True if the row was inserted, False if it already existed.
        """
        with Session(self.db_engine) as session:
            try:
                inserted = self._insert_transaction(session, transaction)
                session.commit()
            except IntegrityError:
                # Another writer inserted the key after the lookup.
                session.rollback()
                _LOG.debug("Transaction %s:%s already stored", *transaction.key)
                return False
        return inserted

    def persist_batch(
        self,
        transactions: Sequence[IndexedTransaction],
        events: Sequence[DomainEvent] = (),
        blocks: Sequence[BlockHeader] = (),
        checkpoint: Optional[Checkpoint] = None,
    ) -> int:
        """
        Atomically record a batch and advance the checkpoint.
        Either everything is committed or nothing is.

        :param transactions: Transactions to record; duplicates are skipped.
        :param events: Decoded events to record; duplicates are skipped.
        :param blocks: Headers of the blocks covered by the batch.
        :param checkpoint: The new checkpoint, or None to leave it unchanged.
        :return: The number of newly inserted transactions.
        """
        with Session(self.db_engine) as session:
            if checkpoint is not None:
                self._check_checkpoint_forward(session, checkpoint.block_number)

            for header in sorted(blocks, key=lambda h: h.number):
                session.merge(
                    BlockRecord(
                        number=header.number,
                        hash=header.hash,
                        parent_hash=header.parent_hash,
                        timestamp=header.timestamp,
                    )
                )

            inserted = 0
            for transaction in sorted(transactions, key=lambda t: t.sort_key):
                if self._insert_transaction(session, transaction):
                    inserted += 1
            for event in sorted(events, key=lambda e: e.sort_key):
                self._insert_event(session, event)

            if checkpoint is not None:
                self._set_checkpoint(session, checkpoint)
            session.commit()

        return inserted

    def advance_checkpoint(self, block_number: int, block_hash: Optional[str]):
        """
        Move the checkpoint forward.

        :param block_number: The last fully processed block.
        :param block_hash: Its hash.
        """
        with Session(self.db_engine) as session:
            self._check_checkpoint_forward(session, block_number)
            self._set_checkpoint(session, Checkpoint(block_number, block_hash))
            session.commit()

    def delete_transactions_after_block(self, block_number: int) -> int:
        """
        Delete transactions, events and block headers above a block
        and rebuild the shareholder projection.
        The checkpoint is left untouched; use rollback_to for reorg recovery.

        :param block_number: The last block to keep.
        :return: The number of deleted transactions.
        """
        with Session(self.db_engine) as session:
            deleted = self._delete_after(session, block_number)
            self._rebuild_shareholders(session)
            session.commit()
        return deleted

    def rollback_to(self, block_number: int, block_hash: Optional[str]) -> int:
        """
        Roll the store back to a common ancestor block.
        This is the only operation allowed to move the checkpoint backwards.

        :param block_number: The ancestor block number.
        :param block_hash: The ancestor block hash.
        :return: The number of deleted transactions.
        """
        with Session(self.db_engine) as session:
            deleted = self._delete_after(session, block_number)
            self._set_checkpoint(session, Checkpoint(block_number, block_hash))
            self._rebuild_shareholders(session)
            session.commit()
        _LOG.info(
            "Rolled back to block %s (%s): %s transactions removed",
            block_number,
            block_hash,
            deleted,
        )
        return deleted

    def rebuild_shareholders(self):
        """Recompute the shareholder projection by replaying stored rows."""
        with Session(self.db_engine) as session:
            self._rebuild_shareholders(session)
            session.commit()

    def set_meta(self, key: str, value: str):
        with Session(self.db_engine) as session:
            session.merge(MetaRecord(key=key, value=str(value)))
            session.commit()

    def ensure_chain_id(self, chain_id: int):
        """
        Record the chain id on first use and verify it afterwards.

        :param chain_id: The chain id reported by the node.
        """
        stored = self.get_meta("chain_id")
        if stored is None:
            self.set_meta("chain_id", str(chain_id))
        elif int(stored) != chain_id:
            raise StoreCorruptionError(
                f"Store was indexed from chain {stored}, node reports chain {chain_id}"
            )

    # Reads.

    def get_checkpoint(self) -> Optional[Checkpoint]:
        with Session(self.db_engine) as session:
            record = session.get(CheckpointRecord, _CHECKPOINT_ID)
            if record is None:
                return None
            return Checkpoint(record.last_block_number, record.last_block_hash)

    def get_meta(self, key: str) -> Optional[str]:
        with Session(self.db_engine) as session:
            record = session.get(MetaRecord, key)
            return None if record is None else record.value

    def get_block(self, number: int) -> Optional[BlockHeader]:
        with Session(self.db_engine) as session:
            record = session.get(BlockRecord, number)
            return None if record is None else self._record_to_header(record)

    def get_blocks_between(self, low: int, high: int) -> List[BlockHeader]:
        """Return the stored headers in [low, high], ascending."""
        with Session(self.db_engine) as session:
            statement = (
                select(BlockRecord)
                .where(BlockRecord.number >= low, BlockRecord.number <= high)
                .order_by(asc(BlockRecord.number))
            )
            return [self._record_to_header(r) for r in session.exec(statement).all()]

    def query_transactions(
        self,
        filters: Optional[TransactionFilter] = None,
        pagination: Optional[Pagination] = None,
    ) -> TransactionPage:
        """
        Query transactions ordered by block number descending,
        then log index ascending.

        :param filters: Event type, address and time filters.
        :param pagination: Limit and offset.
        :return: The page, with the block the data is current through.
        """
        if filters is None:
            filters = TransactionFilter()
        if pagination is None:
            pagination = Pagination()

        conditions = []
        if filters.event_type is not None:
            conditions.append(TransactionRecord.event_type == filters.event_type.value)
        if filters.address is not None:
            conditions.append(
                or_(
                    TransactionRecord.from_address == filters.address,
                    TransactionRecord.to_address == filters.address,
                )
            )
        if filters.from_time is not None:
            conditions.append(TransactionRecord.block_timestamp >= filters.from_time)
        if filters.to_time is not None:
            conditions.append(TransactionRecord.block_timestamp <= filters.to_time)

        with Session(self.db_engine) as session:
            total = session.exec(
                select(func.count())
                .select_from(TransactionRecord)
                .where(*conditions)
            ).one()
            statement = (
                select(TransactionRecord)
                .where(*conditions)
                .order_by(
                    desc(TransactionRecord.block_number),
                    asc(TransactionRecord.log_index),
                )
                .offset(pagination.offset)
                .limit(pagination.limit)
            )
            items = [
                self._record_to_transaction(r) for r in session.exec(statement).all()
            ]
            checkpoint = session.get(CheckpointRecord, _CHECKPOINT_ID)

        return TransactionPage(
            items=items,
            total=int(total),
            limit=pagination.limit,
            offset=pagination.offset,
            indexed_through_block=(
                None if checkpoint is None else checkpoint.last_block_number
            ),
        )

    def get_transactions_by_hash(self, tx_hash: str) -> List[IndexedTransaction]:
        """Return the transactions recorded for a transaction hash, by log index."""
        tx_hash = tx_hash.lower()
        with Session(self.db_engine) as session:
            statement = (
                select(TransactionRecord)
                .where(TransactionRecord.tx_hash == tx_hash)
                .order_by(asc(TransactionRecord.log_index))
            )
            return [
                self._record_to_transaction(r) for r in session.exec(statement).all()
            ]

    def get_events_by_hash(self, tx_hash: str) -> List[DomainEvent]:
        """Return every decoded event of a transaction, by log index."""
        tx_hash = tx_hash.lower()
        with Session(self.db_engine) as session:
            statement = (
                select(EventRecord)
                .where(EventRecord.tx_hash == tx_hash)
                .order_by(asc(EventRecord.log_index))
            )
            return [self._record_to_event(r) for r in session.exec(statement).all()]

    def query_events(
        self,
        event_name: Optional[str] = None,
        pagination: Optional[Pagination] = None,
    ) -> List[DomainEvent]:
        """
        Query decoded events, newest block first.
        Integer arguments are returned as decimal strings.

        :param event_name: Only return events with this name.
        :param pagination: Limit and offset.
        :return: The events.
        """
        if pagination is None:
            pagination = Pagination()
        with Session(self.db_engine) as session:
            statement = select(EventRecord)
            if event_name is not None:
                statement = statement.where(EventRecord.name == event_name)
            statement = (
                statement.order_by(
                    desc(EventRecord.block_number), asc(EventRecord.log_index)
                )
                .offset(pagination.offset)
                .limit(pagination.limit)
            )
            return [self._record_to_event(r) for r in session.exec(statement).all()]

    def get_shareholders(self) -> List[Shareholder]:
        """Return all known shareholders, ordered by address."""
        with Session(self.db_engine) as session:
            split_factor = self._get_split_factor(session)
            records = session.exec(
                select(ShareholderRecord).order_by(asc(ShareholderRecord.address))
            ).all()
            return [self._record_to_shareholder(r, split_factor) for r in records]

    def get_shareholder(self, address: str) -> Optional[Shareholder]:
        address = normalize_address(address)
        with Session(self.db_engine) as session:
            record = session.get(ShareholderRecord, address)
            if record is None:
                return None
            return self._record_to_shareholder(record, self._get_split_factor(session))

    def get_token_state(self) -> TokenState:
        """Return the token state implied by the latest administrative events."""
        with Session(self.db_engine) as session:
            symbol = self._latest_event_args(session, "SymbolChanged")
            restricted = self._latest_event_args(session, "TransfersRestrictedChanged")
            linked = self._latest_event_args(session, "TokenLinked")
            return TokenState(
                symbol=None if symbol is None else symbol["newSymbol"],
                transfers_restricted=(
                    None if restricted is None else bool(restricted["restricted"])
                ),
                split_factor=str(self._get_split_factor(session)),
                linked_token=None if linked is None else linked["token"],
                linked_cap_table=None if linked is None else linked["capTable"],
            )

    # Session helpers.

    def _insert_transaction(
        self, session: Session, transaction: IndexedTransaction
    ) -> bool:
        if session.get(TransactionRecord, transaction.key) is not None:
            return False
        session.add(
            TransactionRecord(
                tx_hash=transaction.transaction_hash,
                log_index=transaction.log_index,
                block_number=transaction.block_number,
                block_timestamp=transaction.block_timestamp,
                from_address=transaction.from_address,
                to_address=transaction.to_address,
                amount=transaction.amount,
                event_type=transaction.event_type.value,
            )
        )
        session.flush()
        self._apply_transaction(session, transaction)
        return True

    def _insert_event(self, session: Session, event: DomainEvent) -> bool:
        key = (event.transaction_hash, event.log_index)
        if session.get(EventRecord, key) is not None:
            return False
        session.add(
            EventRecord(
                tx_hash=event.transaction_hash,
                log_index=event.log_index,
                name=event.name,
                contract_address=event.contract_address,
                block_number=event.block_number,
                block_hash=event.block_hash,
                args=_args_to_json(event.args),
            )
        )
        session.flush()
        if event.name in ("WalletApproved", "WalletRevoked"):
            self._apply_approval(
                session,
                event.args["wallet"],
                event.name == "WalletApproved",
                event.block_number,
            )
        return True

    def _get_or_create_shareholder(
        self, session: Session, address: str
    ) -> ShareholderRecord:
        record = session.get(ShareholderRecord, address)
        if record is None:
            record = ShareholderRecord(address=address)
            session.add(record)
            session.flush()
        return record

    def _apply_transaction(self, session: Session, transaction: IndexedTransaction):
        amount = int(transaction.amount)
        changes = [(transaction.to_address, amount)]
        if transaction.from_address is not None:
            changes.append((transaction.from_address, -amount))
        for address, delta in changes:
            record = self._get_or_create_shareholder(session, address)
            record.balance = str(int(record.balance) + delta)
            record.last_updated_block = max(
                record.last_updated_block, transaction.block_number
            )
            session.add(record)
        session.flush()

    def _apply_approval(
        self, session: Session, address: str, approved: bool, block_number: int
    ):
        record = self._get_or_create_shareholder(session, address)
        record.approved = approved
        record.last_updated_block = max(record.last_updated_block, block_number)
        session.add(record)
        session.flush()

    def _rebuild_shareholders(self, session: Session):
        for record in session.exec(select(ShareholderRecord)).all():
            session.delete(record)
        session.flush()

        transactions = session.exec(
            select(TransactionRecord).order_by(
                asc(TransactionRecord.block_number), asc(TransactionRecord.log_index)
            )
        ).all()
        for record in transactions:
            self._apply_transaction(session, self._record_to_transaction(record))

        approvals = session.exec(
            select(EventRecord)
            .where(EventRecord.name.in_(["WalletApproved", "WalletRevoked"]))
            .order_by(asc(EventRecord.block_number), asc(EventRecord.log_index))
        ).all()
        for record in approvals:
            args = json.loads(record.args)
            self._apply_approval(
                session,
                args["wallet"],
                record.name == "WalletApproved",
                record.block_number,
            )

    def _delete_after(self, session: Session, block_number: int) -> int:
        deleted = 0
        for model, column in (
            (TransactionRecord, TransactionRecord.block_number),
            (EventRecord, EventRecord.block_number),
            (BlockRecord, BlockRecord.number),
        ):
            records = session.exec(select(model).where(column > block_number)).all()
            for record in records:
                session.delete(record)
            if model is TransactionRecord:
                deleted = len(records)
        session.flush()
        return deleted

    def _check_checkpoint_forward(self, session: Session, block_number: int):
        record = session.get(CheckpointRecord, _CHECKPOINT_ID)
        if record is not None and block_number < record.last_block_number:
            raise StoreCorruptionError(
                f"Refusing to move checkpoint backwards from "
                f"{record.last_block_number} to {block_number}"
            )

    def _set_checkpoint(self, session: Session, checkpoint: Checkpoint):
        session.merge(
            CheckpointRecord(
                id=_CHECKPOINT_ID,
                last_block_number=checkpoint.block_number,
                last_block_hash=checkpoint.block_hash,
                updated_at=_now_ms(),
            )
        )

    def _latest_event_args(self, session: Session, name: str) -> Optional[dict]:
        record = session.exec(
            select(EventRecord)
            .where(EventRecord.name == name)
            .order_by(desc(EventRecord.block_number), desc(EventRecord.log_index))
            .limit(1)
        ).first()
        return None if record is None else json.loads(record.args)

    def _get_split_factor(self, session: Session) -> int:
        args = self._latest_event_args(session, "SplitExecuted")
        return SPLIT_FACTOR_ONE if args is None else int(args["newFactor"])

    # Record conversion.

    @staticmethod
    def _record_to_transaction(record: TransactionRecord) -> IndexedTransaction:
        return IndexedTransaction(
            transaction_hash=record.tx_hash,
            log_index=record.log_index,
            block_number=record.block_number,
            block_timestamp=record.block_timestamp,
            from_address=record.from_address,
            to_address=record.to_address,
            amount=record.amount,
            event_type=record.event_type,
        )

    @staticmethod
    def _record_to_event(record: EventRecord) -> DomainEvent:
        return DomainEvent(
            name=record.name,
            contract_address=record.contract_address,
            transaction_hash=record.tx_hash,
            log_index=record.log_index,
            block_number=record.block_number,
            block_hash=record.block_hash,
            args=json.loads(record.args),
        )

    @staticmethod
    def _record_to_header(record: BlockRecord) -> BlockHeader:
        return BlockHeader(
            number=record.number,
            hash=record.hash,
            parent_hash=record.parent_hash,
            timestamp=record.timestamp,
        )

    @staticmethod
    def _record_to_shareholder(
        record: ShareholderRecord, split_factor: int
    ) -> Shareholder:
        balance = int(record.balance)
        return Shareholder(
            address=record.address,
            balance=record.balance,
            effective_balance=str(balance * split_factor // SPLIT_FACTOR_ONE),
            approved=record.approved,
            last_updated_block=record.last_updated_block,
        )
