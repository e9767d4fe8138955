"""
Persistence layer for indexed ledger data.

Every unique-keyed record is written through upsert so each projection step
can be re-run safely. Batched writes go through run_in_transaction.
"""

import time
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from registry_indexer.core.errors import ErrorKind, IndexerError
from registry_indexer.core.models import IndexerState, LedgerOperation, LedgerTransaction
from registry_indexer.utils.log import get_default_logger
from registry_indexer.utils.time_utils import utc_now

_LOG = get_default_logger(__name__)

CHECKPOINT_KEY = "lastProcessedLedgerMeta"

# Batched flushes may touch a hundred events with their transactions.
TRANSACTION_TIMEOUT_SECONDS = 30.0

ModelT = TypeVar("ModelT", bound=SQLModel)
ResultT = TypeVar("ResultT")


class RegistryStore:
    """
    SQL store for transactions, events, operations, the derived registry,
    and the ledger checkpoint.
    """

    def __init__(self, db_url: str, engine_kwargs: dict | None = None):
        if engine_kwargs is None:
            engine_kwargs = {}

        self.db_engine = create_engine(db_url, **engine_kwargs)

    def create_tables(self):
        """Create all indexer tables that do not exist yet."""
        SQLModel.metadata.create_all(self.db_engine)

    def session(self) -> Session:
        """
        :return: A new session. Loaded rows stay readable after commit.
        """
        return Session(self.db_engine, expire_on_commit=False)

    def upsert(
        self,
        model: Type[ModelT],
        key: Any,
        create_fields: Dict[str, Any],
        update_fields: Dict[str, Any],
        session: Optional[Session] = None,
    ) -> ModelT:
        """
        Create a row or update an existing one, keyed by the model's primary key.

        :param model: The table model.
        :param key: The unique key value.
        :param create_fields: All fields for a new row, including the key.
        :param update_fields: The fields overwritten on an existing row.
        :param session: Session of an enclosing transaction.
            When omitted, the upsert commits on its own.
        :return: The stored row.
        """
        if session is not None:
            return self._upsert(session, model, key, create_fields, update_fields)
        try:
            with self.session() as own_session:
                row = self._upsert(own_session, model, key, create_fields, update_fields)
                own_session.commit()
                return row
        except SQLAlchemyError as e:
            raise IndexerError(
                f"Upsert into {model.__tablename__} failed for key {key}: {e}",
                ErrorKind.PERSISTENCE,
            ) from e

    @staticmethod
    def _upsert(
        session: Session,
        model: Type[ModelT],
        key: Any,
        create_fields: Dict[str, Any],
        update_fields: Dict[str, Any],
    ) -> ModelT:
        row = session.get(model, key)
        if row is None:
            row = model(**create_fields)
        else:
            for name, value in update_fields.items():
                setattr(row, name, value)
        session.add(row)
        session.flush()
        return row

    def find_by_key(
        self, model: Type[ModelT], key: Any, session: Optional[Session] = None
    ) -> Optional[ModelT]:
        """
        Find a row by its unique key.

        :param model: The table model.
        :param key: The unique key value.
        :param session: Optional session of an enclosing transaction.
        :return: The row or None.
        """
        if session is not None:
            return session.get(model, key)
        try:
            with self.session() as own_session:
                return own_session.get(model, key)
        except SQLAlchemyError as e:
            raise IndexerError(
                f"Lookup in {model.__tablename__} failed: {e}", ErrorKind.PERSISTENCE
            ) from e

    def run_in_transaction(
        self,
        operation: Callable[[Session], ResultT],
        timeout_seconds: float = TRANSACTION_TIMEOUT_SECONDS,
    ) -> ResultT:
        """
        Run an operation inside one database transaction.
        The transaction commits only if the operation returns within timeout_seconds;
        otherwise, or on any error, every write is rolled back.

        :param operation: Callable receiving the transaction's session.
        :param timeout_seconds: Maximum transaction duration.
        :return: The operation result.
        """
        started = time.monotonic()
        with self.session() as session:
            try:
                if self.db_engine.dialect.name == "postgresql":
                    session.execute(
                        text(f"SET LOCAL statement_timeout = {int(timeout_seconds * 1000)}")
                    )
                result = operation(session)
                elapsed = time.monotonic() - started
                if elapsed > timeout_seconds:
                    raise IndexerError(
                        f"Transaction took {elapsed:.1f}s, over the {timeout_seconds}s limit",
                        ErrorKind.PERSISTENCE,
                    )
                session.commit()
                return result
            except IndexerError:
                session.rollback()
                raise
            except SQLAlchemyError as e:
                session.rollback()
                raise IndexerError(f"Transaction failed: {e}", ErrorKind.PERSISTENCE) from e

    def get_checkpoint(self) -> Optional[int]:
        """
        :return: The last processed ledger, or None before the first flush.
        """
        row = self.find_by_key(IndexerState, CHECKPOINT_KEY)
        return row.last_processed_ledger if row is not None else None

    def advance_checkpoint(self, ledger: int) -> int:
        """
        Move the checkpoint forward. Older ledgers are ignored so the
        checkpoint never decreases.

        :param ledger: The last fully processed ledger.
        :return: The checkpoint after the call.
        """

        def _advance(session: Session) -> int:
            row = session.get(IndexerState, CHECKPOINT_KEY)
            if row is None:
                row = IndexerState(key=CHECKPOINT_KEY, last_processed_ledger=ledger)
            elif ledger <= row.last_processed_ledger:
                return row.last_processed_ledger
            else:
                row.last_processed_ledger = ledger
                row.updated_at = utc_now()
            session.add(row)
            _LOG.info("Checkpoint advanced to ledger %s", ledger)
            return ledger

        return self.run_in_transaction(_advance)

    def ping(self):
        """
        Check database connectivity.

        :raises IndexerError: If the database is unreachable.
        """
        try:
            with self.session() as session:
                session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise IndexerError(f"Database unreachable: {e}", ErrorKind.PERSISTENCE) from e

    def count(self, model: Type[SQLModel]) -> int:
        """
        :param model: The table model.
        :return: The number of rows in the model's table.
        """
        with self.session() as session:
            return session.exec(select(func.count()).select_from(model)).one()

    def find_transactions_without_operations(
        self,
        start_ledger: Optional[int] = None,
        end_ledger: Optional[int] = None,
        limit: int = 100,
    ) -> List[str]:
        """
        Find stored transactions that have no stored operations.

        :param start_ledger: Optional first ledger, inclusive.
        :param end_ledger: Optional last ledger, inclusive.
        :param limit: Maximum number of hashes returned.
        :return: Transaction hashes in ledger order.
        """
        has_operations = (
            select(LedgerOperation.operation_id)
            .where(LedgerOperation.transaction_hash == LedgerTransaction.hash)
            .exists()
        )
        statement = select(LedgerTransaction.hash).where(~has_operations)
        if start_ledger is not None:
            statement = statement.where(LedgerTransaction.ledger >= start_ledger)
        if end_ledger is not None:
            statement = statement.where(LedgerTransaction.ledger <= end_ledger)
        statement = statement.order_by(LedgerTransaction.ledger).limit(limit)
        try:
            with self.session() as session:
                return list(session.exec(statement).all())
        except SQLAlchemyError as e:
            raise IndexerError(
                f"Missing operations lookup failed: {e}", ErrorKind.PERSISTENCE
            ) from e
