"""
SQL models for the indexed ledger data and the derived registry.

Timestamps are naive UTC and use plain DateTime columns.
"""

import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column, DateTime, Text
from sqlmodel import Field, SQLModel

from registry_indexer.utils.time_utils import utc_now


class LedgerTransaction(SQLModel, table=True):
    """ORM model for the transactions table, one row per ledger transaction touching an indexed contract."""

    __tablename__ = "transactions"
    hash: str = Field(primary_key=True, index=True)
    ledger: int = Field(index=True)
    source_account: str = Field(default="", index=True)
    fee: str = Field(default="0")
    operation_count: int = Field(default=0)
    envelope: Optional[str] = Field(default=None, sa_column=Column(Text))
    result: Optional[str] = Field(default=None, sa_column=Column(Text))
    meta: Optional[str] = Field(default=None, sa_column=Column(Text))
    successful: bool = Field(default=True)
    timestamp: Optional[datetime.datetime] = Field(default=None, sa_column=Column(DateTime))


class LedgerEvent(SQLModel, table=True):
    """ORM model for the events table, one row per decoded contract event."""

    __tablename__ = "events"
    event_id: str = Field(primary_key=True, index=True)
    ledger: int = Field(index=True)
    contract_id: str = Field(index=True)
    event_type: str = Field(index=True)
    event_data: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    timestamp: Optional[datetime.datetime] = Field(default=None, sa_column=Column(DateTime))
    transaction_hash: Optional[str] = Field(default=None, index=True)
    in_successful_contract_call: Optional[bool] = Field(default=None)
    tx_status: Optional[str] = Field(default=None)


class LedgerOperation(SQLModel, table=True):
    """ORM model for the operations table, holding Horizon operations of indexed transactions."""

    __tablename__ = "operations"
    operation_id: str = Field(primary_key=True, index=True)
    transaction_hash: str = Field(index=True)
    contract_id: str = Field(default="", index=True)
    operation_type: str = Field(default="invoke_host_function")
    successful: bool = Field(default=True)
    source_account: str = Field(default="")
    operation_index: int = Field(default=0)
    function: Optional[str] = Field(default=None)
    parameters: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    details: Optional[Any] = Field(default=None, sa_column=Column(JSON))


class Schema(SQLModel, table=True):
    """ORM model for the schemas table, projected from schema registration events."""

    __tablename__ = "schemas"
    uid: str = Field(primary_key=True, index=True)
    ledger: int = Field(index=True)
    schema_definition: str = Field(default="", sa_column=Column(Text))
    parsed_schema_definition: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    resolver_address: Optional[str] = Field(default=None)
    revocable: bool = Field(default=True)
    deployer_address: str = Field(default="", index=True)
    type: str = Field(default="default")
    transaction_hash: str = Field(default="", index=True)
    contract_address: Optional[str] = Field(default=None)
    created_at: Optional[datetime.datetime] = Field(default=None, sa_column=Column(DateTime))
    last_updated: datetime.datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime, nullable=False)
    )


class Attestation(SQLModel, table=True):
    """ORM model for the attestations table, projected from attestation create and revoke events."""

    __tablename__ = "attestations"
    attestation_uid: str = Field(primary_key=True, index=True)
    ledger: int = Field(index=True)
    schema_uid: str = Field(default="", index=True)
    attester_address: str = Field(default="", index=True)
    subject_address: Optional[str] = Field(default=None, index=True)
    transaction_hash: str = Field(default="", index=True)
    schema_encoding: str = Field(default="JSON")
    message: str = Field(default="", sa_column=Column(Text))
    value: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    revoked: bool = Field(default=False)
    revoked_at: Optional[datetime.datetime] = Field(default=None, sa_column=Column(DateTime))
    contract_address: Optional[str] = Field(default=None)
    created_at: Optional[datetime.datetime] = Field(default=None, sa_column=Column(DateTime))
    last_updated: datetime.datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime, nullable=False)
    )


class RegistryAction(SQLModel, table=True):
    """ORM model for the registry_actions table, the per-event audit rollup."""

    __tablename__ = "registry_actions"
    event_id: str = Field(primary_key=True, index=True)
    action: str = Field(index=True)
    transaction_hash: str = Field(default="", index=True)
    source_account: str = Field(default="", index=True)
    contract_id: str = Field(default="")
    operation_id: Optional[str] = Field(default=None)
    ledger: int = Field(index=True)
    timestamp: Optional[datetime.datetime] = Field(default=None, sa_column=Column(DateTime))
    # "metadata" is reserved on declarative models.
    action_metadata: Optional[Any] = Field(
        default=None, sa_column=Column("metadata", JSON)
    )


class IndexerState(SQLModel, table=True):
    """ORM model for the indexer_state table, holding the ledger checkpoint."""

    __tablename__ = "indexer_state"
    key: str = Field(primary_key=True, index=True)
    last_processed_ledger: int = Field(default=0)
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime, nullable=False)
    )
