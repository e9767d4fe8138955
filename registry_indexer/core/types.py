"""
Common types used across the ingestion engine.
"""

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


@dataclass(frozen=True)
class RawLedgerEvent:
    """
    A contract event as returned by the Soroban RPC getEvents call.
    Topic segments and value are base64 encoded ScVal XDR.
    """

    id: str
    ledger: int
    contract_id: str
    topic: Tuple[str, ...]
    value: Optional[str]
    ledger_closed_at: Optional[str] = None
    tx_hash: Optional[str] = None
    in_successful_contract_call: Optional[bool] = None

    @classmethod
    def from_rpc(cls, data: dict) -> "RawLedgerEvent":
        """
        Build an event from a getEvents record.

        :param data: The JSON record.
        :return: The event.
        """
        value = data.get("value")
        # Older RPC versions wrap XDR values in {"xdr": ...}.
        if isinstance(value, dict):
            value = value.get("xdr")
        return cls(
            id=str(data["id"]),
            ledger=int(data["ledger"]),
            contract_id=data.get("contractId") or "",
            topic=tuple(data.get("topic") or ()),
            value=value,
            ledger_closed_at=data.get("ledgerClosedAt"),
            tx_hash=data.get("txHash"),
            in_successful_contract_call=data.get("inSuccessfulContractCall"),
        )


@dataclass(frozen=True)
class EventsPage:
    """One page of getEvents results."""

    events: List[RawLedgerEvent]
    cursor: Optional[str]
    latest_ledger: int


@dataclass(frozen=True)
class TransactionDetail:
    """
    A transaction as returned by getTransaction, with fields recovered from its envelope.
    """

    hash: str
    ledger: int
    status: str
    created_at: Optional[datetime.datetime]
    envelope_xdr: Optional[str] = None
    result_xdr: Optional[str] = None
    result_meta_xdr: Optional[str] = None
    source_account: str = ""
    fee: str = "0"
    operation_count: int = 0

    @property
    def successful(self) -> bool:
        return self.status == "SUCCESS"


class ActionFamily(str, Enum):
    """Registry action families keyed by the decoded event topic."""

    SCHEMA_REGISTER = "schema-register"
    ATTEST_CREATE = "attest-create"
    ATTEST_REVOKE = "attest-revoke"
    BLS_KEY_REGISTER = "bls-key-register"
    OTHER = "other"


@dataclass(frozen=True)
class SchemaRegisterPayload:
    """Payload of SCHEMA:REGISTER events: (uid, schema, authority)."""

    uid: Optional[str]
    definition: Optional[str]
    authority: Optional[str]
    resolver: Optional[str]
    revocable: bool = True


@dataclass(frozen=True)
class AttestCreatePayload:
    """Payload of ATTEST:CREATE events: (uid, subject, attester, value, nonce, timestamp)."""

    uid: Optional[str]
    subject: Optional[str] = None
    attester: Optional[str] = None
    value: Optional[str] = None
    nonce: Optional[int] = None
    timestamp: Optional[int] = None


@dataclass(frozen=True)
class AttestRevokePayload:
    """Payload of ATTEST:REVOKE events: (uid, schema_uid, subject, attester, revoked, revoked_at)."""

    uid: Optional[str]
    schema_uid: Optional[str] = None
    subject: Optional[str] = None
    attester: Optional[str] = None
    revoked: bool = True
    revoked_at: Optional[int] = None


@dataclass(frozen=True)
class BlsKeyRegisterPayload:
    """Payload of BLS_KEY:REGISTER events: (attester, public_key, timestamp)."""

    attester: Optional[str]
    public_key: Optional[str] = None
    timestamp: Optional[int] = None


@dataclass(frozen=True)
class OtherPayload:
    value: Any = None


EventPayload = Union[
    SchemaRegisterPayload,
    AttestCreatePayload,
    AttestRevokePayload,
    BlsKeyRegisterPayload,
    OtherPayload,
]


@dataclass(frozen=True)
class DecodedEvent:
    """
    A raw ledger event after topic and value decoding.

    Attributes:
        event_id (str): The RPC event id.
        ledger (int): The ledger sequence.
        contract_id (str): The emitting contract.
        event_type (str): Colon joined decoded topic, e.g. "ATTEST:CREATE".
        event_data (Any): JSON safe decoded value.
        payload (EventPayload): Family specific fields extracted from the value.
        timestamp (datetime.datetime | None): Ledger close time, naive UTC.
        transaction_hash (str | None): The emitting transaction.
    """

    event_id: str
    ledger: int
    contract_id: str
    event_type: str
    event_data: Any
    payload: EventPayload
    timestamp: Optional[datetime.datetime]
    transaction_hash: Optional[str]
    in_successful_contract_call: Optional[bool] = None

    @property
    def family(self) -> ActionFamily:
        if isinstance(self.payload, SchemaRegisterPayload):
            return ActionFamily.SCHEMA_REGISTER
        if isinstance(self.payload, AttestCreatePayload):
            return ActionFamily.ATTEST_CREATE
        if isinstance(self.payload, AttestRevokePayload):
            return ActionFamily.ATTEST_REVOKE
        if isinstance(self.payload, BlsKeyRegisterPayload):
            return ActionFamily.BLS_KEY_REGISTER
        return ActionFamily.OTHER


@dataclass(frozen=True)
class AttestCallArguments:
    """Arguments of an attest() contract call, decoded from the invoking operation."""

    attester: Optional[str] = None
    schema_uid: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one Ledger Event Fetcher run."""

    message: str
    events_fetched: int
    processed_up_to_ledger: int
    last_rpc_ledger: int

    @property
    def waiting_for_tip(self) -> bool:
        return self.processed_up_to_ledger >= self.last_rpc_ledger


@dataclass
class BackfillResult:
    """Outcome of one Backfill Controller run. Per-event failures are collected in errors."""

    success: bool
    message: str
    events_processed: int = 0
    transactions_processed: int = 0
    operations_processed: int = 0
    processed_up_to_ledger: int = 0
    last_rpc_ledger: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def waiting_for_tip(self) -> bool:
        return self.processed_up_to_ledger >= self.last_rpc_ledger


@dataclass
class OperationsResult:
    """Outcome of an operations ingestion job."""

    operations_fetched: int = 0
    operations_stored: int = 0
    transactions_fetched: int = 0
    failed_operations: int = 0
    accounts: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class JobType(str, Enum):
    FETCH_EVENTS = "fetch-events"
    FETCH_CONTRACT_OPERATIONS = "fetch-contract-operations"
    FETCH_RECURRING = "fetch-recurring"
    BACKFILL_MISSING_OPERATIONS = "backfill-missing-operations"


@dataclass
class JobPayload:
    start_ledger: Optional[int] = None
    end_ledger: Optional[int] = None
    contract_ids: Optional[List[str]] = None
    include_failed_tx: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startLedger": self.start_ledger,
            "endLedger": self.end_ledger,
            "contractIds": self.contract_ids,
            "includeFailedTx": self.include_failed_tx,
        }


@dataclass
class IngestJob:
    """
    A unit of queued ingestion work.
    Owned by the queue; attempts and next_run_at are mutated in place by the worker loop.
    """

    id: str
    type: JobType
    payload: JobPayload
    attempts: int = 0
    max_attempts: int = 5
    next_run_at: float = 0.0

    @property
    def continuous(self) -> bool:
        """Fetch and recurring jobs follow the chain until they reach end_ledger, if any."""
        return self.type in (JobType.FETCH_EVENTS, JobType.FETCH_RECURRING)
