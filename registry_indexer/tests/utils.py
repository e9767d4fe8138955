"""
Fixtures shared by the indexer tests.
"""

import base64
from typing import Any, List, Optional, Sequence

from sqlalchemy.pool import StaticPool
from stellar_sdk import Keypair, StrKey, scval
from stellar_sdk import xdr as stellar_xdr

from registry_indexer.core.registry_store import RegistryStore
from registry_indexer.core.types import EventsPage, RawLedgerEvent, TransactionDetail
from registry_indexer.utils.time_utils import to_utc_datetime

CONTRACT_ID = StrKey.encode_contract(bytes(range(32)))
ATTESTER = Keypair.from_raw_ed25519_seed(bytes([1] * 32)).public_key
SUBJECT = Keypair.from_raw_ed25519_seed(bytes([2] * 32)).public_key
AUTHORITY = Keypair.from_raw_ed25519_seed(bytes([3] * 32)).public_key

SCHEMA_UID = bytes([0xAB] * 32)
ATTESTATION_UID = bytes([0xCD] * 32)

LEDGER_CLOSED_AT = "2025-01-01T12:00:00Z"


def create_test_store() -> RegistryStore:
    """In-memory SQLite store shared by every thread of a test."""
    store = RegistryStore(
        "sqlite://",
        engine_kwargs={
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        },
    )
    store.create_tables()
    return store


def encode_topic(*segments: str) -> List[str]:
    return [scval.to_symbol(segment).to_xdr() for segment in segments]


def schema_register_value(
    uid: bytes = SCHEMA_UID,
    definition: str = '{"name": "KYC", "fields": [{"name": "level", "type": "u32"}]}',
    authority: str = AUTHORITY,
) -> stellar_xdr.SCVal:
    schema = scval.to_map(
        {
            scval.to_symbol("authority"): scval.to_address(authority),
            scval.to_symbol("definition"): scval.to_string(definition),
            scval.to_symbol("resolver"): scval.to_void(),
            scval.to_symbol("revocable"): scval.to_bool(True),
        }
    )
    return scval.to_vec([scval.to_bytes(uid), schema, scval.to_address(authority)])


def attest_create_value(
    uid: bytes = ATTESTATION_UID, value: str = '{"level": 2}', timestamp: int = 1735732800
) -> stellar_xdr.SCVal:
    return scval.to_vec(
        [
            scval.to_bytes(uid),
            scval.to_address(SUBJECT),
            scval.to_address(ATTESTER),
            scval.to_string(value),
            scval.to_uint64(1),
            scval.to_uint64(timestamp),
        ]
    )


def attest_revoke_value(
    uid: bytes = ATTESTATION_UID, revoked_at: int = 1735819200
) -> stellar_xdr.SCVal:
    return scval.to_vec(
        [
            scval.to_bytes(uid),
            scval.to_bytes(SCHEMA_UID),
            scval.to_address(SUBJECT),
            scval.to_address(ATTESTER),
            scval.to_bool(True),
            scval.to_uint64(revoked_at),
        ]
    )


def make_raw_event(
    event_id: str,
    ledger: int,
    topic: Sequence[str],
    value: Optional[stellar_xdr.SCVal],
    tx_hash: Optional[str] = None,
    ledger_closed_at: str = LEDGER_CLOSED_AT,
) -> RawLedgerEvent:
    return RawLedgerEvent(
        id=event_id,
        ledger=ledger,
        contract_id=CONTRACT_ID,
        topic=tuple(encode_topic(*topic)),
        value=value.to_xdr() if value is not None else None,
        ledger_closed_at=ledger_closed_at,
        tx_hash=tx_hash if tx_hash is not None else f"tx-{event_id}",
        in_successful_contract_call=True,
    )


def make_page(
    events: Sequence[RawLedgerEvent], cursor: Optional[str] = None, latest_ledger: int = 1000
) -> EventsPage:
    return EventsPage(events=list(events), cursor=cursor, latest_ledger=latest_ledger)


def make_transaction(tx_hash: str, ledger: int, source_account: str = ATTESTER) -> TransactionDetail:
    return TransactionDetail(
        hash=tx_hash,
        ledger=ledger,
        status="SUCCESS",
        created_at=to_utc_datetime(LEDGER_CLOSED_AT),
        envelope_xdr="AAAA",
        result_xdr="AAAA",
        result_meta_xdr="AAAA",
        source_account=source_account,
        fee="100",
        operation_count=1,
    )


def attest_call_operation(tx_hash: str, message: str = '{"level": 3}') -> dict:
    """A Horizon invoke_host_function record for an attest() call."""
    parameters: List[Any] = [
        scval.to_address(CONTRACT_ID),
        scval.to_symbol("attest"),
        scval.to_address(ATTESTER),
        scval.to_bytes(SCHEMA_UID),
        scval.to_address(SUBJECT),
        scval.to_string(message),
        scval.to_void(),
    ]
    return {
        "id": f"op-{tx_hash}",
        "transaction_hash": tx_hash,
        "type": "invoke_host_function",
        "type_i": 24,
        "source_account": ATTESTER,
        "transaction_successful": True,
        "function": "HostFunctionTypeHostFunctionTypeInvokeContract",
        "parameters": [{"type": "Sc", "value": p.to_xdr()} for p in parameters],
    }


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()
