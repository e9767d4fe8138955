"""
Projects decoded ledger events into the schema and attestation registry.

All writes are upserts on unique keys, so projecting an event twice leaves
exactly one row per entity. Callers pass the session of the transaction the
writes belong to.
"""

import datetime
import json
from typing import Any, Dict, List, Optional, Sequence

from sqlmodel import Session

from registry_indexer.core.event_decoder import decode_call_parameters, extract_attest_call
from registry_indexer.core.models import (
    Attestation,
    LedgerEvent,
    LedgerOperation,
    LedgerTransaction,
    RegistryAction,
    Schema,
)
from registry_indexer.core.registry_store import RegistryStore
from registry_indexer.core.schema_parser import parse_schema_definition
from registry_indexer.core.types import (
    ActionFamily,
    AttestCreatePayload,
    AttestRevokePayload,
    DecodedEvent,
    SchemaRegisterPayload,
    TransactionDetail,
)
from registry_indexer.utils.log import get_default_logger
from registry_indexer.utils.time_utils import to_utc_datetime, utc_now

_LOG = get_default_logger(__name__)

INVOKE_HOST_FUNCTION_TYPE_I = 24
INVOKE_HOST_FUNCTION_TYPE = "invoke_host_function"

SCHEMA_TYPE_DEFAULT = "default"
SCHEMA_ENCODING_JSON = "JSON"

# Schemas first, then attestations that may reference them, then the rest.
_PROJECTION_PRIORITY: Dict[ActionFamily, int] = {
    ActionFamily.SCHEMA_REGISTER: 0,
    ActionFamily.ATTEST_CREATE: 1,
    ActionFamily.ATTEST_REVOKE: 1,
    ActionFamily.BLS_KEY_REGISTER: 2,
    ActionFamily.OTHER: 3,
}


def order_events_for_projection(events: Sequence[DecodedEvent]) -> List[DecodedEvent]:
    """
    Reorder a batch so entities are projected after the entities they reference.
    The sort is stable: events of the same family keep their ledger order,
    so a revoke still follows its create.

    :param events: Events in RPC order.
    :return: Events in projection order.
    """
    return sorted(events, key=lambda event: _PROJECTION_PRIORITY[event.family])


def is_invoke_host_function(operation: dict) -> bool:
    return (
        operation.get("type_i") == INVOKE_HOST_FUNCTION_TYPE_I
        or operation.get("type") == INVOKE_HOST_FUNCTION_TYPE
    )


def _parse_message(message: str) -> Optional[Any]:
    if not message:
        return None
    try:
        return json.loads(message)
    except ValueError:
        return None


class RegistryProjector:
    """
    Writes ledger records and registry entities for decoded events.
    """

    def __init__(self, store: RegistryStore):
        self.store = store

    def record_transaction_detail(
        self,
        session: Session,
        transaction: TransactionDetail,
        fallback_ledger: int = 0,
        fallback_timestamp: Optional[datetime.datetime] = None,
    ) -> LedgerTransaction:
        fields = {
            "hash": transaction.hash,
            "ledger": transaction.ledger or fallback_ledger,
            "source_account": transaction.source_account,
            "fee": transaction.fee,
            "operation_count": transaction.operation_count,
            "envelope": transaction.envelope_xdr,
            "result": transaction.result_xdr,
            "meta": transaction.result_meta_xdr,
            "successful": transaction.successful,
            "timestamp": transaction.created_at or fallback_timestamp,
        }
        return self.store.upsert(LedgerTransaction, transaction.hash, fields, fields, session=session)

    def record_transaction(
        self,
        session: Session,
        event: DecodedEvent,
        transaction: Optional[TransactionDetail],
    ) -> Optional[LedgerTransaction]:
        """
        Upsert the transaction that emitted an event.
        Without transaction detail a minimal row is created from the event
        so rows referencing the hash always have a transaction to point to;
        an existing row is left untouched in that case.

        :param session: The enclosing session.
        :param event: The decoded event.
        :param transaction: The transaction detail, if it could be fetched.
        :return: The stored row, or None if the event carries no hash.
        """
        if transaction is not None:
            return self.record_transaction_detail(
                session, transaction, fallback_ledger=event.ledger, fallback_timestamp=event.timestamp
            )
        if not event.transaction_hash:
            return None
        fields = {
            "hash": event.transaction_hash,
            "ledger": event.ledger,
            "successful": event.in_successful_contract_call is not False,
            "timestamp": event.timestamp,
        }
        return self.store.upsert(
            LedgerTransaction, event.transaction_hash, fields, {}, session=session
        )

    def record_event(
        self,
        session: Session,
        event: DecodedEvent,
        transaction: Optional[TransactionDetail] = None,
    ) -> LedgerEvent:
        fields = {
            "event_id": event.event_id,
            "ledger": event.ledger,
            "contract_id": event.contract_id,
            "event_type": event.event_type,
            "event_data": event.event_data,
            "timestamp": event.timestamp,
            "transaction_hash": event.transaction_hash,
            "in_successful_contract_call": event.in_successful_contract_call,
            "tx_status": transaction.status if transaction is not None else None,
        }
        return self.store.upsert(LedgerEvent, event.event_id, fields, fields, session=session)

    def record_operations(
        self, session: Session, operations: Sequence[dict], contract_id: str = ""
    ) -> int:
        """
        Upsert Horizon operation records.

        :param session: The enclosing session.
        :param operations: Horizon operation records of one transaction or account.
        :param contract_id: The contract the operations were fetched for.
        :return: The number of stored operations.
        """
        stored = 0
        for index, operation in enumerate(operations):
            operation_id = operation.get("id")
            if not operation_id or not operation.get("transaction_hash"):
                _LOG.warning("Skipping operation without id or transaction hash")
                continue
            fields = {
                "operation_id": str(operation_id),
                "transaction_hash": operation["transaction_hash"],
                "contract_id": contract_id,
                "operation_type": operation.get("type") or INVOKE_HOST_FUNCTION_TYPE,
                "successful": operation.get("transaction_successful") is not False,
                "source_account": operation.get("source_account") or "",
                "operation_index": index,
                "function": operation.get("function"),
                "parameters": operation.get("parameters"),
                "details": operation,
            }
            self.store.upsert(LedgerOperation, fields["operation_id"], fields, fields, session=session)
            stored += 1
        return stored

    def project(
        self,
        session: Session,
        event: DecodedEvent,
        transaction: Optional[TransactionDetail] = None,
        operations: Sequence[dict] = (),
    ) -> Optional[str]:
        """
        Project an event into the registry and record its audit action.

        :param session: The enclosing session.
        :param event: The decoded event.
        :param transaction: The emitting transaction, if known.
        :param operations: Horizon operations of the emitting transaction.
        :return: "schema" or "attestation" if an entity was written, else None.
        """
        invoke_operations = [op for op in operations if is_invoke_host_function(op)]
        projected = None
        if isinstance(event.payload, SchemaRegisterPayload):
            projected = self._project_schema(session, event, event.payload, transaction)
        elif isinstance(event.payload, AttestCreatePayload):
            projected = self._project_attest_create(
                session, event, event.payload, invoke_operations
            )
        elif isinstance(event.payload, AttestRevokePayload):
            projected = self._project_attest_revoke(session, event, event.payload)
        self._record_action(session, event, transaction, invoke_operations or operations)
        return projected

    def _project_schema(
        self,
        session: Session,
        event: DecodedEvent,
        payload: SchemaRegisterPayload,
        transaction: Optional[TransactionDetail],
    ) -> Optional[str]:
        if payload.uid is None:
            _LOG.warning("Schema event %s has no uid, skipping projection", event.event_id)
            return None
        definition = payload.definition or ""
        parsed = parse_schema_definition(definition)
        now = utc_now()
        deployer = payload.authority or (transaction.source_account if transaction else "")
        create_fields = {
            "uid": payload.uid,
            "ledger": event.ledger,
            "schema_definition": definition,
            "parsed_schema_definition": parsed,
            "resolver_address": payload.resolver,
            "revocable": payload.revocable,
            "deployer_address": deployer,
            "type": SCHEMA_TYPE_DEFAULT,
            "transaction_hash": event.transaction_hash or "",
            "contract_address": event.contract_id,
            "created_at": event.timestamp,
            "last_updated": now,
        }
        update_fields = {"parsed_schema_definition": parsed, "last_updated": now}
        self.store.upsert(Schema, payload.uid, create_fields, update_fields, session=session)
        _LOG.info("Projected schema %s from event %s", payload.uid, event.event_id)
        return "schema"

    def _project_attest_create(
        self,
        session: Session,
        event: DecodedEvent,
        payload: AttestCreatePayload,
        invoke_operations: Sequence[dict],
    ) -> Optional[str]:
        if payload.uid is None:
            _LOG.warning("Attestation event %s has no uid, skipping projection", event.event_id)
            return None

        call = None
        for operation in invoke_operations:
            call = extract_attest_call(decode_call_parameters(operation.get("parameters")))
            if call is not None:
                break
        if call is None:
            _LOG.debug("No attest() call parameters for event %s, using event payload", event.event_id)

        attester = (call.attester if call else None) or payload.attester or ""
        subject = (call.subject if call else None) or payload.subject
        message = (call.message if call else None) or payload.value or ""
        descriptive_fields = {
            "schema_uid": (call.schema_uid if call else None) or "",
            "attester_address": attester,
            "subject_address": subject,
            "message": message,
            "value": _parse_message(message),
            "last_updated": utc_now(),
        }
        existing = self.store.find_by_key(Attestation, payload.uid, session=session)
        if existing is not None:
            update_fields = dict(descriptive_fields)
            if not descriptive_fields["schema_uid"]:
                update_fields.pop("schema_uid")
            if existing.created_at is None:
                update_fields["created_at"] = event.timestamp
            self.store.upsert(Attestation, payload.uid, {}, update_fields, session=session)
        else:
            create_fields = {
                "attestation_uid": payload.uid,
                "ledger": event.ledger,
                "transaction_hash": event.transaction_hash or "",
                "schema_encoding": SCHEMA_ENCODING_JSON,
                "revoked": False,
                "revoked_at": None,
                "contract_address": event.contract_id,
                "created_at": event.timestamp,
                **descriptive_fields,
            }
            self.store.upsert(Attestation, payload.uid, create_fields, {}, session=session)
        _LOG.info("Projected attestation %s from event %s", payload.uid, event.event_id)
        return "attestation"

    def _project_attest_revoke(
        self, session: Session, event: DecodedEvent, payload: AttestRevokePayload
    ) -> Optional[str]:
        if payload.uid is None:
            _LOG.warning("Revocation event %s has no uid, skipping projection", event.event_id)
            return None
        revoked_at = to_utc_datetime(payload.revoked_at) if payload.revoked_at else None
        revoked_at = revoked_at or event.timestamp
        now = utc_now()
        update_fields = {
            "revoked": payload.revoked,
            "revoked_at": revoked_at,
            "last_updated": now,
        }
        create_fields = {
            "attestation_uid": payload.uid,
            "ledger": event.ledger,
            "schema_uid": payload.schema_uid or "",
            "attester_address": payload.attester or "",
            "subject_address": payload.subject,
            "transaction_hash": event.transaction_hash or "",
            "schema_encoding": SCHEMA_ENCODING_JSON,
            "message": "",
            "value": None,
            "contract_address": event.contract_id,
            "created_at": None,
            **update_fields,
        }
        self.store.upsert(Attestation, payload.uid, create_fields, update_fields, session=session)
        _LOG.info("Projected revocation of attestation %s", payload.uid)
        return "attestation"

    def _record_action(
        self,
        session: Session,
        event: DecodedEvent,
        transaction: Optional[TransactionDetail],
        operations: Sequence[dict],
    ):
        first_operation = operations[0] if operations else {}
        source_account = first_operation.get("source_account") or (
            transaction.source_account if transaction is not None else ""
        )
        fields = {
            "event_id": event.event_id,
            "action": event.event_type,
            "transaction_hash": event.transaction_hash or "",
            "source_account": source_account,
            "contract_id": event.contract_id,
            "operation_id": str(first_operation["id"]) if first_operation.get("id") else None,
            "ledger": event.ledger,
            "timestamp": event.timestamp,
            "action_metadata": event.event_data,
        }
        self.store.upsert(RegistryAction, event.event_id, fields, fields, session=session)
