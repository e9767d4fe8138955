"""
Decodes raw Soroban contract events into typed registry payloads.

Topic segments and values are base64 ScVal XDR. Every topic segment is
decoded and joined with ":" to form the event type (e.g. "ATTEST:CREATE"),
which selects the action family and its field extraction.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from stellar_sdk import (
    Address,
    FeeBumpTransactionEnvelope,
    parse_transaction_envelope_from_xdr,
    scval,
)
from stellar_sdk import xdr as stellar_xdr

from registry_indexer.core.errors import ErrorKind, IndexerError
from registry_indexer.core.types import (
    ActionFamily,
    AttestCallArguments,
    AttestCreatePayload,
    AttestRevokePayload,
    BlsKeyRegisterPayload,
    DecodedEvent,
    EventPayload,
    OtherPayload,
    RawLedgerEvent,
    SchemaRegisterPayload,
)
from registry_indexer.utils.encoding_utils import (
    bytes_to_hex_str,
    decode_text,
    normalize_uid,
    to_json_safe,
)
from registry_indexer.utils.log import get_default_logger
from registry_indexer.utils.time_utils import to_utc_datetime

_LOG = get_default_logger(__name__)

EVENT_TYPE_SEPARATOR = ":"

_FAMILIES_BY_EVENT_TYPE: Dict[str, ActionFamily] = {
    "SCHEMA:REGISTER": ActionFamily.SCHEMA_REGISTER,
    "SCHEMA:CREATE": ActionFamily.SCHEMA_REGISTER,
    "ATTEST:CREATE": ActionFamily.ATTEST_CREATE,
    "ATTEST:REVOKE": ActionFamily.ATTEST_REVOKE,
    "BLS_KEY:REGISTER": ActionFamily.BLS_KEY_REGISTER,
}

# Positions of the attest() arguments in a Horizon invoke_host_function
# parameter list: [contract, function, caller, schema_uid, subject, value, reference].
_ATTEST_CALL_ATTESTER = 2
_ATTEST_CALL_SCHEMA_UID = 3
_ATTEST_CALL_SUBJECT = 4
_ATTEST_CALL_MESSAGE = 5


def _sc_val_to_python(sc_val: stellar_xdr.SCVal) -> Any:
    """
    Convert an SCVal to plain Python values.
    Strings and symbols become text, addresses become strkeys,
    bytes stay bytes, and containers are converted recursively.
    """
    val_type = sc_val.type
    if val_type == stellar_xdr.SCValType.SCV_STRING:
        return decode_text(sc_val.str.sc_string)
    if val_type == stellar_xdr.SCValType.SCV_SYMBOL:
        return decode_text(sc_val.sym.sc_symbol)
    if val_type == stellar_xdr.SCValType.SCV_VEC:
        items = sc_val.vec.sc_vec if sc_val.vec is not None else []
        return [_sc_val_to_python(item) for item in items]
    if val_type == stellar_xdr.SCValType.SCV_MAP:
        entries = sc_val.map.sc_map if sc_val.map is not None else []
        result = {}
        for entry in entries:
            key = _sc_val_to_python(entry.key)
            if isinstance(key, (list, dict)):
                key = str(to_json_safe(key))
            result[key] = _sc_val_to_python(entry.val)
        return result
    native = scval.to_native(sc_val)
    if isinstance(native, Address):
        return native.address
    return native


def decode_sc_val(encoded: str) -> Any:
    """
    Decode a base64 ScVal.

    :param encoded: Base64 XDR.
    :return: The Python value.
    :raises IndexerError: With kind DECODE if the XDR is malformed.
    """
    try:
        return _sc_val_to_python(stellar_xdr.SCVal.from_xdr(encoded))
    except Exception as e:  # pylint: disable=broad-except
        raise IndexerError(f"Cannot decode ScVal {encoded!r}: {e}", ErrorKind.DECODE) from e


def classify_event_type(event_type: str) -> ActionFamily:
    """
    Map an event type to its action family.
    Exact matches win; otherwise the type is matched by its segments.

    :param event_type: The colon joined topic.
    :return: The action family.
    """
    normalized = event_type.upper()
    family = _FAMILIES_BY_EVENT_TYPE.get(normalized)
    if family is not None:
        return family
    if "SCHEMA" in normalized and ("REGISTER" in normalized or "CREATE" in normalized):
        return ActionFamily.SCHEMA_REGISTER
    if "ATTEST" in normalized and "REVOKE" in normalized:
        return ActionFamily.ATTEST_REVOKE
    if "ATTEST" in normalized and "CREATE" in normalized:
        return ActionFamily.ATTEST_CREATE
    if "BLS_KEY" in normalized:
        return ActionFamily.BLS_KEY_REGISTER
    return ActionFamily.OTHER


def _at(values: Sequence[Any], index: int) -> Any:
    return values[index] if len(values) > index else None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes_to_hex_str(value)
    return str(value)


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_values(value: Any) -> List[Any]:
    if isinstance(value, list):
        return value
    if value is None:
        return []
    return [value]


def _extract_schema_register(value: Any) -> SchemaRegisterPayload:
    values = _as_values(value)
    schema = _at(values, 1)
    if not isinstance(schema, dict):
        schema = {}
    authority = schema.get("authority") or _at(values, 2)
    return SchemaRegisterPayload(
        uid=normalize_uid(_at(values, 0)),
        definition=decode_text(schema.get("definition")),
        authority=_as_text(authority),
        resolver=_as_text(schema.get("resolver")),
        revocable=bool(schema.get("revocable", True)),
    )


def _extract_attest_create(value: Any) -> AttestCreatePayload:
    values = _as_values(value)
    return AttestCreatePayload(
        uid=normalize_uid(_at(values, 0)),
        subject=_as_text(_at(values, 1)),
        attester=_as_text(_at(values, 2)),
        value=decode_text(_at(values, 3)),
        nonce=_as_int(_at(values, 4)),
        timestamp=_as_int(_at(values, 5)),
    )


def _extract_attest_revoke(value: Any) -> AttestRevokePayload:
    values = _as_values(value)
    revoked = _at(values, 4)
    return AttestRevokePayload(
        uid=normalize_uid(_at(values, 0)),
        schema_uid=normalize_uid(_at(values, 1)),
        subject=_as_text(_at(values, 2)),
        attester=_as_text(_at(values, 3)),
        revoked=True if revoked is None else bool(revoked),
        revoked_at=_as_int(_at(values, 5)),
    )


def _extract_bls_key_register(value: Any) -> BlsKeyRegisterPayload:
    values = _as_values(value)
    public_key = _at(values, 1)
    return BlsKeyRegisterPayload(
        attester=_as_text(_at(values, 0)),
        public_key=_as_text(public_key),
        timestamp=_as_int(_at(values, 2)),
    )


_EXTRACTORS: Dict[ActionFamily, Callable[[Any], EventPayload]] = {
    ActionFamily.SCHEMA_REGISTER: _extract_schema_register,
    ActionFamily.ATTEST_CREATE: _extract_attest_create,
    ActionFamily.ATTEST_REVOKE: _extract_attest_revoke,
    ActionFamily.BLS_KEY_REGISTER: _extract_bls_key_register,
}


def extract_payload(family: ActionFamily, value: Any) -> EventPayload:
    """
    Extract the family specific fields from a decoded event value.

    :param family: The action family.
    :param value: The decoded event value.
    :return: The typed payload.
    """
    extractor = _EXTRACTORS.get(family)
    if extractor is None:
        return OtherPayload(value=to_json_safe(value))
    return extractor(value)


def decode_event(raw: RawLedgerEvent) -> DecodedEvent:
    """
    Decode a raw ledger event.

    :param raw: The event as returned by getEvents.
    :return: The decoded event.
    :raises IndexerError: With kind DECODE if a topic or the value is malformed.
    """
    topics = [decode_sc_val(segment) for segment in raw.topic]
    event_type = EVENT_TYPE_SEPARATOR.join(str(to_json_safe(t)) for t in topics)
    value = decode_sc_val(raw.value) if raw.value else None
    family = classify_event_type(event_type)
    return DecodedEvent(
        event_id=raw.id,
        ledger=raw.ledger,
        contract_id=raw.contract_id,
        event_type=event_type,
        event_data=to_json_safe(value),
        payload=extract_payload(family, value),
        timestamp=to_utc_datetime(raw.ledger_closed_at),
        transaction_hash=raw.tx_hash,
        in_successful_contract_call=raw.in_successful_contract_call,
    )


def decode_call_parameters(parameters: Optional[Sequence[dict]]) -> List[Any]:
    """
    Decode the parameters of a Horizon invoke_host_function operation.
    Undecodable parameters become None so positions are preserved.

    :param parameters: Records of the form {"type": ..., "value": base64 ScVal}.
    :return: Decoded parameter values.
    """
    decoded = []
    for parameter in parameters or []:
        encoded = parameter.get("value") if isinstance(parameter, dict) else None
        if not encoded:
            decoded.append(None)
            continue
        try:
            decoded.append(decode_sc_val(encoded))
        except IndexerError as e:
            _LOG.warning("Skipping undecodable call parameter: %s", e)
            decoded.append(None)
    return decoded


def extract_attest_call(parameters: Sequence[Any]) -> Optional[AttestCallArguments]:
    """
    Read attest() arguments from decoded call parameters.

    :param parameters: Output of decode_call_parameters.
    :return: The arguments, or None if the call carries none of them.
    """
    arguments = AttestCallArguments(
        attester=_as_text(_at(parameters, _ATTEST_CALL_ATTESTER)),
        schema_uid=normalize_uid(_at(parameters, _ATTEST_CALL_SCHEMA_UID)),
        subject=_as_text(_at(parameters, _ATTEST_CALL_SUBJECT)),
        message=decode_text(_at(parameters, _ATTEST_CALL_MESSAGE)),
    )
    if arguments == AttestCallArguments():
        return None
    return arguments


@dataclass(frozen=True)
class EnvelopeSummary:
    source_account: str = ""
    fee: str = "0"
    operation_count: int = 0


def summarize_envelope(
    envelope_xdr: Optional[str], network_passphrase: Optional[str]
) -> EnvelopeSummary:
    """
    Recover the source account, fee and operation count from a transaction envelope.

    :param envelope_xdr: Base64 TransactionEnvelope XDR.
    :param network_passphrase: The network passphrase.
    :return: The summary; empty if the envelope cannot be parsed.
    """
    if not envelope_xdr or not network_passphrase:
        return EnvelopeSummary()
    try:
        envelope = parse_transaction_envelope_from_xdr(envelope_xdr, network_passphrase)
        if isinstance(envelope, FeeBumpTransactionEnvelope):
            fee = envelope.transaction.base_fee
            transaction = envelope.transaction.inner_transaction_envelope.transaction
        else:
            transaction = envelope.transaction
            fee = transaction.fee
        return EnvelopeSummary(
            source_account=transaction.source.account_id,
            fee=str(fee),
            operation_count=len(transaction.operations),
        )
    except Exception as e:  # pylint: disable=broad-except
        _LOG.warning("Cannot parse transaction envelope: %s", e)
        return EnvelopeSummary()
