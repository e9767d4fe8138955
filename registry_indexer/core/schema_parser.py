"""
Parses registered schema definitions into JSON Schema documents.

Definitions arrive in one of several forms:
- "XDR:<base64 ScVal>" encoded Soroban schema definitions,
- JSON Schema documents (with "$schema" or "properties"),
- Soroban schema definitions {"name": ..., "fields": [{"name", "type", ...}]},
- arbitrary JSON, kept as parsed.
"""

import json
from typing import Any, Dict, Optional

from registry_indexer.core.errors import IndexerError
from registry_indexer.core.event_decoder import decode_sc_val
from registry_indexer.utils.log import get_default_logger

_LOG = get_default_logger(__name__)

XDR_PREFIX = "XDR:"
JSON_SCHEMA_DRAFT = "http://json-schema.org/draft-07/schema#"

_STELLAR_ADDRESS_PATTERN = "^[GC][A-Z2-7]{55}$"

_FIELD_TYPES: Dict[str, Dict[str, Any]] = {
    "string": {"type": "string"},
    "symbol": {"type": "string"},
    "bytes": {"type": "string", "contentEncoding": "hex"},
    "bool": {"type": "boolean"},
    "boolean": {"type": "boolean"},
    "u32": {"type": "integer", "minimum": 0},
    "u64": {"type": "integer", "minimum": 0},
    "u128": {"type": "integer", "minimum": 0},
    "i32": {"type": "integer"},
    "i64": {"type": "integer"},
    "i128": {"type": "integer"},
    "timestamp": {"type": "integer", "minimum": 0},
    "address": {"type": "string", "pattern": _STELLAR_ADDRESS_PATTERN},
    "map": {"type": "object"},
}


def is_soroban_schema_definition(obj: Any) -> bool:
    return (
        isinstance(obj, dict)
        and isinstance(obj.get("name"), str)
        and isinstance(obj.get("fields"), list)
        and len(obj["fields"]) > 0
    )


def _field_to_json_schema(field_type: str) -> Dict[str, Any]:
    normalized = (field_type or "").strip().lower()
    if normalized.startswith("array<") and normalized.endswith(">"):
        return {"type": "array", "items": _field_to_json_schema(normalized[6:-1])}
    if normalized.startswith("option<") and normalized.endswith(">"):
        inner = _field_to_json_schema(normalized[7:-1])
        return {"anyOf": [inner, {"type": "null"}]}
    return dict(_FIELD_TYPES.get(normalized, {}))


def soroban_definition_to_json_schema(definition: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert a Soroban schema definition to a JSON Schema document.

    :param definition: {"name", "description"?, "fields": [{"name", "type", "optional"?, "description"?}]}
    :return: The JSON Schema document.
    """
    properties: Dict[str, Any] = {}
    required = []
    for field in definition.get("fields", []):
        if not isinstance(field, dict) or not field.get("name"):
            continue
        field_schema = _field_to_json_schema(str(field.get("type", "")))
        if field.get("description"):
            field_schema["description"] = field["description"]
        properties[field["name"]] = field_schema
        if not field.get("optional", False):
            required.append(field["name"])

    document = {
        "$schema": JSON_SCHEMA_DRAFT,
        "title": definition["name"],
        "type": "object",
        "properties": properties,
        "required": required,
        "additionalProperties": False,
    }
    if definition.get("description"):
        document["description"] = definition["description"]
    return document


def _normalize_json_schema(document: Dict[str, Any]) -> Dict[str, Any]:
    normalized = {"$schema": JSON_SCHEMA_DRAFT, "type": "object"}
    normalized.update(document)
    return normalized


def parse_schema_definition(definition: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Parse a schema definition string.

    :param definition: The definition as registered on chain.
    :return: The parsed definition, or None if it cannot be parsed.
    """
    if not definition or not isinstance(definition, str):
        return None

    if definition.startswith(XDR_PREFIX):
        encoded = definition[len(XDR_PREFIX):]
        try:
            decoded = decode_sc_val(encoded)
        except IndexerError as e:
            _LOG.warning("Cannot decode XDR schema definition: %s", e)
            return None
        if is_soroban_schema_definition(decoded):
            return soroban_definition_to_json_schema(decoded)
        return {"format": "xdr", "xdr": encoded}

    try:
        parsed = json.loads(definition)
    except ValueError:
        _LOG.warning("Schema definition is not valid JSON")
        return None

    if not isinstance(parsed, dict):
        return {"value": parsed}
    if "$schema" in parsed:
        return parsed
    if is_soroban_schema_definition(parsed):
        return soroban_definition_to_json_schema(parsed)
    if "properties" in parsed:
        return _normalize_json_schema(parsed)
    _LOG.debug("Unrecognized schema format, keeping parsed JSON")
    return parsed
