"""
Common encoding utility functions for ledger values
"""

import base64
import binascii
import re
from typing import Any, Optional, Union

_HEX_RE = re.compile(r"^(0x)?[0-9a-fA-F]+$")

# Registry UIDs are BytesN<32>.
UID_BYTE_LENGTH = 32


def bytes_to_hex_str(byte_arr: Union[bytes, bytearray]) -> str:
    """
    Convert a byte array to a lowercase hex string without a prefix.

    :param byte_arr: The byte array to convert.
    :return: The resulting hex string.
    """
    return bytes(byte_arr).hex()


def normalize_uid(value: Any) -> Optional[str]:
    """
    Normalize a schema or attestation UID to lowercase hex.
    UIDs may arrive as raw bytes, as hex strings, or as base64 strings
    depending on which RPC path produced them.

    :param value: The raw UID.
    :return: The hex UID, or None if the value is empty.
    """
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes_to_hex_str(value) if value else None
    text = str(value).strip()
    if not text:
        return None
    if _HEX_RE.match(text) and len(text.removeprefix("0x")) % 2 == 0:
        return text.removeprefix("0x").lower()
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return text
    if len(raw) == UID_BYTE_LENGTH:
        return bytes_to_hex_str(raw)
    return text


def decode_text(value: Any) -> Optional[str]:
    """
    Decode a Soroban string value to text.
    Soroban strings are byte strings; invalid UTF-8 is replaced.

    :param value: The decoded native value.
    :return: The text, or None.
    """
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def to_json_safe(value: Any) -> Any:
    """
    Convert a decoded ledger value to a JSON serializable structure.
    Bytes become hex, mappings get string keys, and anything else
    unknown is rendered with str().

    :param value: The decoded native value.
    :return: The JSON safe value.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes_to_hex_str(value)
    if isinstance(value, dict):
        return {_json_key(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_safe(v) for v in value]
    # Addresses and other SDK objects.
    return str(getattr(value, "address", value))


def _json_key(key: Any) -> str:
    if isinstance(key, (bytes, bytearray)):
        return bytes_to_hex_str(key)
    return str(getattr(key, "address", key))
