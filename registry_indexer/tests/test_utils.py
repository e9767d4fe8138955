"""
Tests of the encoding, time and validation helpers
"""

import datetime
import unittest

import pandas as pd
from stellar_sdk import Address

from registry_indexer.tests.utils import ATTESTER, b64
from registry_indexer.utils.encoding_utils import (
    bytes_to_hex_str,
    decode_text,
    normalize_uid,
    to_json_safe,
)
from registry_indexer.utils.error_utils import check_for_missing_env_vars, parse_ledger_param
from registry_indexer.utils.time_utils import to_utc_datetime, utc_now


class TestEncodingUtils(unittest.TestCase):
    def test_hex_conversions(self):
        assert bytes_to_hex_str(b"\x00\xab") == "00ab"

    def test_normalize_uid_from_bytes(self):
        assert normalize_uid(bytes([0xAB] * 32)) == "ab" * 32

    def test_normalize_uid_from_hex(self):
        assert normalize_uid("0x" + "AB" * 32) == "ab" * 32
        assert normalize_uid("ab" * 32) == "ab" * 32

    def test_normalize_uid_from_base64(self):
        uid = bytes(range(32))
        assert normalize_uid(b64(uid)) == uid.hex()

    def test_normalize_uid_empty(self):
        assert normalize_uid(None) is None
        assert normalize_uid("") is None
        assert normalize_uid(b"") is None

    def test_normalize_uid_keeps_unknown_text(self):
        assert normalize_uid("not-a-uid") == "not-a-uid"

    def test_decode_text(self):
        assert decode_text(b"hello") == "hello"
        assert decode_text("hello") == "hello"
        assert decode_text(None) is None
        assert decode_text(b"\xff") == "\ufffd"

    def test_to_json_safe(self):
        address = Address(ATTESTER)
        value = {
            b"\x01": [b"\x02", 3, True, None],
            "address": address,
            "nested": ({"k": 1.5},),
        }
        assert to_json_safe(value) == {
            "01": ["02", 3, True, None],
            "address": ATTESTER,
            "nested": [{"k": 1.5}],
        }


class TestTimeUtils(unittest.TestCase):
    def test_iso_string(self):
        assert to_utc_datetime("2025-01-01T12:00:00Z") == datetime.datetime(2025, 1, 1, 12, 0, 0)

    def test_offset_string_converted_to_utc(self):
        assert to_utc_datetime("2025-01-01T14:00:00+02:00") == datetime.datetime(2025, 1, 1, 12, 0, 0)

    def test_unix_seconds(self):
        expected = datetime.datetime(2025, 1, 1, 12, 0, 0)
        assert to_utc_datetime(1735732800) == expected
        assert to_utc_datetime("1735732800") == expected
        assert to_utc_datetime(1735732800.0) == expected

    def test_naive_datetime_kept(self):
        value = datetime.datetime(2025, 1, 1, 12, 0, 0)
        assert to_utc_datetime(value) == value
        assert to_utc_datetime(pd.Timestamp(value)) == value

    def test_empty_and_invalid(self):
        assert to_utc_datetime(None) is None
        assert to_utc_datetime("") is None
        assert to_utc_datetime(True) is None
        assert to_utc_datetime("not a date") is None

    def test_utc_now_is_naive(self):
        assert utc_now().tzinfo is None


class TestErrorUtils(unittest.TestCase):
    def test_missing_env_vars(self):
        with self.assertRaises(EnvironmentError) as context:
            check_for_missing_env_vars({"A": "1", "B": None, "C": ""})
        assert "B, C" in str(context.exception)

    def test_no_missing_env_vars(self):
        check_for_missing_env_vars({"A": "1"})

    def test_parse_ledger_param(self):
        assert parse_ledger_param(None) is None
        assert parse_ledger_param(12) == 12
        assert parse_ledger_param(12.0) == 12
        assert parse_ledger_param(" 12 ") == 12
        assert parse_ledger_param(0) == 0

    def test_parse_ledger_param_invalid(self):
        for value in ["abc", -1, True, 1.5, "-3", [1], {}]:
            with self.assertRaises(ValueError):
                parse_ledger_param(value)


if __name__ == "__main__":
    unittest.main()
