"""
Time conversion helpers

Ledger timestamps arrive as ISO-8601 strings (event ledgerClosedAt) or as unix
seconds (transaction createdAt, contract payload timestamps).
All values are stored as naive UTC datetimes.
"""

import datetime
from typing import Any, Optional

import pandas as pd


def utc_now() -> datetime.datetime:
    """
    :return: The current naive UTC time.
    """
    return pd.Timestamp.now(tz="UTC").tz_localize(None).to_pydatetime()


def to_utc_datetime(value: Any) -> Optional[datetime.datetime]:
    """
    Convert a ledger timestamp to a naive UTC datetime.

    :param value: ISO-8601 string, unix seconds (int, float or numeric string),
        datetime, or pandas Timestamp.
    :return: The naive UTC datetime or None if the value is empty or unparseable.
    """
    if value is None or value == "":
        return None
    try:
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            ts = pd.Timestamp(int(value), unit="s", tz="UTC")
        elif isinstance(value, str) and value.strip().isdigit():
            ts = pd.Timestamp(int(value.strip()), unit="s", tz="UTC")
        else:
            ts = pd.Timestamp(value)
            ts = ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")
    except (ValueError, TypeError, OverflowError):
        return None
    if pd.isna(ts):
        return None
    return ts.tz_localize(None).to_pydatetime()
