"""Common error and validation utility functions
"""

from typing import Optional


def check_for_missing_env_vars(env_vars: dict):
    """Checks whether any required environment values are undefined.

    :param env_vars: The dictionary of environment variables.
    """
    # Missing settings are unrecoverable.
    missing_keys = [k for k, v in env_vars.items() if v is None or v == ""]
    if missing_keys:
        missing_keys_str = ", ".join(missing_keys)
        raise EnvironmentError(
            f"Missing required environment variables: {missing_keys_str}"
        )


def parse_ledger_param(value) -> Optional[int]:
    """Parses a ledger sequence received from a caller.

    Accepts ints and numeric strings; None passes through.

    :param value: The raw value.
    :return: The ledger sequence or None.
    :raises ValueError: If the value is not a non-negative integer.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid ledger value: {value!r}")
    if isinstance(value, int):
        ledger = value
    elif isinstance(value, float) and value.is_integer():
        ledger = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        ledger = int(value.strip())
    else:
        raise ValueError(f"Invalid ledger value: {value!r}")
    if ledger < 0:
        raise ValueError(f"Invalid ledger value: {value!r}")
    return ledger
