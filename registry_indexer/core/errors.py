"""
Typed failures raised by the ledger clients, the store, and the ingestion jobs.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classifies a failure so callers can choose retry or dead-letter without parsing messages."""

    # Network failures, timeouts, non-2xx responses and RPC error objects.
    TRANSIENT = "transient"
    # Malformed XDR or event payloads.
    DECODE = "decode"
    # Database failures and transaction timeouts.
    PERSISTENCE = "persistence"
    # Missing contract ids, unknown network, unreachable database at startup.
    CONFIGURATION = "configuration"
    # Unknown job type or unusable job payload. Never retried.
    INVALID_JOB = "invalid_job"
    # Safety caps exceeded.
    FATAL = "fatal"


class IndexerError(Exception):
    """Base exception for ingestion failures."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.TRANSIENT,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.kind = kind
        self.status_code = status_code
        super().__init__(self.message)

    def __str__(self):
        error_msg = f"[{self.kind.value}] {self.message}"
        if self.status_code:
            error_msg = f"{error_msg} (HTTP {self.status_code})"
        return error_msg


def error_kind_of(error: BaseException) -> ErrorKind:
    """
    Classify an arbitrary exception.

    :param error: The exception.
    :return: The error kind; unknown exceptions count as transient.
    """
    if isinstance(error, IndexerError):
        return error.kind
    return ErrorKind.TRANSIENT
