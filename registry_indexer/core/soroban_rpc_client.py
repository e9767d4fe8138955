"""
Soroban RPC Client

JSON-RPC 2.0 client for the Soroban RPC methods used by the indexer:
getLatestLedger, getEvents, getTransaction and getHealth.

API Documentation: https://developers.stellar.org/docs/data/apis/rpc/api-reference/methods
"""

import itertools
import pprint
from typing import Any, Dict, List, Optional, Sequence

import requests

from registry_indexer.core.errors import ErrorKind, IndexerError
from registry_indexer.core.event_decoder import summarize_envelope
from registry_indexer.core.types import EventsPage, RawLedgerEvent, TransactionDetail
from registry_indexer.utils.log import get_default_logger
from registry_indexer.utils.retries import with_retries
from registry_indexer.utils.time_utils import to_utc_datetime

_LOG = get_default_logger(__name__)

# getEvents page size.
MAX_EVENTS_PER_FETCH = 100

# Connection level retries before a call surfaces as a transient failure.
_RPC_CONNECTION_MAX_ATTEMPTS = 3
_RPC_CONNECTION_BACKOFF = 0.5


class SorobanRpcClient:
    """
    Client for a Soroban RPC endpoint.

    Args:
        rpc_url: The RPC endpoint URL.
        network_passphrase: Passphrase used to parse transaction envelopes.
        timeout: Request timeout in seconds (default: 30)

    Example:
        >>> client = SorobanRpcClient("https://soroban-testnet.stellar.org")
        >>> tip = client.get_latest_ledger()
        >>> page = client.get_events(["CA..."], start_ledger=tip - 100)
    """

    def __init__(
        self,
        rpc_url: str,
        network_passphrase: Optional[str] = None,
        timeout: int = 30,
        max_attempts: int = _RPC_CONNECTION_MAX_ATTEMPTS,
        retry_delay: float = _RPC_CONNECTION_BACKOFF,
    ):
        """Initialize the RPC client."""
        self.rpc_url = rpc_url
        self.network_passphrase = network_passphrase
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        self._request_ids = itertools.count(1)

    def _post(self, body: dict) -> requests.Response:
        return self.session.post(self.rpc_url, json=body, timeout=self.timeout)

    def _call(self, method: str, params: Optional[dict] = None) -> Any:
        """
        Issue one JSON-RPC call.

        :param method: The RPC method.
        :param params: The method params.
        :return: The "result" member of the response.
        """
        body = {"jsonrpc": "2.0", "id": next(self._request_ids), "method": method}
        if params is not None:
            body["params"] = params
        _LOG.debug("RPC request %s:\n%s", method, pprint.pformat(params))

        try:
            response = with_retries(
                lambda: self._post(body),
                _LOG,
                max_attempts=self.max_attempts,
                delay=self.retry_delay,
                retry_on=(requests.exceptions.ConnectionError, requests.exceptions.Timeout),
                description=f"RPC {method}",
            )
        except requests.exceptions.RequestException as e:
            raise IndexerError(f"RPC {method} request failed: {e}") from e

        try:
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.HTTPError as e:
            raise IndexerError(
                f"RPC {method} returned HTTP error: {e}", status_code=response.status_code
            ) from e
        except ValueError as e:
            raise IndexerError(f"RPC {method} returned invalid JSON: {e}") from e

        if data.get("error"):
            error = data["error"]
            raise IndexerError(
                f"RPC {method} error {error.get('code')}: {error.get('message')}"
            )
        _LOG.debug("RPC response %s:\n%s", method, pprint.pformat(data.get("result")))
        return data.get("result")

    def get_latest_ledger(self) -> int:
        """
        :return: The sequence of the latest ledger known to the RPC node.
        """
        result = self._call("getLatestLedger")
        try:
            return int(result["sequence"])
        except (KeyError, TypeError, ValueError) as e:
            raise IndexerError(f"Unexpected getLatestLedger result: {result!r}") from e

    def get_events(
        self,
        contract_ids: Sequence[str],
        start_ledger: Optional[int] = None,
        cursor: Optional[str] = None,
        limit: int = MAX_EVENTS_PER_FETCH,
    ) -> EventsPage:
        """
        Fetch one page of contract events.
        Pagination is by cursor when one is given, otherwise by start ledger.

        :param contract_ids: Contracts to filter on.
        :param start_ledger: First ledger of the window, used without a cursor.
        :param cursor: Cursor returned by the previous page.
        :param limit: Page size.
        :return: The events page.
        """
        params: Dict[str, Any] = {
            "filters": [{"type": "contract", "contractIds": list(contract_ids)}],
            "pagination": {"limit": limit},
        }
        if cursor:
            params["pagination"]["cursor"] = cursor
        elif start_ledger is not None:
            params["startLedger"] = start_ledger
        else:
            raise IndexerError(
                "getEvents needs a start ledger or a cursor", ErrorKind.INVALID_JOB
            )

        result = self._call("getEvents", params) or {}
        events: List[RawLedgerEvent] = []
        for record in result.get("events") or []:
            try:
                events.append(RawLedgerEvent.from_rpc(record))
            except (KeyError, TypeError, ValueError) as e:
                _LOG.warning("Skipping malformed event record %s: %s", record.get("id"), e)
        return EventsPage(
            events=events,
            cursor=result.get("cursor") or None,
            latest_ledger=int(result.get("latestLedger") or 0),
        )

    def get_transaction(self, tx_hash: str) -> Optional[TransactionDetail]:
        """
        Fetch a transaction by hash.

        :param tx_hash: The transaction hash.
        :return: The transaction, or None if the node does not know it.
        """
        result = self._call("getTransaction", {"hash": tx_hash}) or {}
        status = result.get("status", "NOT_FOUND")
        if status == "NOT_FOUND":
            return None

        envelope_xdr = result.get("envelopeXdr")
        summary = summarize_envelope(envelope_xdr, self.network_passphrase)
        return TransactionDetail(
            hash=tx_hash,
            ledger=int(result.get("ledger") or 0),
            status=status,
            created_at=to_utc_datetime(result.get("createdAt")),
            envelope_xdr=envelope_xdr,
            result_xdr=result.get("resultXdr"),
            result_meta_xdr=result.get("resultMetaXdr"),
            source_account=summary.source_account,
            fee=summary.fee,
            operation_count=summary.operation_count,
        )

    def get_health(self) -> str:
        """
        :return: The node health status, "healthy" when serving.
        """
        result = self._call("getHealth") or {}
        return str(result.get("status", "unknown"))
