"""
Horizon Client

Reads operation records from the Horizon REST API. Soroban RPC does not
expose invoked function parameters, so these records are the source for
contract call arguments.

API Documentation: https://developers.stellar.org/docs/data/apis/horizon/api-reference
"""

from typing import Any, Dict, List, Optional

import requests

from registry_indexer.core.errors import IndexerError
from registry_indexer.utils.log import get_default_logger
from registry_indexer.utils.retries import with_retries

_LOG = get_default_logger(__name__)

# Horizon caps page size at 200.
MAX_OPERATIONS_PER_FETCH = 200


class HorizonClient:
    """
    Client for a Horizon server.

    Args:
        horizon_url: Base URL of the Horizon server.
        timeout: Request timeout in seconds (default: 30)
    """

    def __init__(
        self,
        horizon_url: str,
        timeout: int = 30,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ):
        """Initialize the Horizon client."""
        self.horizon_url = horizon_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def _get_records(self, path: str, params: Dict[str, Any]) -> List[dict]:
        """
        GET a Horizon collection.

        :param path: Path below the server URL.
        :param params: Query parameters.
        :return: The embedded records; empty when the resource does not exist.
        """
        url = f"{self.horizon_url}/{path.lstrip('/')}"
        try:
            response = with_retries(
                lambda: self.session.get(url, params=params, timeout=self.timeout),
                _LOG,
                max_attempts=self.max_attempts,
                delay=self.retry_delay,
                retry_on=(requests.exceptions.ConnectionError, requests.exceptions.Timeout),
                description=f"Horizon GET {path}",
            )
        except requests.exceptions.RequestException as e:
            raise IndexerError(f"Horizon request failed: {e}") from e

        if response.status_code == 404:
            return []
        try:
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.HTTPError as e:
            raise IndexerError(
                f"Horizon GET {path} failed: {e}", status_code=response.status_code
            ) from e
        except ValueError as e:
            raise IndexerError(f"Horizon GET {path} returned invalid JSON: {e}") from e
        return list((data.get("_embedded") or {}).get("records") or [])

    def get_transaction_operations(self, tx_hash: str) -> List[dict]:
        """
        Fetch the operations of a transaction in application order.

        :param tx_hash: The transaction hash.
        :return: Horizon operation records.
        """
        return self._get_records(
            f"transactions/{tx_hash}/operations",
            {"limit": MAX_OPERATIONS_PER_FETCH, "order": "asc"},
        )

    def get_account_operations(
        self,
        account_id: str,
        limit: int = MAX_OPERATIONS_PER_FETCH,
        order: str = "desc",
        cursor: Optional[str] = None,
        include_failed: bool = True,
    ) -> List[dict]:
        """
        Fetch operations involving an account or contract.

        :param account_id: The account or contract id.
        :param limit: Page size, capped at 200.
        :param order: "asc" or "desc".
        :param cursor: Optional paging token.
        :param include_failed: Include operations of failed transactions.
        :return: Horizon operation records.
        """
        params: Dict[str, Any] = {
            "limit": min(limit, MAX_OPERATIONS_PER_FETCH),
            "order": order,
            "include_failed": str(include_failed).lower(),
        }
        if cursor:
            params["cursor"] = cursor
        return self._get_records(f"accounts/{account_id}/operations", params)
