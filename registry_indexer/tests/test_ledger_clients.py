"""
Tests of the Soroban RPC and Horizon clients
"""

import datetime
import unittest
from unittest.mock import Mock, patch

import requests

from registry_indexer.core.errors import ErrorKind, IndexerError
from registry_indexer.core.horizon_client import HorizonClient
from registry_indexer.core.soroban_rpc_client import SorobanRpcClient
from registry_indexer.tests.utils import CONTRACT_ID, encode_topic


def _response(payload=None, status_code=200):
    response = Mock(spec=requests.Response)
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(
            f"{status_code} Error"
        )
    return response


def _rpc_result(result):
    return _response({"jsonrpc": "2.0", "id": 1, "result": result})


def _event_record(event_id, ledger):
    return {
        "id": event_id,
        "ledger": ledger,
        "contractId": CONTRACT_ID,
        "topic": encode_topic("ATTEST", "CREATE"),
        "value": "AAAAAQ==",
        "ledgerClosedAt": "2025-01-01T12:00:00Z",
        "txHash": f"tx-{event_id}",
        "inSuccessfulContractCall": True,
    }


class TestSorobanRpcClient(unittest.TestCase):
    def setUp(self):
        self.client = SorobanRpcClient("https://rpc.test", retry_delay=0)
        self.post = Mock()
        self.client.session.post = self.post

    def _sent_body(self, call_index=-1):
        return self.post.call_args_list[call_index].kwargs["json"]

    def test_get_latest_ledger(self):
        self.post.return_value = _rpc_result({"id": "x", "sequence": 5000})

        assert self.client.get_latest_ledger() == 5000
        body = self._sent_body()
        assert body["method"] == "getLatestLedger"
        assert body["jsonrpc"] == "2.0"
        assert "params" not in body

    def test_rpc_error_object(self):
        self.post.return_value = _response(
            {"jsonrpc": "2.0", "id": 1, "error": {"code": -32600, "message": "bad start"}}
        )

        with self.assertRaises(IndexerError) as context:
            self.client.get_latest_ledger()
        assert context.exception.kind == ErrorKind.TRANSIENT
        assert "bad start" in str(context.exception)

    def test_http_error(self):
        self.post.return_value = _response(status_code=503)

        with self.assertRaises(IndexerError) as context:
            self.client.get_latest_ledger()
        assert context.exception.status_code == 503
        assert context.exception.kind == ErrorKind.TRANSIENT

    def test_invalid_json(self):
        response = _response()
        response.json.side_effect = ValueError("Expecting value")
        self.post.return_value = response

        with self.assertRaises(IndexerError):
            self.client.get_health()

    def test_connection_errors_are_retried(self):
        self.post.side_effect = [
            requests.exceptions.ConnectionError("reset"),
            _rpc_result({"status": "healthy"}),
        ]

        assert self.client.get_health() == "healthy"
        assert self.post.call_count == 2

    def test_connection_errors_exhaust_retries(self):
        self.post.side_effect = requests.exceptions.Timeout("timed out")

        with self.assertRaises(IndexerError) as context:
            self.client.get_latest_ledger()
        assert context.exception.kind == ErrorKind.TRANSIENT
        assert self.post.call_count == 3

    def test_get_events_by_start_ledger(self):
        self.post.return_value = _rpc_result(
            {
                "events": [_event_record("e1", 100), {"id": "broken"}, _event_record("e2", 101)],
                "cursor": "0000000433791700992-0000000002",
                "latestLedger": 150,
            }
        )

        page = self.client.get_events([CONTRACT_ID], start_ledger=100, limit=50)

        params = self._sent_body()["params"]
        assert params["startLedger"] == 100
        assert params["pagination"] == {"limit": 50}
        assert params["filters"] == [{"type": "contract", "contractIds": [CONTRACT_ID]}]
        assert [e.id for e in page.events] == ["e1", "e2"]
        assert page.events[0].topic == tuple(encode_topic("ATTEST", "CREATE"))
        assert page.cursor == "0000000433791700992-0000000002"
        assert page.latest_ledger == 150

    def test_get_events_by_cursor(self):
        self.post.return_value = _rpc_result({"events": [], "cursor": "", "latestLedger": 150})

        page = self.client.get_events([CONTRACT_ID], start_ledger=100, cursor="c1")

        params = self._sent_body()["params"]
        assert "startLedger" not in params
        assert params["pagination"] == {"limit": 100, "cursor": "c1"}
        assert page.events == []
        assert page.cursor is None

    def test_get_events_needs_start_or_cursor(self):
        with self.assertRaises(IndexerError) as context:
            self.client.get_events([CONTRACT_ID])
        assert context.exception.kind == ErrorKind.INVALID_JOB
        self.post.assert_not_called()

    def test_get_transaction_not_found(self):
        self.post.return_value = _rpc_result({"status": "NOT_FOUND", "latestLedger": 150})

        assert self.client.get_transaction("abc") is None
        assert self._sent_body()["params"] == {"hash": "abc"}

    def test_get_transaction(self):
        self.post.return_value = _rpc_result(
            {
                "status": "FAILED",
                "ledger": 120,
                "createdAt": "1735732800",
                "envelopeXdr": "AAAA",
                "resultXdr": "BBBB",
                "resultMetaXdr": "CCCC",
            }
        )

        transaction = self.client.get_transaction("abc")

        assert transaction.hash == "abc"
        assert transaction.ledger == 120
        assert transaction.created_at == datetime.datetime(2025, 1, 1, 12, 0, 0)
        assert transaction.result_meta_xdr == "CCCC"
        assert not transaction.successful
        # No passphrase configured, the envelope is not parsed.
        assert transaction.source_account == ""


class TestHorizonClient(unittest.TestCase):
    def setUp(self):
        self.client = HorizonClient("https://horizon.test/", retry_delay=0)

    def test_get_transaction_operations(self):
        records = [{"id": "1", "transaction_hash": "abc"}]
        with patch.object(
            self.client.session,
            "get",
            return_value=_response({"_embedded": {"records": records}}),
        ) as mock_get:
            assert self.client.get_transaction_operations("abc") == records

        mock_get.assert_called_once_with(
            "https://horizon.test/transactions/abc/operations",
            params={"limit": 200, "order": "asc"},
            timeout=30,
        )

    def test_unknown_transaction(self):
        with patch.object(self.client.session, "get", return_value=_response(status_code=404)):
            assert self.client.get_transaction_operations("missing") == []

    def test_server_error(self):
        with patch.object(self.client.session, "get", return_value=_response(status_code=500)):
            with self.assertRaises(IndexerError) as context:
                self.client.get_transaction_operations("abc")
        assert context.exception.status_code == 500

    def test_get_account_operations(self):
        with patch.object(
            self.client.session, "get", return_value=_response({"_embedded": {"records": []}})
        ) as mock_get:
            assert self.client.get_account_operations(
                CONTRACT_ID, limit=500, cursor="123", include_failed=False
            ) == []

        assert mock_get.call_args.kwargs["params"] == {
            "limit": 200,
            "order": "desc",
            "include_failed": "false",
            "cursor": "123",
        }
        assert mock_get.call_args.args[0] == f"https://horizon.test/accounts/{CONTRACT_ID}/operations"


if __name__ == "__main__":
    unittest.main()
