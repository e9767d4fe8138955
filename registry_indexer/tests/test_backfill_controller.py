"""
Tests of the backfill_controller module
"""

import unittest
from unittest.mock import create_autospec, patch

from registry_indexer.core.backfill_controller import BackfillController
from registry_indexer.core.errors import ErrorKind, IndexerError
from registry_indexer.core.horizon_client import HorizonClient
from registry_indexer.core.models import (
    Attestation,
    LedgerEvent,
    LedgerOperation,
    LedgerTransaction,
    Schema,
)
from registry_indexer.core.registry_projector import RegistryProjector
from registry_indexer.core.soroban_rpc_client import SorobanRpcClient
from registry_indexer.core.types import RawLedgerEvent
from registry_indexer.tests.utils import (
    ATTESTATION_UID,
    CONTRACT_ID,
    SCHEMA_UID,
    attest_call_operation,
    attest_create_value,
    attest_revoke_value,
    create_test_store,
    make_page,
    make_raw_event,
    make_transaction,
    schema_register_value,
)


def _create(event_id="a1", ledger=101):
    return make_raw_event(event_id, ledger, ("ATTEST", "CREATE"), attest_create_value())


def _schema(event_id="s1", ledger=101):
    return make_raw_event(event_id, ledger, ("SCHEMA", "REGISTER"), schema_register_value())


def _revoke(event_id="r1", ledger=102):
    return make_raw_event(event_id, ledger, ("ATTEST", "REVOKE"), attest_revoke_value())


class TestBackfillController(unittest.TestCase):
    def setUp(self):
        self.store = create_test_store()
        self.projector = RegistryProjector(self.store)
        self.rpc_client = create_autospec(SorobanRpcClient, instance=True)
        self.rpc_client.get_latest_ledger.return_value = 1000
        self.rpc_client.get_transaction.side_effect = lambda tx_hash: make_transaction(tx_hash, 101)
        self.horizon_client = create_autospec(HorizonClient, instance=True)
        self.horizon_client.get_transaction_operations.side_effect = lambda tx_hash: [
            attest_call_operation(tx_hash)
        ]
        self.controller = BackfillController(
            self.rpc_client, self.horizon_client, self.store, self.projector, [CONTRACT_ID]
        )

    def test_schema_projected_before_dependent_attestation(self):
        self.rpc_client.get_events.return_value = make_page([_create(), _schema()])

        with patch.object(self.projector, "project", wraps=self.projector.project) as project:
            result = self.controller.perform_backfill(100, 101)

        projected = [c.args[1].event_id for c in project.call_args_list]
        assert projected == ["s1", "a1"]
        assert result.errors == []
        assert result.events_processed == 2
        assert result.transactions_processed == 2
        assert result.operations_processed == 2
        assert result.processed_up_to_ledger == 101
        assert self.store.find_by_key(Schema, SCHEMA_UID.hex()) is not None
        assert self.store.find_by_key(Attestation, ATTESTATION_UID.hex()).schema_uid == SCHEMA_UID.hex()

    def test_create_and_revoke_in_one_batch(self):
        self.rpc_client.get_events.return_value = make_page([_create(), _revoke()])

        self.controller.perform_backfill(100, 102)

        attestation = self.store.find_by_key(Attestation, ATTESTATION_UID.hex())
        assert attestation.revoked is True
        assert attestation.created_at is not None
        assert self.store.get_checkpoint() == 102

    def test_repeated_backfill_is_idempotent(self):
        self.rpc_client.get_events.return_value = make_page([_schema(), _create(), _revoke()])

        self.controller.perform_backfill(100, 102)
        self.controller.perform_backfill(100, 102)

        assert self.store.count(LedgerEvent) == 3
        assert self.store.count(Schema) == 1
        assert self.store.count(Attestation) == 1
        assert self.store.count(LedgerTransaction) == 3
        assert self.store.count(LedgerOperation) == 3

    def test_per_event_errors_are_collected(self):
        def _get_transaction(tx_hash):
            if tx_hash == "tx-a1":
                raise IndexerError("RPC timeout")
            return make_transaction(tx_hash, 101)

        self.rpc_client.get_transaction.side_effect = _get_transaction
        self.rpc_client.get_events.return_value = make_page([_schema(), _create()])

        result = self.controller.perform_backfill(100, 101)

        assert result.events_processed == 1
        assert len(result.errors) == 1
        assert "a1" in result.errors[0]
        assert result.processed_up_to_ledger == 101
        assert self.store.find_by_key(LedgerEvent, "s1") is not None
        assert self.store.find_by_key(LedgerEvent, "a1") is None

    def test_operations_lookup_failure_is_not_fatal(self):
        self.horizon_client.get_transaction_operations.side_effect = IndexerError("Horizon down")
        self.rpc_client.get_events.return_value = make_page([_create()])

        result = self.controller.perform_backfill(100, 101)

        assert result.events_processed == 1
        assert result.operations_processed == 0
        assert len(result.errors) == 1
        attestation = self.store.find_by_key(Attestation, ATTESTATION_UID.hex())
        assert attestation.schema_uid == ""

    def test_undecodable_event_is_reported(self):
        broken = RawLedgerEvent(
            id="bad", ledger=101, contract_id=CONTRACT_ID, topic=("@@@",), value=None
        )
        self.rpc_client.get_events.return_value = make_page([broken, _schema()])

        result = self.controller.perform_backfill(100, 101)

        assert result.events_processed == 1
        assert result.errors[0].startswith("Event bad")

    def test_events_past_end_ledger_are_ignored(self):
        self.rpc_client.get_events.return_value = make_page(
            [_schema(ledger=100), _create(ledger=250)], cursor="c1"
        )

        result = self.controller.perform_backfill(100, 200)

        assert self.rpc_client.get_events.call_count == 1
        assert result.events_processed == 1
        assert result.processed_up_to_ledger == 200
        assert self.store.get_checkpoint() == 200
        assert self.store.find_by_key(LedgerEvent, "a1") is None

    def test_follows_cursor_until_range_end(self):
        self.rpc_client.get_events.side_effect = [
            make_page([_schema(ledger=100)], cursor="c1"),
            make_page([_create(ledger=150)], cursor="c2"),
            make_page([]),
        ]

        result = self.controller.perform_backfill(100, 300)

        calls = self.rpc_client.get_events.call_args_list
        assert len(calls) == 3
        assert calls[0].kwargs["start_ledger"] == 100
        assert calls[1].kwargs["cursor"] == "c1"
        assert calls[2].kwargs["cursor"] == "c2"
        assert result.events_processed == 2
        assert result.processed_up_to_ledger == 300
        assert self.store.get_checkpoint() == 300

    def test_range_with_empty_tail_is_completed(self):
        self.rpc_client.get_events.side_effect = lambda *args, **kwargs: (
            make_page([_schema(ledger=150)])
            if kwargs["start_ledger"] <= 150
            else make_page([])
        )

        result = self.controller.perform_backfill(100, 200)

        calls = self.rpc_client.get_events.call_args_list
        assert [c.kwargs["start_ledger"] for c in calls] == [100, 151]
        assert result.events_processed == 1
        assert result.processed_up_to_ledger == 200
        assert self.store.get_checkpoint() == 200
        assert result.waiting_for_tip is False

    def test_empty_page_at_start_ledger_completes_range(self):
        self.rpc_client.get_events.return_value = make_page([])

        result = self.controller.perform_backfill(100, 200)

        assert self.rpc_client.get_events.call_count == 1
        assert result.events_processed == 0
        assert result.processed_up_to_ledger == 200
        assert self.store.get_checkpoint() == 200

    def test_empty_range_past_tip_stops_at_tip(self):
        self.rpc_client.get_events.return_value = make_page([])

        result = self.controller.perform_backfill(900, 5000)

        assert result.processed_up_to_ledger == 1000
        assert result.waiting_for_tip

    def test_empty_page_with_new_cursor_is_followed(self):
        self.rpc_client.get_events.side_effect = [
            make_page([], cursor="c1"),
            make_page([_schema(ledger=180)], cursor="c2"),
            make_page([], cursor="c2"),
        ]

        result = self.controller.perform_backfill(100, 200)

        assert self.rpc_client.get_events.call_count == 3
        assert result.events_processed == 1
        assert result.processed_up_to_ledger == 200

    def test_rpc_failure_reports_partial_progress(self):
        self.rpc_client.get_events.side_effect = [
            make_page([_schema(ledger=100)], cursor="c1"),
            IndexerError("RPC 503", status_code=503),
        ]

        result = self.controller.perform_backfill(100, 300)

        assert result.events_processed == 1
        assert result.processed_up_to_ledger == 100
        assert result.errors[-1].startswith("RPC error")

    def test_defaults_to_checkpoint_and_tip(self):
        self.store.advance_checkpoint(500)
        self.rpc_client.get_events.return_value = make_page([])

        result = self.controller.perform_backfill()

        assert self.rpc_client.get_events.call_args.kwargs["start_ledger"] == 501
        assert result.processed_up_to_ledger == 1000
        assert result.waiting_for_tip
        assert result.last_rpc_ledger == 1000

    def test_iteration_cap(self):
        self.rpc_client.get_events.side_effect = lambda *args, **kwargs: make_page(
            [_schema(ledger=100)], cursor="c1"
        )

        with patch("registry_indexer.core.backfill_controller.MAX_BACKFILL_ITERATIONS", 4):
            self.controller.perform_backfill(100, 300)

        assert self.rpc_client.get_events.call_count == 4

    def test_requires_contract_ids(self):
        controller = BackfillController(
            self.rpc_client, self.horizon_client, self.store, self.projector, []
        )
        with self.assertRaises(IndexerError) as context:
            controller.perform_backfill()
        assert context.exception.kind == ErrorKind.CONFIGURATION


if __name__ == "__main__":
    unittest.main()
