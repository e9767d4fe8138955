import unittest
from unittest.mock import create_autospec

from registry_indexer.core.errors import ErrorKind, IndexerError
from registry_indexer.core.horizon_client import HorizonClient
from registry_indexer.core.models import LedgerOperation, LedgerTransaction
from registry_indexer.core.operations_ingestor import OperationsIngestor
from registry_indexer.core.registry_projector import RegistryProjector
from registry_indexer.core.soroban_rpc_client import SorobanRpcClient
from registry_indexer.tests.utils import (
    ATTESTER,
    CONTRACT_ID,
    attest_call_operation,
    create_test_store,
    make_transaction,
)

OTHER_CONTRACT_ID = "CDLZFC3SYJYDZT7K67VZ75HPJVIEUVNIXF47ZG2FB2RMQQVU2HHGCYSC"


def _failed_operation(tx_hash):
    operation = attest_call_operation(tx_hash)
    operation["transaction_successful"] = False
    return operation


class TestOperationsIngestor(unittest.TestCase):
    def setUp(self):
        self.store = create_test_store()
        self.projector = RegistryProjector(self.store)
        self.rpc_client = create_autospec(SorobanRpcClient, instance=True)
        self.rpc_client.get_transaction.side_effect = lambda tx_hash: (
            make_transaction(tx_hash, 150) if tx_hash == "t1" else None
        )
        self.horizon_client = create_autospec(HorizonClient, instance=True)
        self.ingestor = OperationsIngestor(
            self.rpc_client, self.horizon_client, self.store, self.projector, [CONTRACT_ID]
        )

    def test_fetch_contract_operations(self):
        self.horizon_client.get_account_operations.return_value = [
            attest_call_operation("t1"),
            _failed_operation("t2"),
        ]

        result = self.ingestor.fetch_contract_operations()

        assert result.operations_fetched == 2
        assert result.operations_stored == 2
        assert result.failed_operations == 1
        assert result.transactions_fetched == 1
        assert result.accounts == [ATTESTER]
        assert result.errors == []

        full = self.store.find_by_key(LedgerTransaction, "t1")
        assert full.ledger == 150
        assert full.envelope == "AAAA"
        stub = self.store.find_by_key(LedgerTransaction, "t2")
        assert stub.successful is False
        assert stub.envelope is None

        operation = self.store.find_by_key(LedgerOperation, "op-t2")
        assert operation.successful is False
        assert operation.contract_id == CONTRACT_ID

    def test_exclude_failed_transactions(self):
        self.horizon_client.get_account_operations.return_value = [
            attest_call_operation("t1"),
            _failed_operation("t2"),
        ]

        result = self.ingestor.fetch_contract_operations(include_failed_tx=False)

        assert result.operations_stored == 1
        assert result.failed_operations == 1
        assert self.store.find_by_key(LedgerOperation, "op-t2") is None
        self.horizon_client.get_account_operations.assert_called_once_with(
            CONTRACT_ID, limit=200, include_failed=False
        )

    def test_start_ledger_filter(self):
        self.horizon_client.get_account_operations.return_value = [
            attest_call_operation("t1"),
            attest_call_operation("t2"),
        ]

        result = self.ingestor.fetch_contract_operations(start_ledger=200)

        # t1 is at ledger 150; t2 has no known ledger and is kept.
        assert result.operations_stored == 1
        assert self.store.find_by_key(LedgerOperation, "op-t2") is not None

    def test_contract_failure_is_collected(self):
        def _get_account_operations(contract_id, **kwargs):
            if contract_id == OTHER_CONTRACT_ID:
                raise IndexerError("Horizon 500", status_code=500)
            return [attest_call_operation("t1")]

        self.horizon_client.get_account_operations.side_effect = _get_account_operations

        result = self.ingestor.fetch_contract_operations([OTHER_CONTRACT_ID, CONTRACT_ID])

        assert len(result.errors) == 1
        assert OTHER_CONTRACT_ID in result.errors[0]
        assert result.operations_stored == 1

    def test_requires_contract_ids(self):
        ingestor = OperationsIngestor(
            self.rpc_client, self.horizon_client, self.store, self.projector, []
        )
        with self.assertRaises(IndexerError) as context:
            ingestor.fetch_contract_operations()
        assert context.exception.kind == ErrorKind.CONFIGURATION

    def test_backfill_missing_operations(self):
        for tx_hash, ledger in [("t1", 10), ("t2", 20), ("t3", 30)]:
            self.store.upsert(
                LedgerTransaction, tx_hash, {"hash": tx_hash, "ledger": ledger}, {}
            )

        def _get_transaction_operations(tx_hash):
            if tx_hash == "t3":
                raise IndexerError("timeout")
            return [attest_call_operation(tx_hash)] if tx_hash == "t1" else []

        self.horizon_client.get_transaction_operations.side_effect = _get_transaction_operations

        result = self.ingestor.backfill_missing_operations()

        assert result.transactions_fetched == 2
        assert result.operations_stored == 1
        assert len(result.errors) == 1
        assert self.store.find_transactions_without_operations() == ["t2", "t3"]
        assert self.store.find_by_key(LedgerOperation, "op-t1").contract_id == CONTRACT_ID

    def test_backfill_missing_operations_range(self):
        for tx_hash, ledger in [("t1", 10), ("t2", 20)]:
            self.store.upsert(
                LedgerTransaction, tx_hash, {"hash": tx_hash, "ledger": ledger}, {}
            )
        self.horizon_client.get_transaction_operations.return_value = []

        self.ingestor.backfill_missing_operations(start_ledger=15, end_ledger=25)

        self.horizon_client.get_transaction_operations.assert_called_once_with("t2")


if __name__ == "__main__":
    unittest.main()
