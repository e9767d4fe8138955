"""
Operations ingestion jobs.

Contract operations are pulled from Horizon and stored with their
transactions; transactions are always written before the operations
that reference them.
"""

from typing import Dict, List, Optional, Sequence

from registry_indexer.core.errors import ErrorKind, IndexerError
from registry_indexer.core.horizon_client import MAX_OPERATIONS_PER_FETCH, HorizonClient
from registry_indexer.core.models import LedgerTransaction
from registry_indexer.core.registry_projector import RegistryProjector
from registry_indexer.core.registry_store import RegistryStore
from registry_indexer.core.soroban_rpc_client import SorobanRpcClient
from registry_indexer.core.types import OperationsResult, TransactionDetail
from registry_indexer.utils.log import get_default_logger
from registry_indexer.utils.time_utils import to_utc_datetime

_LOG = get_default_logger(__name__)

MISSING_OPERATIONS_BATCH_SIZE = 100


def _is_failed(operation: dict) -> bool:
    return operation.get("transaction_successful") is False or operation.get("successful") is False


class OperationsIngestor:
    """
    Runs the fetch-contract-operations and backfill-missing-operations jobs.
    """

    def __init__(
        self,
        rpc_client: SorobanRpcClient,
        horizon_client: HorizonClient,
        store: RegistryStore,
        projector: RegistryProjector,
        contract_ids: Sequence[str],
    ):
        self.rpc_client = rpc_client
        self.horizon_client = horizon_client
        self.store = store
        self.projector = projector
        self.contract_ids = list(contract_ids)

    def fetch_contract_operations(
        self,
        contract_ids: Optional[Sequence[str]] = None,
        start_ledger: Optional[int] = None,
        include_failed_tx: bool = True,
    ) -> OperationsResult:
        """
        Fetch and store the most recent operations of each contract.

        :param contract_ids: Contracts to fetch; defaults to the configured ones.
        :param start_ledger: Drop operations whose transaction precedes this ledger.
        :param include_failed_tx: Keep operations of failed transactions.
        :return: The job summary.
        """
        contract_ids = list(contract_ids or self.contract_ids)
        if not contract_ids:
            raise IndexerError("No contract ids configured for indexing", ErrorKind.CONFIGURATION)

        result = OperationsResult()
        accounts = set()
        operations_by_contract: Dict[str, List[dict]] = {}
        for contract_id in contract_ids:
            try:
                records = self.horizon_client.get_account_operations(
                    contract_id, limit=MAX_OPERATIONS_PER_FETCH, include_failed=include_failed_tx
                )
            except IndexerError as e:
                _LOG.error("Fetching operations for contract %s failed: %s", contract_id, e)
                result.errors.append(f"Contract {contract_id}: {e}")
                continue
            _LOG.info("Found %s operations for contract %s", len(records), contract_id)

            kept = []
            for operation in records:
                if operation.get("source_account"):
                    accounts.add(operation["source_account"])
                if _is_failed(operation):
                    result.failed_operations += 1
                    if not include_failed_tx:
                        continue
                kept.append(operation)
            operations_by_contract[contract_id] = kept
            result.operations_fetched += len(kept)

        tx_hashes = {
            op["transaction_hash"]
            for ops in operations_by_contract.values()
            for op in ops
            if op.get("transaction_hash")
        }
        transactions = self._fetch_transactions(tx_hashes, result)
        result.transactions_fetched = len(transactions)

        for contract_id, operations in operations_by_contract.items():
            if start_ledger is not None:
                operations = [
                    op for op in operations
                    if op.get("transaction_hash") not in transactions
                    or transactions[op["transaction_hash"]].ledger >= start_ledger
                ]
            if operations:
                result.operations_stored += self._store(operations, transactions, contract_id)

        result.accounts = sorted(accounts)
        _LOG.info(
            "Stored %s of %s contract operations (%s transactions)",
            result.operations_stored,
            result.operations_fetched,
            result.transactions_fetched,
        )
        return result

    def backfill_missing_operations(
        self,
        start_ledger: Optional[int] = None,
        end_ledger: Optional[int] = None,
        limit: int = MISSING_OPERATIONS_BATCH_SIZE,
    ) -> OperationsResult:
        """
        Fetch operations for stored transactions that have none.

        :param start_ledger: Optional first ledger, inclusive.
        :param end_ledger: Optional last ledger, inclusive.
        :param limit: Maximum number of transactions handled per run.
        :return: The job summary.
        """
        result = OperationsResult()
        tx_hashes = self.store.find_transactions_without_operations(start_ledger, end_ledger, limit)
        _LOG.info("Found %s transactions without operations", len(tx_hashes))
        for tx_hash in tx_hashes:
            try:
                operations = self.horizon_client.get_transaction_operations(tx_hash)
            except IndexerError as e:
                _LOG.error("Fetching operations for %s failed: %s", tx_hash, e)
                result.errors.append(f"Transaction {tx_hash}: {e}")
                continue
            result.transactions_fetched += 1
            result.operations_fetched += len(operations)
            result.failed_operations += sum(1 for op in operations if _is_failed(op))
            if not operations:
                continue
            contract_id = self._contract_for(operations)
            result.operations_stored += self.store.run_in_transaction(
                lambda session: self.projector.record_operations(session, operations, contract_id)
            )
        return result

    def _fetch_transactions(self, tx_hashes, result: OperationsResult) -> Dict[str, TransactionDetail]:
        transactions = {}
        for tx_hash in sorted(tx_hashes):
            try:
                detail = self.rpc_client.get_transaction(tx_hash)
            except IndexerError as e:
                _LOG.warning("Transaction lookup failed for %s: %s", tx_hash, e)
                result.errors.append(f"Transaction {tx_hash}: {e}")
                continue
            if detail is not None:
                transactions[tx_hash] = detail
        return transactions

    def _store(
        self,
        operations: Sequence[dict],
        transactions: Dict[str, TransactionDetail],
        contract_id: str,
    ) -> int:
        def _write(session) -> int:
            for tx_hash in {op["transaction_hash"] for op in operations if op.get("transaction_hash")}:
                detail = transactions.get(tx_hash)
                if detail is not None:
                    self.projector.record_transaction_detail(session, detail)
                else:
                    # Keep operations attached to a transaction row even without RPC detail.
                    sample = next(op for op in operations if op.get("transaction_hash") == tx_hash)
                    fields = {
                        "hash": tx_hash,
                        "ledger": 0,
                        "source_account": sample.get("source_account") or "",
                        "successful": not _is_failed(sample),
                        "timestamp": to_utc_datetime(sample.get("created_at")),
                    }
                    self.store.upsert(LedgerTransaction, tx_hash, fields, {}, session=session)
            return self.projector.record_operations(session, operations, contract_id)

        return self.store.run_in_transaction(_write)

    def _contract_for(self, operations: Sequence[dict]) -> str:
        for operation in operations:
            for contract_id in self.contract_ids:
                if contract_id in str(operation.get("parameters") or ""):
                    return contract_id
        return self.contract_ids[0] if self.contract_ids else ""
