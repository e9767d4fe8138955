"""
Backfill Controller

Bounded-range historical ingestion. Unlike the fetcher, every entity is
written in its own short transaction so long ranges never hold a database
transaction open; failures of single events are collected and the run
reports partial progress. The checkpoint advances after every page, and a
scan that finds nothing more in the range marks the range as processed.
"""

from typing import List, Optional, Sequence

from registry_indexer.core.errors import ErrorKind, IndexerError
from registry_indexer.core.event_decoder import decode_event
from registry_indexer.core.event_fetcher import resolve_start_ledger
from registry_indexer.core.horizon_client import HorizonClient
from registry_indexer.core.registry_projector import (
    RegistryProjector,
    order_events_for_projection,
)
from registry_indexer.core.registry_store import RegistryStore
from registry_indexer.core.soroban_rpc_client import MAX_EVENTS_PER_FETCH, SorobanRpcClient
from registry_indexer.core.types import BackfillResult, DecodedEvent
from registry_indexer.utils.log import get_default_logger

_LOG = get_default_logger(__name__)

MAX_BACKFILL_ITERATIONS = 50


class BackfillController:
    """
    Processes a ledger range one event at a time: transaction, then event and
    projection, then the transaction's operations.
    """

    def __init__(
        self,
        rpc_client: SorobanRpcClient,
        horizon_client: Optional[HorizonClient],
        store: RegistryStore,
        projector: RegistryProjector,
        contract_ids: Sequence[str],
        page_size: int = MAX_EVENTS_PER_FETCH,
    ):
        self.rpc_client = rpc_client
        self.horizon_client = horizon_client
        self.store = store
        self.projector = projector
        self.contract_ids = list(contract_ids)
        self.page_size = page_size

    def perform_backfill(
        self, start_ledger: Optional[int] = None, end_ledger: Optional[int] = None
    ) -> BackfillResult:
        """
        Backfill events in [start_ledger, end_ledger].

        :param start_ledger: First ledger; defaults to the checkpoint + 1.
        :param end_ledger: Last ledger; defaults to the chain tip.
        :return: Counts, the last processed ledger, and per-event errors.
        :raises IndexerError: If no contract is configured or the tip cannot be read.
        """
        if not self.contract_ids:
            raise IndexerError("No contract ids configured for indexing", ErrorKind.CONFIGURATION)

        latest_ledger = self.rpc_client.get_latest_ledger()
        current_ledger = resolve_start_ledger(
            start_ledger, self.store.get_checkpoint(), latest_ledger
        )
        target_end = end_ledger if end_ledger is not None else latest_ledger
        result = BackfillResult(
            success=True,
            message="",
            processed_up_to_ledger=current_ledger - 1,
            last_rpc_ledger=latest_ledger,
        )
        _LOG.info("Backfilling ledgers %s..%s", current_ledger, target_end)

        cursor: Optional[str] = None
        iterations = 0
        while current_ledger <= target_end and iterations < MAX_BACKFILL_ITERATIONS:
            iterations += 1
            try:
                page = self.rpc_client.get_events(
                    self.contract_ids,
                    start_ledger=None if cursor else current_ledger,
                    cursor=cursor,
                    limit=self.page_size,
                )
            except IndexerError as e:
                _LOG.error("Backfill page request failed: %s", e)
                result.errors.append(f"RPC error at ledger {current_ledger}: {e}")
                break
            result.last_rpc_ledger = max(result.last_rpc_ledger, page.latest_ledger)

            in_range = [raw for raw in page.events if raw.ledger <= target_end]
            if not in_range:
                if not page.events and page.cursor and page.cursor != cursor:
                    cursor = page.cursor
                    continue
                self._complete_window(result, target_end)
                break

            decoded: List[DecodedEvent] = []
            for raw in in_range:
                try:
                    decoded.append(decode_event(raw))
                except IndexerError as e:
                    _LOG.warning("Skipping event %s: %s", raw.id, e)
                    result.errors.append(f"Event {raw.id}: {e}")

            for event in order_events_for_projection(decoded):
                self._process_event(event, result)

            page_max_ledger = max(raw.ledger for raw in in_range)
            if page_max_ledger > result.processed_up_to_ledger:
                result.processed_up_to_ledger = page_max_ledger
                self.store.advance_checkpoint(page_max_ledger)

            if len(in_range) < len(page.events):
                self._complete_window(result, target_end)
                break
            if page_max_ledger >= target_end:
                break
            if page.cursor:
                cursor = page.cursor
            else:
                cursor = None
                current_ledger = result.processed_up_to_ledger + 1

        if iterations >= MAX_BACKFILL_ITERATIONS:
            _LOG.warning("Backfill stopped at the %s page cap", MAX_BACKFILL_ITERATIONS)
        result.message = (
            f"Backfilled {result.events_processed} events up to ledger "
            f"{result.processed_up_to_ledger} with {len(result.errors)} errors"
        )
        _LOG.info(result.message)
        return result

    def _complete_window(self, result: BackfillResult, target_end: int):
        """The scan found nothing more up to target_end, or up to the tip if that is lower."""
        window_end = min(target_end, result.last_rpc_ledger)
        if window_end > result.processed_up_to_ledger:
            result.processed_up_to_ledger = window_end
            self.store.advance_checkpoint(window_end)

    def _process_event(self, event: DecodedEvent, result: BackfillResult):
        try:
            transaction = None
            if event.transaction_hash:
                transaction = self.rpc_client.get_transaction(event.transaction_hash)
                self.store.run_in_transaction(
                    lambda session: self.projector.record_transaction(session, event, transaction)
                )
                result.transactions_processed += 1

            operations = self._fetch_operations(event, result)

            def _write_event(session):
                self.projector.record_event(session, event, transaction)
                self.projector.project(session, event, transaction, operations)

            self.store.run_in_transaction(_write_event)

            if operations:
                result.operations_processed += self.store.run_in_transaction(
                    lambda session: self.projector.record_operations(
                        session, operations, event.contract_id
                    )
                )
            result.events_processed += 1
        except Exception as e:  # pylint: disable=broad-except
            _LOG.error("Backfill of event %s failed: %s", event.event_id, e)
            result.errors.append(f"Event {event.event_id}: {e}")

    def _fetch_operations(self, event: DecodedEvent, result: BackfillResult) -> List[dict]:
        """Operations are optional for projection; a failed lookup is recorded, not fatal."""
        if self.horizon_client is None or not event.transaction_hash:
            return []
        try:
            return self.horizon_client.get_transaction_operations(event.transaction_hash)
        except IndexerError as e:
            _LOG.warning("Operations lookup failed for %s: %s", event.transaction_hash, e)
            result.errors.append(f"Operations of {event.transaction_hash}: {e}")
            return []
