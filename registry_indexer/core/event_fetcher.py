"""
Ledger Event Fetcher

Follows contract events page by page from a resolved start ledger. Each page
is flushed in one database transaction (transactions before events before
registry projections) and the checkpoint is advanced after the flush commits.
A crash between the two re-processes the page on restart; the upserts make
that harmless.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from sqlmodel import Session

from registry_indexer.core.errors import ErrorKind, IndexerError
from registry_indexer.core.event_decoder import decode_event
from registry_indexer.core.horizon_client import HorizonClient
from registry_indexer.core.registry_projector import RegistryProjector
from registry_indexer.core.registry_store import RegistryStore
from registry_indexer.core.soroban_rpc_client import MAX_EVENTS_PER_FETCH, SorobanRpcClient
from registry_indexer.core.types import (
    ActionFamily,
    DecodedEvent,
    FetchResult,
    RawLedgerEvent,
    TransactionDetail,
)
from registry_indexer.utils.log import get_default_logger

_LOG = get_default_logger(__name__)

LEDGER_HISTORY_LIMIT_DAYS = 7
# Ledgers close roughly every 6 seconds.
LEDGERS_PER_DAY = 24 * 60 * 10

MAX_FETCH_ITERATIONS = 1000
MAX_STALE_CURSOR_RESPONSES = 3


def resolve_start_ledger(
    requested: Optional[int], checkpoint: Optional[int], latest_ledger: int
) -> int:
    """
    Pick the first ledger of a run.

    :param requested: Explicit start ledger; 0 is treated as 1.
    :param checkpoint: The last processed ledger, if any.
    :param latest_ledger: The current chain tip.
    :return: The explicit ledger, else checkpoint + 1, else a bounded lookback from the tip.
    """
    if requested is not None:
        return max(1, requested)
    if checkpoint:
        return checkpoint + 1
    return max(1, latest_ledger - LEDGER_HISTORY_LIMIT_DAYS * LEDGERS_PER_DAY)


@dataclass
class _PendingEvent:
    event: DecodedEvent
    transaction: Optional[TransactionDetail] = None
    operations: List[dict] = field(default_factory=list)


class LedgerEventFetcher:
    """
    Fetches contract events from Soroban RPC into the registry store.
    """

    def __init__(
        self,
        rpc_client: SorobanRpcClient,
        store: RegistryStore,
        projector: RegistryProjector,
        contract_ids: Sequence[str],
        horizon_client: Optional[HorizonClient] = None,
        fetch_transaction_details: bool = True,
        page_size: int = MAX_EVENTS_PER_FETCH,
    ):
        self.rpc_client = rpc_client
        self.store = store
        self.projector = projector
        self.contract_ids = list(contract_ids)
        self.horizon_client = horizon_client
        self.fetch_transaction_details = fetch_transaction_details
        self.page_size = page_size

    def fetch_and_store(self, start_ledger: Optional[int] = None) -> FetchResult:
        """
        Fetch and store events from start_ledger up to the current end of the
        RPC's event window.

        :param start_ledger: Explicit first ledger; defaults to the checkpoint + 1.
        :return: The run summary.
        :raises IndexerError: On RPC or flush failures, missing configuration,
            or when the iteration cap is exceeded.
        """
        if not self.contract_ids:
            raise IndexerError("No contract ids configured for indexing", ErrorKind.CONFIGURATION)

        latest_ledger = self.rpc_client.get_latest_ledger()
        checkpoint = self.store.get_checkpoint()
        current_ledger = resolve_start_ledger(start_ledger, checkpoint, latest_ledger)

        if current_ledger > latest_ledger > 0:
            _LOG.info(
                "Start ledger %s is ahead of the chain tip %s, nothing to fetch",
                current_ledger,
                latest_ledger,
            )
            return FetchResult(
                message="Start ledger is ahead of the latest ledger",
                events_fetched=0,
                processed_up_to_ledger=current_ledger - 1,
                last_rpc_ledger=latest_ledger,
            )

        _LOG.info(
            "Fetching events for %s from ledger %s (tip %s)",
            self.contract_ids,
            current_ledger,
            latest_ledger,
        )
        last_processed_ledger = current_ledger - 1
        events_fetched = 0
        cursor: Optional[str] = None
        stale_responses = 0
        iterations = 0

        while True:
            iterations += 1
            if iterations > MAX_FETCH_ITERATIONS:
                raise IndexerError(
                    f"Event fetch exceeded {MAX_FETCH_ITERATIONS} pages", ErrorKind.FATAL
                )

            page = self.rpc_client.get_events(
                self.contract_ids,
                start_ledger=None if cursor else current_ledger,
                cursor=cursor,
                limit=self.page_size,
            )
            latest_ledger = max(latest_ledger, page.latest_ledger)

            if page.events:
                stale_responses = 0
                batch = self._prepare_batch(page.events)
                if batch:
                    self.store.run_in_transaction(lambda session: self._flush(session, batch))
                events_fetched += len(batch)
                page_max_ledger = max(raw.ledger for raw in page.events)
                if page_max_ledger > last_processed_ledger:
                    last_processed_ledger = page_max_ledger
                    self.store.advance_checkpoint(last_processed_ledger)
                _LOG.info(
                    "Flushed %s events, processed up to ledger %s",
                    len(batch),
                    last_processed_ledger,
                )
            elif page.cursor is not None and page.cursor == cursor:
                stale_responses += 1
                _LOG.debug("Unchanged cursor on empty page (%s)", stale_responses)
                if stale_responses >= MAX_STALE_CURSOR_RESPONSES:
                    _LOG.warning("Cursor %s stalled, ending run", cursor)
                    break

            if page.cursor:
                if not page.events and page.cursor != cursor:
                    stale_responses = 0
                cursor = page.cursor
                continue

            # No cursor: the available range is exhausted unless the page was full.
            if not page.events:
                break
            cursor = None
            current_ledger = last_processed_ledger + 1
            if current_ledger > latest_ledger:
                break

        if events_fetched == 0 and latest_ledger > last_processed_ledger:
            # The whole window up to the tip was scanned without events.
            last_processed_ledger = latest_ledger
            self.store.advance_checkpoint(last_processed_ledger)

        message = f"Fetched {events_fetched} events up to ledger {last_processed_ledger}"
        _LOG.info(message)
        return FetchResult(
            message=message,
            events_fetched=events_fetched,
            processed_up_to_ledger=last_processed_ledger,
            last_rpc_ledger=latest_ledger,
        )

    def _prepare_batch(self, raw_events: Sequence[RawLedgerEvent]) -> List[_PendingEvent]:
        """
        Decode a page and look up each event's transaction and operations.
        Undecodable events are skipped; failed lookups leave the detail empty.
        """
        batch = []
        for raw in raw_events:
            try:
                event = decode_event(raw)
            except IndexerError as e:
                _LOG.warning("Skipping event %s: %s", raw.id, e)
                continue
            pending = _PendingEvent(event=event)
            if event.transaction_hash and self.fetch_transaction_details:
                pending.transaction = self._lookup_transaction(event.transaction_hash)
            if event.transaction_hash and event.family == ActionFamily.ATTEST_CREATE:
                pending.operations = self._lookup_operations(event.transaction_hash)
            batch.append(pending)
        return batch

    def _lookup_transaction(self, tx_hash: str) -> Optional[TransactionDetail]:
        try:
            return self.rpc_client.get_transaction(tx_hash)
        except IndexerError as e:
            _LOG.warning("Transaction lookup failed for %s: %s", tx_hash, e)
            return None

    def _lookup_operations(self, tx_hash: str) -> List[dict]:
        if self.horizon_client is None:
            return []
        try:
            return self.horizon_client.get_transaction_operations(tx_hash)
        except IndexerError as e:
            _LOG.warning("Operations lookup failed for %s: %s", tx_hash, e)
            return []

    def _flush(self, session: Session, batch: Sequence[_PendingEvent]) -> int:
        for pending in batch:
            self.projector.record_transaction(session, pending.event, pending.transaction)
        for pending in batch:
            self.projector.record_event(session, pending.event, pending.transaction)
            if pending.operations:
                self.projector.record_operations(
                    session, pending.operations, pending.event.contract_id
                )
            self.projector.project(
                session, pending.event, pending.transaction, pending.operations
            )
        return len(batch)
