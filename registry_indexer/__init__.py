"""registry_indexer

Change-data-capture ingestion of Soroban attestation registry events
"""

from registry_indexer.core.backfill_controller import BackfillController
from registry_indexer.core.config import IndexerConfig, get_config_from_env
from registry_indexer.core.errors import ErrorKind, IndexerError
from registry_indexer.core.event_decoder import decode_event
from registry_indexer.core.event_fetcher import LedgerEventFetcher
from registry_indexer.core.horizon_client import HorizonClient
from registry_indexer.core.indexer import Indexer
from registry_indexer.core.ingest_queue import IngestQueue, create_job_handlers
from registry_indexer.core.operations_ingestor import OperationsIngestor
from registry_indexer.core.registry_projector import (
    RegistryProjector,
    order_events_for_projection,
)
from registry_indexer.core.registry_store import RegistryStore
from registry_indexer.core.soroban_rpc_client import SorobanRpcClient
from registry_indexer.core.types import (
    BackfillResult,
    DecodedEvent,
    FetchResult,
    IngestJob,
    JobPayload,
    JobType,
    RawLedgerEvent,
)
