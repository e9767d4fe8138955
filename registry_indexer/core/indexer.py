"""
Wiring of the ingestion engine components.
"""

from dataclasses import dataclass
from typing import Optional

from registry_indexer.core.backfill_controller import BackfillController
from registry_indexer.core.config import IndexerConfig, get_config_from_env
from registry_indexer.core.event_fetcher import LedgerEventFetcher
from registry_indexer.core.horizon_client import HorizonClient
from registry_indexer.core.ingest_queue import IngestQueue, create_job_handlers
from registry_indexer.core.operations_ingestor import OperationsIngestor
from registry_indexer.core.registry_projector import RegistryProjector
from registry_indexer.core.registry_store import RegistryStore
from registry_indexer.core.soroban_rpc_client import SorobanRpcClient


@dataclass
class Indexer:
    """The assembled ingestion engine."""

    config: IndexerConfig
    store: RegistryStore
    rpc_client: SorobanRpcClient
    horizon_client: HorizonClient
    projector: RegistryProjector
    fetcher: LedgerEventFetcher
    backfill_controller: BackfillController
    operations_ingestor: OperationsIngestor
    queue: IngestQueue

    @staticmethod
    def create_instance(config: IndexerConfig, engine_kwargs: Optional[dict] = None) -> "Indexer":
        """
        Build every component from a configuration.

        :param config: The indexer configuration.
        :param engine_kwargs: Extra SQLAlchemy engine arguments.
        :return: The indexer.
        """
        store = RegistryStore(config.database_url, engine_kwargs)
        rpc_client = SorobanRpcClient(config.rpc_url, network_passphrase=config.network_passphrase)
        horizon_client = HorizonClient(config.horizon_url)
        projector = RegistryProjector(store)
        fetcher = LedgerEventFetcher(
            rpc_client,
            store,
            projector,
            config.contract_ids,
            horizon_client=horizon_client,
            fetch_transaction_details=config.fetch_transaction_details,
        )
        backfill_controller = BackfillController(
            rpc_client, horizon_client, store, projector, config.contract_ids
        )
        operations_ingestor = OperationsIngestor(
            rpc_client, horizon_client, store, projector, config.contract_ids
        )
        queue = IngestQueue(
            create_job_handlers(fetcher, backfill_controller, operations_ingestor),
            poll_interval=config.poll_interval_seconds,
            base_backoff=config.base_backoff_seconds,
        )
        return Indexer(
            config=config,
            store=store,
            rpc_client=rpc_client,
            horizon_client=horizon_client,
            projector=projector,
            fetcher=fetcher,
            backfill_controller=backfill_controller,
            operations_ingestor=operations_ingestor,
            queue=queue,
        )

    @staticmethod
    def create_instance_from_env(dotenv_path: Optional[str] = None) -> "Indexer":
        return Indexer.create_instance(get_config_from_env(dotenv_path))
