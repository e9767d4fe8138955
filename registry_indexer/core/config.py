"""
Indexer configuration loaded from the environment.
"""

import os
import pprint
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv
from stellar_sdk import Network

from registry_indexer.utils.error_utils import check_for_missing_env_vars
from registry_indexer.utils.log import get_default_logger

_LOG = get_default_logger(__name__)

MAINNET = "mainnet"
TESTNET = "testnet"

DEFAULT_RPC_URLS: Dict[str, str] = {
    MAINNET: "https://rpc.lightsail.network",
    TESTNET: "https://soroban-testnet.stellar.org",
}

DEFAULT_HORIZON_URLS: Dict[str, str] = {
    MAINNET: "https://horizon.stellar.org",
    TESTNET: "https://horizon-testnet.stellar.org",
}

NETWORK_PASSPHRASES: Dict[str, str] = {
    MAINNET: Network.PUBLIC_NETWORK_PASSPHRASE,
    TESTNET: Network.TESTNET_NETWORK_PASSPHRASE,
}


@dataclass(frozen=True)
class IndexerConfig:
    """
    Runtime settings for the ingestion engine.

    Attributes:
        database_url (str): SQLAlchemy database URL.
        network (str): "testnet" or "mainnet".
        rpc_url (str): Soroban RPC endpoint.
        horizon_url (str): Horizon REST endpoint.
        contract_ids (Tuple[str, ...]): Contracts whose events are indexed.
        poll_interval_seconds (float): Queue tick interval.
        base_backoff_seconds (float): Minimum retry delay for failed jobs.
        fetch_transaction_details (bool): Look up every event's transaction.
        autostart (bool): Enqueue a continuous fetch-events job on startup.
    """

    database_url: str
    network: str = TESTNET
    rpc_url: str = DEFAULT_RPC_URLS[TESTNET]
    horizon_url: str = DEFAULT_HORIZON_URLS[TESTNET]
    contract_ids: Tuple[str, ...] = field(default_factory=tuple)
    poll_interval_seconds: float = 1.0
    base_backoff_seconds: float = 5.0
    fetch_transaction_details: bool = True
    autostart: bool = True

    @property
    def network_passphrase(self) -> str:
        return NETWORK_PASSPHRASES[self.network]


def _get_bool_env_var(var_name: str, default: bool = False) -> bool:
    val = os.environ.get(var_name)
    if val is None:
        return default
    return val.lower() in ["true", "1", "t", "y", "yes"]


def _get_ms_env_var_as_seconds(var_name: str, default_ms: int) -> float:
    val = os.environ.get(var_name)
    if val is None or val == "":
        return default_ms / 1000
    try:
        return int(val) / 1000
    except ValueError as e:
        raise EnvironmentError(f"{var_name} must be an integer number of ms") from e


def _collect_contract_ids() -> Tuple[str, ...]:
    candidates = [
        os.getenv("PROTOCOL_CONTRACT_ID"),
        os.getenv("AUTHORITY_CONTRACT_ID"),
    ] + os.getenv("CONTRACT_IDS", "").split(",")
    contract_ids = []
    for candidate in candidates:
        candidate = (candidate or "").strip()
        if candidate and candidate not in contract_ids:
            contract_ids.append(candidate)
    return tuple(contract_ids)


def get_config_from_env(dotenv_path: Optional[str] = None) -> IndexerConfig:
    """
    Build the indexer configuration from environment variables.

    :param dotenv_path: Optional .env file loaded before reading the environment.
    :return: The configuration.
    """
    if dotenv_path:
        load_dotenv(dotenv_path, verbose=True, override=True)

    network = os.getenv("STELLAR_NETWORK", TESTNET).strip().lower()
    if network not in NETWORK_PASSPHRASES:
        raise EnvironmentError(
            f"STELLAR_NETWORK must be one of {sorted(NETWORK_PASSPHRASES)}, got {network!r}"
        )

    required = {"DATABASE_URL": os.getenv("DATABASE_URL")}
    check_for_missing_env_vars(required)

    config = IndexerConfig(
        database_url=required["DATABASE_URL"],
        network=network,
        rpc_url=os.getenv("SOROBAN_RPC_URL") or DEFAULT_RPC_URLS[network],
        horizon_url=os.getenv("HORIZON_URL") or DEFAULT_HORIZON_URLS[network],
        contract_ids=_collect_contract_ids(),
        poll_interval_seconds=_get_ms_env_var_as_seconds("INGEST_POLL_INTERVAL_MS", 1000),
        base_backoff_seconds=_get_ms_env_var_as_seconds("INGEST_BASE_BACKOFF_MS", 5000),
        fetch_transaction_details=_get_bool_env_var("FETCH_TRANSACTION_DETAILS", True),
        autostart=_get_bool_env_var("INGEST_AUTOSTART", True),
    )
    if not config.contract_ids:
        _LOG.warning("No contract ids configured; ingestion jobs will fail until one is set")
    _LOG.debug("get_config_from_env(): config =\n%s", pprint.pformat(config))
    return config
